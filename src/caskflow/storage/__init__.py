from .documents import DocumentStore

__all__ = ["DocumentStore"]
