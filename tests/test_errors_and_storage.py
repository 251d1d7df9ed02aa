"""
错误分类与文档存储测试
"""

import logging

import httpx
import pytest

import caskflow.logging
from caskflow.errors import ErrorType, FetchError, MutationError, PackageSourceError, classify_error
from caskflow.logging import ErrorOnlyHandler, setup_logging
from caskflow.storage import DocumentStore
from caskflow.types import Category


class TestClassifyError:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (TimeoutError("timed out"), ErrorType.TIMEOUT),
            (httpx.ReadTimeout("read timed out"), ErrorType.TIMEOUT),
            (ConnectionResetError("reset"), ErrorType.NETWORK),
            (httpx.ConnectError("refused"), ErrorType.NETWORK),
            (PermissionError("denied"), ErrorType.PERMISSION),
            (KeyError("wget"), ErrorType.NOT_FOUND),
            (FileNotFoundError("brew"), ErrorType.NOT_FOUND),
            (ValueError("bad output"), ErrorType.PERMANENT),
        ],
    )
    def test_mapping(self, error, expected):
        assert classify_error(error).error_type == expected

    def test_structured_errors_pass_through(self):
        original = MutationError("locked", error_type=ErrorType.PERMISSION, package="wget")
        assert classify_error(original) is original

    def test_error_class_and_context(self):
        error = classify_error(RuntimeError(), category=Category.CASK, package="firefox", error_class=FetchError)

        assert isinstance(error, FetchError)
        assert str(error) == "RuntimeError"
        assert error.to_dict() == {
            "error": True,
            "error_type": "permanent",
            "message": "RuntimeError",
            "retryable": False,
            "category": "cask",
            "package": "firefox",
        }

    def test_retryable(self):
        assert PackageSourceError("x", error_type=ErrorType.NETWORK).retryable is True
        assert PackageSourceError("x", error_type=ErrorType.NOT_FOUND).retryable is False

    def test_every_error_type_is_produced_by_classification(self):
        produced = {
            classify_error(e).error_type
            for e in (TimeoutError(), ConnectionError(), PermissionError(), LookupError(), ValueError())
        }
        assert produced == set(ErrorType)


class TestDocumentStore:
    def test_save_and_load(self, tmp_path):
        store = DocumentStore(tmp_path / "nested")
        assert store.save("prefetch_config", {"enabled": False}) is True
        assert store.load("prefetch_config") == {"enabled": False}
        assert not list((tmp_path / "nested").glob("*.tmp"))

    def test_missing_and_malformed(self, tmp_path):
        store = DocumentStore(tmp_path)
        assert store.load("cache_formula") is None

        (tmp_path / "cache_cask.json").write_text("[1, 2]", encoding="utf-8")
        assert store.load("cache_cask") is None

    def test_unserializable_data_is_not_fatal(self, tmp_path):
        store = DocumentStore(tmp_path)
        assert store.save("broken", {"value": object()}) is False

    def test_delete(self, tmp_path):
        store = DocumentStore(tmp_path)
        store.save("cache_formula", {"data": None})
        assert store.delete("cache_formula") is True
        assert store.load("cache_formula") is None
        assert store.delete("cache_formula") is True

    def test_rejects_path_like_keys(self, tmp_path):
        with pytest.raises(ValueError):
            DocumentStore(tmp_path).load("../etc/passwd")


class TestLogging:
    def test_file_handlers(self, tmp_path):
        root = logging.getLogger()
        saved = (root.level, list(root.handlers))
        try:
            setup_logging(log_dir=tmp_path, log_level="DEBUG", log_to_console=False, log_to_file=True)
            logging.getLogger("caskflow.test").error("disk full")
            for handler in root.handlers:
                handler.flush()

            assert any(isinstance(h, ErrorOnlyHandler) for h in root.handlers)
            assert not hasattr(caskflow.logging, "get_logger")
            assert "disk full" in (tmp_path / "caskflow.log").read_text(encoding="utf-8")
            assert "disk full" in (tmp_path / "error.log").read_text(encoding="utf-8")
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved[1]
            root.setLevel(saved[0])
