"""
caskflow 包入口点 - 支持 `python -m caskflow` 调用
"""

from caskflow.main import app

if __name__ == "__main__":
    app()
