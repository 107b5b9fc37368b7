"""環境変数からの設定読み込み。

バックエンド固有の設定（ファイルパス等）は各バックエンドの
config() が読むため、ここではラッパー自体の設定のみ扱う。
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass

BACKEND_ENV = "TF_STATE_WRAPPER_BACKEND"
LOG_LEVEL_ENV = "TF_STATE_WRAPPER_LOG_LEVEL"

DEFAULT_BACKEND = "file"
# ラップしたツールの出力を汚さないよう既定は WARNING
DEFAULT_LOG_LEVEL = "WARNING"

_TRUTHY = {"1", "true", "yes", "on"}


def env_truthy(value: str | None) -> bool:
    """環境変数の値を真偽値として解釈する。未設定は False。"""
    if value is None:
        return False
    return value.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    """ラッパーの設定。"""

    backend: str = DEFAULT_BACKEND
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """環境変数から設定を構築する。空文字は未設定として扱う。"""
        if environ is None:
            environ = os.environ
        backend = environ.get(BACKEND_ENV, "").strip() or DEFAULT_BACKEND
        log_level = environ.get(LOG_LEVEL_ENV, "").strip() or DEFAULT_LOG_LEVEL
        return cls(backend=backend.lower(), log_level=log_level)
