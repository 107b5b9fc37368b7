"""ロギング設定。

ルートロガーを stderr 向けの簡潔な書式で一度だけ構成する。
stdout はラップしたツールがそのまま使う。
"""

import logging

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DEFAULT_DATEFMT = "%H:%M:%S"


def coerce_level(value: int | str | None, fallback: int = logging.WARNING) -> int:
    """"debug" や "10" のような値をログレベルに変換する。"""
    if value is None:
        return fallback
    if isinstance(value, int):
        return value
    text = value.strip()
    if not text:
        return fallback
    if text.isdigit():
        return int(text)
    candidate = logging.getLevelName(text.upper())
    if isinstance(candidate, int):
        return candidate
    return fallback


def configure_logging(level: int | str | None = logging.WARNING) -> int:
    """ルートロガーを構成し、有効なレベルを返す。"""
    effective = coerce_level(level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective, format=_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT
        )
    root.setLevel(effective)
    return effective


_UVICORN_LEVELS = ("critical", "error", "warning", "info", "debug")


def uvicorn_log_level(level: int) -> str:
    """uvicorn.Config に渡すレベル名（小文字）を返す。"""
    name = str(logging.getLevelName(level)).lower()
    if name not in _UVICORN_LEVELS:
        return "warning"
    return name
