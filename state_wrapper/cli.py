"""コマンドラインエントリポイント。

    terraform-state-wrapper <command> [args...]

引数はそのまま子プロセスに渡し、フラグは解釈しない。
"""

import logging
import sys
from collections.abc import Sequence

from state_wrapper.dependencies import create_backend
from state_wrapper.errors import ConfigurationError
from state_wrapper.logging_util import configure_logging, uvicorn_log_level
from state_wrapper.settings import Settings
from state_wrapper.wrapper.orchestrator import wrap

logger = logging.getLogger(__name__)


def main(argv: Sequence[str] | None = None) -> None:
    """設定に従ってバックエンドを構築し、子プロセスをラップして終了する。"""
    if argv is None:
        argv = sys.argv[1:]
    settings = Settings.from_env()
    level = configure_logging(settings.log_level)

    try:
        backend = create_backend(settings.backend)
    except ConfigurationError as e:
        logger.critical("%s", e)
        sys.exit(1)

    wrap(backend, list(argv), log_level=uvicorn_log_level(level))


if __name__ == "__main__":
    main()
