"""ループバックのリスナーと、バックグラウンドで動くアダプタサーバー。

uvicorn をデーモンスレッドで動かし、メインスレッドは子プロセスの
終了待ちに専念する。両者の連携点は停止要求とリスナーのクローズのみ。
"""

import logging
import socket
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import uvicorn
from fastapi import FastAPI

from state_wrapper.errors import ListenerError, ServeError

LOOPBACK_HOST = "127.0.0.1"
STARTUP_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 5.0

logger = logging.getLogger(__name__)


@contextmanager
def open_listener(host: str = LOOPBACK_HOST) -> Iterator[socket.socket]:
    """host の OS 割り当てポートで待ち受けるソケットを開く。

    コンテキストを抜ける際、どの経路でも必ずクローズする。

    Raises:
        ListenerError: バインドに失敗した場合
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
        sock.listen(socket.SOMAXCONN)
    except OSError as e:
        sock.close()
        raise ListenerError(f"failed to listen on {host}: {e}") from e
    logger.debug("listening on %s:%d", *sock.getsockname()[:2])
    try:
        yield sock
    finally:
        sock.close()


class AdapterServer:
    """バインド済みソケット上で FastAPI アプリを提供する uvicorn サーバー。

    stop() による停止はエラーではない。それ以外の理由でサーバーが
    終了した場合は failure に記録し、on_failure を呼ぶ。
    """

    def __init__(
        self,
        app: FastAPI,
        sock: socket.socket,
        log_level: str = "warning",
        on_failure: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._sock = sock
        self._on_failure = on_failure
        self._stopping = threading.Event()
        self._failure: BaseException | None = None
        config = uvicorn.Config(
            app,
            http="h11",
            lifespan="off",
            log_config=None,
            log_level=log_level,
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._serve, name="state-adapter", daemon=True
        )

    @property
    def failure(self) -> BaseException | None:
        """予期しない停止の原因。正常稼働中・正常停止時は None。"""
        return self._failure

    @property
    def started(self) -> bool:
        return self._server.started

    def start(self, timeout: float = STARTUP_TIMEOUT) -> None:
        """サーバースレッドを起動し、リクエストを受け付けられるまで待つ。

        Raises:
            ServeError: 起動に失敗した、または timeout 秒以内に起動しなかった場合
        """
        self._thread.start()
        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive():
                raise ServeError(
                    "adapter server failed to start"
                ) from self._failure
            if time.monotonic() > deadline:
                self.stop()
                raise ServeError(
                    f"adapter server did not start within {timeout:g}s"
                )
            time.sleep(0.01)
        logger.debug("adapter server started")

    def stop(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """サーバーに停止を要求し、スレッドの終了を待つ。"""
        self._stopping.set()
        self._server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(
                    "adapter server did not stop within %gs", timeout
                )
        logger.debug("adapter server stopped")

    def __enter__(self) -> "AdapterServer":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _serve(self) -> None:
        try:
            self._server.run(sockets=[self._sock])
        except BaseException as e:
            # uvicorn は起動失敗時に SystemExit を送出することがある
            self._fail(e)
            return
        if not self._stopping.is_set():
            self._fail(ServeError("adapter server stopped unexpectedly"))

    def _fail(self, exc: BaseException) -> None:
        if self._stopping.is_set():
            logger.debug("adapter server error during shutdown: %r", exc)
            return
        logger.error("adapter server failed: %r", exc)
        self._failure = exc
        if self._on_failure is not None:
            self._on_failure(exc)
