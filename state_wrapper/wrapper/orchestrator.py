"""オーケストレーター — 1回の実行のライフサイクル管理。

バックエンドの初期化 → ループバックでの待ち受け → アダプタ起動 →
環境変数を渡して子プロセス（terraform）を起動 → 終了待ち →
終了コードの伝播、を一方向に進める。
"""

import enum
import logging
import os
import signal
import subprocess
import sys
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import NoReturn

from state_wrapper.adapter.app import STATE_PATH, create_app
from state_wrapper.adapter.auth import SessionCredentials
from state_wrapper.errors import (
    ChildLaunchError,
    ConfigurationError,
    RunCancelled,
    ServeError,
    UsageError,
    WrapperError,
)
from state_wrapper.interfaces.backend import Backend
from state_wrapper.wrapper.server import (
    LOOPBACK_HOST,
    AdapterServer,
    open_listener,
)

ADDRESS_ENV = "TF_HTTP_ADDRESS"
USERNAME_ENV = "TF_HTTP_USERNAME"
PASSWORD_ENV = "TF_HTTP_PASSWORD"
LOCK_ADDRESS_ENV = "TF_HTTP_LOCK_ADDRESS"
UNLOCK_ADDRESS_ENV = "TF_HTTP_UNLOCK_ADDRESS"

USAGE = "usage: terraform-state-wrapper terraform plan|apply|validate..."

logger = logging.getLogger(__name__)


class WrapperState(enum.Enum):
    """実行の状態。遷移は前方向のみ。"""

    INIT = "init"
    CONFIGURED = "configured"
    LISTENING = "listening"
    SERVING = "serving"
    CHILD_RUNNING = "child_running"
    CHILD_EXITED_OK = "child_exited_ok"
    CHILD_EXITED_ERR = "child_exited_err"
    TERMINATED = "terminated"


_RANK = {
    WrapperState.INIT: 0,
    WrapperState.CONFIGURED: 1,
    WrapperState.LISTENING: 2,
    WrapperState.SERVING: 3,
    WrapperState.CHILD_RUNNING: 4,
    WrapperState.CHILD_EXITED_OK: 5,
    WrapperState.CHILD_EXITED_ERR: 5,
    WrapperState.TERMINATED: 6,
}


def find_action(args: Sequence[str]) -> str:
    """引数（コマンド自身を含む）のうち、最初のフラグでないものを返す。

    `terraform plan` なら "terraform"、`-v terraform` なら "terraform"。
    なければ空文字。
    """
    for arg in args:
        if arg and not arg.startswith("-"):
            return arg
    return ""


def backend_url(host: str, port: int) -> str:
    return f"http://{host}:{port}{STATE_PATH}"


def child_environment(
    base: Mapping[str, str],
    url: str,
    credentials: SessionCredentials,
    lockable: bool,
) -> dict[str, str]:
    """子プロセスに渡す環境変数を組み立てる。base は変更しない。

    ロック不可の場合、base に残っている LOCK/UNLOCK のアドレスは取り除く。
    """
    env = dict(base)
    env[ADDRESS_ENV] = url
    env[USERNAME_ENV] = credentials.username
    env[PASSWORD_ENV] = credentials.password
    if lockable:
        env[LOCK_ADDRESS_ENV] = url
        env[UNLOCK_ADDRESS_ENV] = url
    else:
        env.pop(LOCK_ADDRESS_ENV, None)
        env.pop(UNLOCK_ADDRESS_ENV, None)
    return env


def exit_code_from_returncode(returncode: int) -> int:
    """Popen.returncode をプロセスの終了コードに変換する。

    シグナル N で終了した場合（負の値）はシェルと同じく 128 + N。
    """
    if returncode < 0:
        return 128 - returncode
    return returncode


class Wrapper:
    """1回の実行を管理するオーケストレーター。

    Args:
        backend: 未初期化のバックエンド。run() の最初に config() を呼ぶ
        args: 子プロセスのコマンドと引数（そのまま渡す）
        environ: 子プロセスの環境変数の元。省略時は os.environ のコピー
        host: アダプタが待ち受けるループバックアドレス
        log_level: uvicorn のログレベル
    """

    def __init__(
        self,
        backend: Backend,
        args: Sequence[str],
        environ: Mapping[str, str] | None = None,
        host: str = LOOPBACK_HOST,
        log_level: str = "warning",
    ) -> None:
        self._backend = backend
        self._args = list(args)
        self._environ = dict(os.environ if environ is None else environ)
        self._host = host
        self._log_level = log_level
        self._state = WrapperState.INIT
        self._cancelled = threading.Event()
        self._serve_failed = threading.Event()
        self._child: subprocess.Popen | None = None
        self._adapter: AdapterServer | None = None
        self.url: str | None = None
        self.credentials: SessionCredentials | None = None

    @property
    def state(self) -> WrapperState:
        return self._state

    def run(self) -> int:
        """実行し、このプロセスが使うべき終了コードを返す。

        子プロセスが非ゼロで終了した場合はその終了コードを返す。

        Raises:
            WrapperError: 設定・待ち受け・起動・子プロセス起動の失敗、
                またはキャンセル
        """
        if self._state is not WrapperState.INIT:
            raise RuntimeError("Wrapper.run() can only be called once")
        try:
            return self._run()
        finally:
            self._advance(WrapperState.TERMINATED)

    def cancel(self) -> None:
        """実行をキャンセルする。子プロセスが動いていれば kill する。

        別スレッドやシグナルハンドラから呼んでよい。
        """
        self._cancelled.set()
        self._kill_child()

    def _run(self) -> int:
        try:
            self._backend.config()
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"backend configuration failed: {e}") from e
        self._advance(WrapperState.CONFIGURED)

        with open_listener(self._host) as sock:
            host, port = sock.getsockname()[:2]
            self._advance(WrapperState.LISTENING)
            self.url = backend_url(host, port)
            self.credentials = SessionCredentials()

            app = create_app(
                self._backend, self.credentials, find_action(self._args)
            )
            server = AdapterServer(
                app,
                sock,
                log_level=self._log_level,
                on_failure=self._on_serve_failure,
            )
            self._adapter = server
            with server:
                self._advance(WrapperState.SERVING)
                env = child_environment(
                    self._environ,
                    self.url,
                    self.credentials,
                    self._backend.lockable(),
                )
                if not self._args:
                    raise UsageError(USAGE)
                exit_code = self._run_child(env)
                if server.failure is not None:
                    raise ServeError(
                        f"adapter server failed: {server.failure}"
                    ) from server.failure
        return exit_code

    def _run_child(self, env: dict[str, str]) -> int:
        if self._cancelled.is_set():
            raise RunCancelled("run cancelled before the child process started")
        try:
            child = subprocess.Popen(self._args, env=env)
        except (OSError, ValueError) as e:
            raise ChildLaunchError(
                f"failed to start {self._args[0]!r}: {e}"
            ) from e
        self._child = child
        self._advance(WrapperState.CHILD_RUNNING)
        logger.debug("started %s (pid %d)", self._args[0], child.pid)

        # 起動直前にキャンセルされた場合
        if self._cancelled.is_set() or self._serve_failed.is_set():
            self._kill_child()

        try:
            returncode = child.wait()
        except OSError as e:
            raise ChildLaunchError(
                f"failed to wait for {self._args[0]!r}: {e}"
            ) from e

        if self._cancelled.is_set():
            raise RunCancelled(
                f"run cancelled, {self._args[0]!r} exited with {returncode}"
            )
        exit_code = exit_code_from_returncode(returncode)
        if exit_code == 0:
            self._advance(WrapperState.CHILD_EXITED_OK)
        else:
            self._advance(WrapperState.CHILD_EXITED_ERR)
        logger.debug("%s exited with %d", self._args[0], exit_code)
        return exit_code

    def _kill_child(self) -> None:
        child = self._child
        if child is not None and child.returncode is None:
            logger.info("terminating %s (pid %d)", self._args[0], child.pid)
            child.kill()

    def _on_serve_failure(self, exc: BaseException) -> None:
        self._serve_failed.set()
        self._kill_child()

    def _advance(self, new: WrapperState) -> None:
        if _RANK[new] <= _RANK[self._state]:
            raise RuntimeError(
                f"invalid transition {self._state.value} -> {new.value}"
            )
        logger.debug("state %s -> %s", self._state.value, new.value)
        self._state = new


@contextmanager
def forward_signals(wrapper: Wrapper) -> Iterator[None]:
    """実行中のシグナル処理を差し替える。

    SIGTERM は実行をキャンセルする。SIGINT は端末から子プロセスにも
    届くため、子プロセスの終了処理（ステート保存）を待つ。
    SIG_IGN は exec 後の子プロセスに引き継がれるため使わない。
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _on_term(signum, frame):
        logger.info("received signal %d, cancelling", signum)
        wrapper.cancel()

    def _on_int(signum, frame):
        logger.info("interrupt received, waiting for the child to exit")

    previous = {
        signal.SIGTERM: signal.signal(signal.SIGTERM, _on_term),
        signal.SIGINT: signal.signal(signal.SIGINT, _on_int),
    }
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def wrap(
    backend: Backend, args: Sequence[str], log_level: str = "warning"
) -> NoReturn:
    """backend を使って args を実行し、その結果でプロセスを終了する。

    致命的なエラーは診断メッセージを出して終了コード 1 で終了する。
    """
    wrapper = Wrapper(backend, args, log_level=log_level)
    try:
        with forward_signals(wrapper):
            exit_code = wrapper.run()
    except WrapperError as e:
        logger.critical("%s", e)
        sys.exit(1)
    sys.exit(exit_code)
