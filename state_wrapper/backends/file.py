"""ローカルファイルによるバックエンド実装。

Backend に準拠したファイル実装を提供する。
TF_STATE_WRAPPER_FILE_LOCK が真の場合、隣接する <path>.lock ファイルで
排他ロックを提供する。
"""

import json
import logging
import os
import tempfile
import threading

from state_wrapper.errors import ConfigurationError
from state_wrapper.interfaces.backend import Backend, BackendError, LockInfo
from state_wrapper.settings import env_truthy

FILE_PATH_ENV = "TF_STATE_WRAPPER_FILE_PATH"
FILE_LOCK_ENV = "TF_STATE_WRAPPER_FILE_LOCK"

logger = logging.getLogger(__name__)


def _lock_to_json(info: LockInfo) -> str:
    return json.dumps(
        {
            "ID": info.id,
            "Operation": info.operation,
            "Info": info.info,
            "Who": info.who,
            "Version": info.version,
            "Created": info.created,
            "Path": info.path,
        }
    )


def _lock_from_json(text: str) -> LockInfo:
    raw = json.loads(text)
    return LockInfo(
        id=raw.get("ID", ""),
        operation=raw.get("Operation", ""),
        info=raw.get("Info", ""),
        who=raw.get("Who", ""),
        version=raw.get("Version", ""),
        created=raw.get("Created", ""),
        path=raw.get("Path", ""),
    )


class FileBackend(Backend):
    """ファイルによるバックエンド実装。"""

    def __init__(self) -> None:
        self._file_path: str | None = None
        self._locking = False
        # 同一プロセス内の並行リクエスト間で書き込みを直列化する
        self._mutex = threading.Lock()

    @property
    def file_path(self) -> str:
        if self._file_path is None:
            raise BackendError("file backend is not configured")
        return self._file_path

    @property
    def lock_path(self) -> str:
        return self.file_path + ".lock"

    def config(self) -> None:
        """TF_STATE_WRAPPER_FILE_PATH からファイルパスを読み込む。"""
        value = os.environ.get(FILE_PATH_ENV)
        if value is None:
            raise ConfigurationError(f"'{FILE_PATH_ENV}' must be set")
        self._file_path = value
        self._locking = env_truthy(os.environ.get(FILE_LOCK_ENV))
        logger.debug(
            "file backend configured: path=%s locking=%s", value, self._locking
        )

    def get(self) -> bytes | None:
        """ファイル内容を返す。ファイルがなければ None。"""
        try:
            with open(self.file_path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendError(str(e)) from e

    def set(self, data: bytes, lock_id: str, comment: str) -> None:
        """一時ファイルに書いてから置き換える。

        lock_id と comment は保存しない（ログにのみ残す）。
        """
        logger.debug("writing state: lock_id=%r comment=%r", lock_id, comment)
        directory = os.path.dirname(os.path.abspath(self.file_path))
        with self._mutex:
            try:
                fd, tmp_path = tempfile.mkstemp(
                    prefix=".tfstate-", dir=directory
                )
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(data)
                    os.chmod(tmp_path, 0o644)
                    os.replace(tmp_path, self.file_path)
                except BaseException:
                    if os.path.exists(tmp_path):
                        os.unlink(tmp_path)
                    raise
            except OSError as e:
                raise BackendError(str(e)) from e

    def delete(self) -> None:
        """ファイルを削除する。存在しない場合もエラーにしない。"""
        with self._mutex:
            try:
                os.remove(self.file_path)
            except FileNotFoundError:
                return
            except OSError as e:
                raise BackendError(str(e)) from e

    def lock(self, info: LockInfo) -> tuple[bool, LockInfo]:
        """<path>.lock を排他的に作成してロックを取得する。

        既にロックファイルがあればその内容を返す。
        """
        self._require_locking()
        held = LockInfo(
            id=info.id,
            operation=info.operation,
            info=info.info,
            who=info.who,
            version=info.version,
            created=info.created,
            path=self.file_path,
        )
        with self._mutex:
            try:
                fd = os.open(
                    self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644
                )
            except FileExistsError:
                try:
                    current = self._read_lock()
                except FileNotFoundError as e:
                    raise BackendError(
                        "lock was released while reading it, retry"
                    ) from e
                logger.info(
                    "lock %s denied, held by %s (%s)",
                    info.id,
                    current.id,
                    current.who,
                )
                return False, current
            except OSError as e:
                raise BackendError(str(e)) from e
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(_lock_to_json(held))
            except BaseException as e:
                # 空のロックファイルを残すと以後ロックも解除もできなくなる
                os.unlink(self.lock_path)
                if isinstance(e, Exception):
                    raise BackendError(f"failed to write lock file: {e}") from e
                raise
        logger.debug("lock %s acquired", info.id)
        return True, held

    def unlock(self, info: LockInfo) -> None:
        """ロックファイルを削除する。

        info.id が空の場合は ID を照合せずに解放する（強制解除）。
        """
        self._require_locking()
        with self._mutex:
            try:
                current = self._read_lock()
            except FileNotFoundError:
                return
            if info.id and current.id != info.id:
                raise BackendError(
                    f"lock id {info.id!r} does not match existing lock "
                    f"{current.id!r}"
                )
            try:
                os.remove(self.lock_path)
            except FileNotFoundError:
                return
            except OSError as e:
                raise BackendError(str(e)) from e
        logger.debug("lock %s released", current.id)

    def lockable(self) -> bool:
        return self._locking

    def _require_locking(self) -> None:
        if not self._locking:
            raise BackendError(
                f"locking is disabled, set '{FILE_LOCK_ENV}' to enable it"
            )

    def _read_lock(self) -> LockInfo:
        """ロックファイルを読む。存在しなければ FileNotFoundError。"""
        try:
            with open(self.lock_path, encoding="utf-8") as f:
                text = f.read()
        except FileNotFoundError:
            raise
        except OSError as e:
            raise BackendError(str(e)) from e
        try:
            return _lock_from_json(text)
        except (ValueError, AttributeError) as e:
            raise BackendError(f"corrupt lock file {self.lock_path}: {e}") from e
