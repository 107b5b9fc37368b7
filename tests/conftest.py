"""テスト共通のフィクスチャ。"""

import threading

import pytest

from state_wrapper.interfaces.backend import Backend, BackendError, LockInfo


class MemoryBackend(Backend):
    """テスト用のインメモリ実装。呼び出しを記録する。"""

    def __init__(self, lockable: bool = False, data: bytes | None = None):
        self.data = data
        self.locked: LockInfo | None = None
        self.configured = False
        self.set_calls: list[tuple[bytes, str, str]] = []
        self.calls: list[str] = []
        self.fail_with: Exception | None = None
        self._lockable = lockable
        self._mutex = threading.Lock()

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    def config(self) -> None:
        self.configured = True

    def get(self) -> bytes | None:
        self._record("get")
        return self.data

    def set(self, data: bytes, lock_id: str, comment: str) -> None:
        self._record("set")
        self.set_calls.append((data, lock_id, comment))
        self.data = data

    def delete(self) -> None:
        self._record("delete")
        self.data = None

    def lock(self, info: LockInfo) -> tuple[bool, LockInfo]:
        self._record("lock")
        with self._mutex:
            if self.locked is not None:
                return False, self.locked
            self.locked = info
            return True, info

    def unlock(self, info: LockInfo) -> None:
        self._record("unlock")
        with self._mutex:
            if self.locked is not None and info.id != self.locked.id:
                raise BackendError(f"lock {info.id} is not held")
            self.locked = None

    def lockable(self) -> bool:
        return self._lockable


@pytest.fixture
def memory_backend():
    """ロック不可のインメモリバックエンド。"""
    return MemoryBackend()


@pytest.fixture
def lockable_backend():
    """ロック可能なインメモリバックエンド。"""
    return MemoryBackend(lockable=True)
