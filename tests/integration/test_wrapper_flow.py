"""統合テスト — Wrapper が子プロセスを起動し、子プロセスが HTTP でステートを読み書きする一連フロー."""

import json
import os
import socket
import sys
import threading
import time
import urllib.parse

import pytest

from state_wrapper.backends.file import FileBackend
from state_wrapper.errors import (
    ChildLaunchError,
    ConfigurationError,
    RunCancelled,
    ServeError,
    UsageError,
)
from state_wrapper.wrapper.orchestrator import Wrapper, WrapperState

# 子プロセス側で使う HTTP クライアント
CHILD_PRELUDE = """
import base64, json, os, sys, urllib.error, urllib.request

URL = os.environ["TF_HTTP_ADDRESS"]
TOKEN = base64.b64encode(
    (os.environ["TF_HTTP_USERNAME"] + ":" + os.environ["TF_HTTP_PASSWORD"]).encode()
).decode()

def call(method, body=None, query="", auth=True):
    headers = {"Authorization": "Basic " + TOKEN} if auth else {}
    request = urllib.request.Request(URL + query, data=body, method=method, headers=headers)
    try:
        with urllib.request.urlopen(request, timeout=10) as resp:
            return resp.status, resp.read()
    except urllib.error.HTTPError as e:
        return e.code, e.read()

def report(path, value):
    with open(path, "w") as f:
        json.dump(value, f)
"""


def _child(script: str, *args: str) -> list[str]:
    return [sys.executable, "-c", CHILD_PRELUDE + script, *args]


def _read(path):
    with open(path) as f:
        return json.load(f)


class TestStateRoundTrip:
    """シナリオ A: 空のバックエンド → GET 404 → POST → GET 200。"""

    def test_get_post_get(self, memory_backend, tmp_path):
        out = tmp_path / "out.json"
        script = """
results = []
status, body = call("GET")
results.append([status, body.decode()])
status, body = call("POST", b"state-v1")
results.append([status, body.decode()])
status, body = call("GET")
results.append([status, body.decode()])
report(sys.argv[1], results)
"""
        wrapper = Wrapper(memory_backend, _child(script, str(out)), environ=dict(os.environ))
        assert wrapper.run() == 0
        assert wrapper.state is WrapperState.TERMINATED
        assert _read(out) == [[404, ""], [200, ""], [200, "state-v1"]]
        assert memory_backend.configured

    def test_file_backend_end_to_end(self, tmp_path, monkeypatch):
        """FileBackend でもステートがファイルに保存される。"""
        state = tmp_path / "terraform.tfstate"
        monkeypatch.setenv("TF_STATE_WRAPPER_FILE_PATH", str(state))
        script = """
assert call("POST", b'{"serial": 1}')[0] == 200
assert call("GET") == (200, b'{"serial": 1}')
assert call("DELETE")[0] == 200
assert call("DELETE")[0] == 200
assert call("GET")[0] == 404
call("POST", b'{"serial": 2}')
"""
        assert Wrapper(FileBackend(), _child(script)).run() == 0
        assert state.read_bytes() == b'{"serial": 2}'


class TestSetArguments:
    """シナリオ B: POST の ID クエリがロックIDとして set() に渡る。"""

    def test_lock_id_passed_to_backend(self, memory_backend):
        memory_backend.data = b"old"
        script = """
status, _ = call("POST", b"new", query="?ID=lock-123")
sys.exit(0 if status == 200 else 1)
"""
        assert Wrapper(memory_backend, _child(script)).run() == 0
        data, lock_id, comment = memory_backend.set_calls[0]
        assert data == b"new"
        assert lock_id == "lock-123"
        assert comment.startswith(f"updated with terraform '{sys.executable}' by '")


class TestConcurrentLocks:
    """シナリオ C: 異なる ID の LOCK を同時に送ると、片方だけが成功する。"""

    def test_exactly_one_lock_wins(self, lockable_backend, tmp_path):
        out = tmp_path / "out.json"
        script = """
import threading

assert os.environ["TF_HTTP_LOCK_ADDRESS"] == URL
assert os.environ["TF_HTTP_UNLOCK_ADDRESS"] == URL
barrier = threading.Barrier(2)
results = {}

def attempt(lock_id):
    body = json.dumps({"ID": lock_id, "Operation": "OperationTypeApply", "Who": lock_id + "@host"}).encode()
    barrier.wait()
    status, payload = call("LOCK", body)
    results[lock_id] = [status, json.loads(payload) if payload else None]

threads = [threading.Thread(target=attempt, args=(i,)) for i in ("lock-a", "lock-b")]
for t in threads:
    t.start()
for t in threads:
    t.join()
report(sys.argv[1], results)
"""
        assert Wrapper(lockable_backend, _child(script, str(out))).run() == 0

        results = _read(out)
        statuses = sorted(status for status, _ in results.values())
        assert statuses == [200, 409]
        winner = next(k for k, (status, _) in results.items() if status == 200)
        loser = next(k for k, (status, _) in results.items() if status == 409)
        holder = results[loser][1]
        assert holder["ID"] == winner
        assert holder["Who"] == f"{winner}@host"
        assert holder["Operation"] == "OperationTypeApply"
        assert lockable_backend.locked.id == winner

    def test_lock_methods_not_exposed_without_locking(self, memory_backend):
        script = """
assert "TF_HTTP_LOCK_ADDRESS" not in os.environ
status, body = call("LOCK", b"{}")
sys.exit(0 if (status, body) == (405, b"invalid method") else 1)
"""
        assert Wrapper(memory_backend, _child(script)).run() == 0
        assert memory_backend.calls == []


class TestExitCode:
    """シナリオ D: 子プロセスの終了コードをそのまま返す。"""

    def test_nonzero_exit_propagated(self, memory_backend):
        wrapper = Wrapper(memory_backend, [sys.executable, "-c", "import sys; sys.exit(7)"])
        assert wrapper.run() == 7
        assert wrapper.state is WrapperState.TERMINATED

    def test_zero_exit(self, memory_backend):
        assert Wrapper(memory_backend, [sys.executable, "-c", "pass"]).run() == 0

    def test_wrapper_main_exits_with_child_status(self, tmp_path):
        """CLI 経由でもプロセスの終了コードが子プロセスと一致する。"""
        import subprocess

        env = dict(os.environ, TF_STATE_WRAPPER_FILE_PATH=str(tmp_path / "s.tfstate"))
        result = subprocess.run(
            [
                sys.executable,
                "-c",
                "from state_wrapper.cli import main; main()",
                sys.executable,
                "-c",
                "import sys; sys.exit(7)",
            ],
            env=env,
            cwd=os.path.dirname(os.path.dirname(os.path.dirname(__file__))),
            timeout=60,
        )
        assert result.returncode == 7


class TestAuthenticationEndToEnd:
    def test_unauthenticated_request_rejected(self, memory_backend):
        """認証なしのリクエストは 401 で、ステートは変わらない。"""
        script = """
status, body = call("POST", b"evil", auth=False)
sys.exit(0 if (status, body) == (401, b"Unauthorized") else 1)
"""
        assert Wrapper(memory_backend, _child(script)).run() == 0
        assert memory_backend.set_calls == []


class TestEnvironment:
    def test_parent_environment_untouched(self, memory_backend, monkeypatch):
        """接続情報は子プロセスの環境にのみ設定される。"""
        monkeypatch.delenv("TF_HTTP_ADDRESS", raising=False)
        script = "sys.exit(0 if URL.startswith('http://127.0.0.1:') and URL.endswith('/backend') else 1)"
        wrapper = Wrapper(memory_backend, _child(script))
        assert wrapper.run() == 0
        assert "TF_HTTP_ADDRESS" not in os.environ
        assert wrapper.url.startswith("http://127.0.0.1:")
        assert len(wrapper.credentials.password) == 32

    def test_credentials_differ_between_runs(self, memory_backend):
        first = Wrapper(memory_backend, [sys.executable, "-c", "pass"])
        first.run()
        time.sleep(0.02)
        second = Wrapper(memory_backend, [sys.executable, "-c", "pass"])
        second.run()
        assert first.credentials.password != second.credentials.password


class TestSetupFailures:
    """セットアップ段階の致命的エラー。"""

    def test_config_failure(self, monkeypatch):
        monkeypatch.delenv("TF_STATE_WRAPPER_FILE_PATH", raising=False)
        wrapper = Wrapper(FileBackend(), [sys.executable, "-c", "pass"])
        with pytest.raises(ConfigurationError, match="TF_STATE_WRAPPER_FILE_PATH"):
            wrapper.run()
        assert wrapper.state is WrapperState.TERMINATED
        assert wrapper.url is None

    def test_missing_command(self, memory_backend):
        """子プロセスのコマンドがなければ UsageError。リスナーも解放される。"""
        wrapper = Wrapper(memory_backend, [])
        with pytest.raises(UsageError, match="usage"):
            wrapper.run()
        assert wrapper.state is WrapperState.TERMINATED
        port = urllib.parse.urlsplit(wrapper.url).port
        with pytest.raises(ConnectionRefusedError):
            socket.create_connection(("127.0.0.1", port), timeout=1).close()

    def test_command_not_found(self, memory_backend, tmp_path):
        with pytest.raises(ChildLaunchError):
            Wrapper(memory_backend, [str(tmp_path / "no-such-terraform")]).run()

    def test_run_only_once(self, memory_backend):
        wrapper = Wrapper(memory_backend, [sys.executable, "-c", "pass"])
        wrapper.run()
        with pytest.raises(RuntimeError):
            wrapper.run()


class TestCancel:
    def test_cancel_kills_child(self, memory_backend):
        """キャンセルで子プロセスが停止し、RunCancelled になる。"""
        wrapper = Wrapper(memory_backend, [sys.executable, "-c", "import time; time.sleep(60)"])

        def _cancel_when_running():
            deadline = time.monotonic() + 30
            while wrapper.state is not WrapperState.CHILD_RUNNING:
                if time.monotonic() > deadline:
                    return
                time.sleep(0.01)
            wrapper.cancel()

        canceller = threading.Thread(target=_cancel_when_running)
        canceller.start()
        started = time.monotonic()
        with pytest.raises(RunCancelled):
            wrapper.run()
        canceller.join()
        assert time.monotonic() - started < 30
        assert wrapper.state is WrapperState.TERMINATED


class TestServeFailure:
    def test_server_death_kills_child(self, memory_backend):
        """子プロセスの実行中にアダプタが停止したら、子プロセスを止めて ServeError。"""
        wrapper = Wrapper(memory_backend, [sys.executable, "-c", "import time; time.sleep(60)"])

        def _stop_server_when_running():
            deadline = time.monotonic() + 30
            while wrapper.state is not WrapperState.CHILD_RUNNING:
                if time.monotonic() > deadline:
                    return
                time.sleep(0.01)
            wrapper._adapter._server.should_exit = True

        stopper = threading.Thread(target=_stop_server_when_running)
        stopper.start()
        started = time.monotonic()
        with pytest.raises(ServeError, match="stopped unexpectedly"):
            wrapper.run()
        stopper.join()
        assert time.monotonic() - started < 30
        assert wrapper._child.returncode is not None
        assert wrapper.state is WrapperState.TERMINATED
