"""セッション認証情報と Basic 認証。

認証情報は実行ごとに一度だけ生成され、メモリと子プロセスの環境変数にのみ
存在する。ループバック限定のバインドが実際のセキュリティ境界であり、
パスワードは同一ホスト上の他プロセスに対する追加の防御に過ぎない。
"""

import random
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

USERNAME = "auth"
PASSWORD_LENGTH = 32
PASSWORD_ALPHABET = string.ascii_lowercase + string.ascii_uppercase


def random_password(
    length: int = PASSWORD_LENGTH, rng: random.Random | None = None
) -> str:
    """英大文字・小文字からなるランダム文字列を返す。

    実行ごとに異なる値であればよく、暗号強度は求めない。
    """
    if rng is None:
        rng = random.Random(time.time_ns())
    return "".join(rng.choice(PASSWORD_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class SessionCredentials:
    """1回の実行で使う認証情報。"""

    username: str = USERNAME
    password: str = field(default_factory=random_password, repr=False)

    def matches(self, username: str, password: str) -> bool:
        """ユーザー名とパスワードが一致するか（定数時間比較）。"""
        user_ok = secrets.compare_digest(
            username.encode("utf-8"), self.username.encode("utf-8")
        )
        password_ok = secrets.compare_digest(
            password.encode("utf-8"), self.password.encode("utf-8")
        )
        return user_ok and password_ok


_basic = HTTPBasic(auto_error=False)


def require_credentials(
    request: Request,
    supplied: Annotated[HTTPBasicCredentials | None, Depends(_basic)],
) -> None:
    """Basic 認証を検証する。不一致なら 401 でリクエストを打ち切る。"""
    expected: SessionCredentials = request.app.state.credentials
    if supplied is None or not expected.matches(
        supplied.username, supplied.password
    ):
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
