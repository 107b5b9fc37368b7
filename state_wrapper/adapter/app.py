"""HTTP ステートバックエンドのプロトコルアダプタ。

ラップしたツールが送る HTTP リクエストを Backend 呼び出しに変換する。
単一パス上で GET/POST/DELETE（ステート）と、ロック可能なバックエンドでは
LOCK/UNLOCK（ロック）を扱う。
"""

import getpass
import logging
import os
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, ValidationError, field_validator
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from state_wrapper.adapter.auth import SessionCredentials, require_credentials
from state_wrapper.interfaces.backend import Backend, LockInfo

STATE_PATH = "/backend"
LOCK_METHOD = "LOCK"
UNLOCK_METHOD = "UNLOCK"

logger = logging.getLogger(__name__)


# ---------- Pydantic モデル ----------


class LockInfoBody(BaseModel):
    """LOCK/UNLOCK のリクエストボディ、および 409 のレスポンスボディ。

    フィールド名はツールが送る JSON のキーに合わせている。
    """

    ID: str = ""
    Operation: str = ""
    Info: str = ""
    Who: str = ""
    Version: str = ""
    Created: str = ""
    Path: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        if v is None:
            return ""
        return v

    def to_lock_info(self) -> LockInfo:
        return LockInfo(
            id=self.ID,
            operation=self.Operation,
            info=self.Info,
            who=self.Who,
            version=self.Version,
            created=self.Created,
            path=self.Path,
        )

    @classmethod
    def from_lock_info(cls, info: LockInfo) -> "LockInfoBody":
        return cls(
            ID=info.id,
            Operation=info.operation,
            Info=info.info,
            Who=info.who,
            Version=info.version,
            Created=info.created,
            Path=info.path,
        )


# ---------- ヘルパー ----------


def current_user_display_name() -> str:
    """OS ユーザーの表示名（GECOS のフルネーム、なければログイン名）。"""
    try:
        import pwd

        entry = pwd.getpwuid(os.getuid())
    except (ImportError, KeyError):
        return getpass.getuser()
    full_name = entry.pw_gecos.split(",")[0].strip()
    return full_name or entry.pw_name


def build_comment(action: str, user: str | None = None) -> str:
    """Backend.set() に渡す説明文を組み立てる。"""
    if user is None:
        user = current_user_display_name()
    return f"updated with terraform '{action}' by '{user}'"


def get_backend(request: Request) -> Backend:
    return request.app.state.backend


def get_comment(request: Request) -> str:
    return request.app.state.comment


BackendDep = Annotated[Backend, Depends(get_backend)]
CommentDep = Annotated[str, Depends(get_comment)]


def _backend_failure(operation: str, exc: Exception) -> HTTPException:
    """バックエンドの例外を 500 に変換する。本文は例外メッセージ。"""
    logger.warning("backend %s failed: %s", operation, exc)
    return HTTPException(status_code=500, detail=str(exc))


async def _read_lock_info(request: Request) -> LockInfo:
    body = await request.body()
    if body.strip() == b"null":
        return LockInfo()
    try:
        return LockInfoBody.model_validate_json(body).to_lock_info()
    except ValidationError as e:
        logger.warning("malformed lock info: %s", e)
        raise HTTPException(status_code=500, detail=str(e)) from e


async def plain_text_http_error(
    request: Request, exc: StarletteHTTPException
) -> PlainTextResponse:
    """HTTP エラーを JSON ではなくプレーンテキストで返す。"""
    if exc.status_code == 405:
        return PlainTextResponse(
            "invalid method", status_code=405, headers=exc.headers
        )
    return PlainTextResponse(
        str(exc.detail), status_code=exc.status_code, headers=exc.headers
    )


# ---------- エンドポイント ----------


async def get_state(backend: BackendDep) -> Response:
    """現在のステートを返す。未作成なら空の 404。"""
    try:
        data = await run_in_threadpool(backend.get)
    except Exception as e:
        raise _backend_failure("get", e) from e
    if data is None:
        return Response(status_code=404)
    return Response(content=data, media_type="application/octet-stream")


async def set_state(
    request: Request,
    backend: BackendDep,
    comment: CommentDep,
    lock_id: Annotated[str, Query(alias="ID")] = "",
) -> Response:
    """リクエストボディをそのまま新しいステートとして保存する。"""
    data = await request.body()
    try:
        await run_in_threadpool(backend.set, data, lock_id, comment)
    except Exception as e:
        raise _backend_failure("set", e) from e
    return Response(status_code=200)


async def delete_state(backend: BackendDep) -> Response:
    """ステートを削除する。未作成でも 200。"""
    try:
        await run_in_threadpool(backend.delete)
    except Exception as e:
        raise _backend_failure("delete", e) from e
    return Response(status_code=200)


async def lock_state(request: Request, backend: BackendDep) -> Response:
    """ロックを取得する。競合時は現在のロック情報を付けて 409。"""
    info = await _read_lock_info(request)
    try:
        granted, current = await run_in_threadpool(backend.lock, info)
    except Exception as e:
        raise _backend_failure("lock", e) from e
    if not granted:
        return Response(
            content=LockInfoBody.from_lock_info(current).model_dump_json(),
            status_code=409,
            media_type="application/json",
        )
    return Response(status_code=200)


async def unlock_state(request: Request, backend: BackendDep) -> Response:
    """ロックを解放する。"""
    info = await _read_lock_info(request)
    try:
        await run_in_threadpool(backend.unlock, info)
    except Exception as e:
        raise _backend_failure("unlock", e) from e
    return Response(status_code=200)


def create_app(
    backend: Backend,
    credentials: SessionCredentials,
    action: str = "",
    path: str = STATE_PATH,
) -> FastAPI:
    """アダプタの FastAPI アプリケーションを構築する。

    Args:
        backend: config() 済みのバックエンド
        credentials: このセッションの認証情報
        action: 説明文に埋め込むアクション名（find_action() の結果）
        path: ステートを提供するパス

    Returns:
        LOCK/UNLOCK は backend.lockable() が真の場合のみ登録される。
        それ以外のメソッドには 405 "invalid method" を返す。
    """
    app = FastAPI(
        title="Terraform state wrapper",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.backend = backend
    app.state.credentials = credentials
    app.state.comment = build_comment(action)
    app.add_exception_handler(StarletteHTTPException, plain_text_http_error)

    router = APIRouter(dependencies=[Depends(require_credentials)])
    router.add_api_route(path, get_state, methods=["GET"])
    router.add_api_route(path, set_state, methods=["POST"])
    router.add_api_route(path, delete_state, methods=["DELETE"])
    if backend.lockable():
        router.add_api_route(path, lock_state, methods=[LOCK_METHOD])
        router.add_api_route(path, unlock_state, methods=[UNLOCK_METHOD])
    app.include_router(router)
    return app
