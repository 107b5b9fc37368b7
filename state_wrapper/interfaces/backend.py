"""ステートバックエンドの抽象インターフェース。

バックエンドは単一のステート（不透明なバイト列）の永続化と、
任意で排他ロックを担う。アダプタ層・オーケストレーター層は
このインターフェースを介してのみストレージにアクセスする。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


class BackendError(Exception):
    """バックエンド操作の失敗。

    アダプタ層はこの例外（およびバックエンドが送出した任意の例外）を
    500 レスポンスに変換する。メッセージはそのままレスポンス本文になる。
    """


@dataclass(frozen=True)
class LockInfo:
    """ロック情報。

    呼び出し元ツールが送ってくる JSON をそのまま保持する。
    アダプタはどのフィールドも検証しない。
    created はツールが送った RFC 3339 文字列のまま保持する。
    """

    id: str = ""
    operation: str = ""
    info: str = ""
    who: str = ""
    version: str = ""
    created: str = ""
    path: str = ""


class Backend(ABC):
    """ステートバックエンドの抽象インターフェース。

    config() は他のどのメソッドよりも先に一度だけ呼ばれる。
    各メソッドは複数リクエストから並行に呼ばれうるため、
    実装はスレッドセーフでなければならない。
    """

    @abstractmethod
    def config(self) -> None:
        """初期化する（必要な設定を環境変数等から読み込む）。

        Raises:
            ConfigurationError: 必須の設定が存在しない場合
        """
        ...

    @abstractmethod
    def get(self) -> bytes | None:
        """現在のステートを返す。未作成なら None（エラーではない）。"""
        ...

    @abstractmethod
    def set(self, data: bytes, lock_id: str, comment: str) -> None:
        """ステートを保存する。

        Args:
            data: 保存するステート
            lock_id: 呼び出し元が保持しているロックID（空ならロックなし）
            comment: 監査用の説明文。実装は無視してよい
        """
        ...

    @abstractmethod
    def delete(self) -> None:
        """ステートを削除する。存在しない場合もエラーにしない。"""
        ...

    @abstractmethod
    def lock(self, info: LockInfo) -> tuple[bool, LockInfo]:
        """ロックの取得を試みる。

        Returns:
            (取得できたか, 現在のロック情報)。取得できなかった場合は
            既存ロックの情報を返し、呼び出し元が競合を報告できるようにする。
        """
        ...

    @abstractmethod
    def unlock(self, info: LockInfo) -> None:
        """ロックを解放する。"""
        ...

    @abstractmethod
    def lockable(self) -> bool:
        """lock()/unlock() が意味を持つかどうか。

        False の場合、アダプタは LOCK/UNLOCK を公開しない。
        """
        ...
