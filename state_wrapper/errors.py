"""ラッパー実行時の致命的エラー。

これらは Wrapper.run() から送出され、CLI が診断メッセージを出して
非ゼロで終了する。リクエスト単位のエラーは HTTP 層で処理され、
ここには現れない。
"""


class WrapperError(Exception):
    """実行を継続できないエラーの基底クラス。"""


class ConfigurationError(WrapperError):
    """設定の不足・不正（バックエンドの config() 失敗を含む）。"""


class ListenerError(WrapperError):
    """ループバックでのリッスンに失敗した。"""


class ServeError(WrapperError):
    """アダプタサーバーが起動できなかった、または予期せず停止した。"""


class UsageError(WrapperError):
    """子プロセスのコマンドが指定されていない。"""


class ChildLaunchError(WrapperError):
    """子プロセスを起動できなかった、または待機に失敗した。"""


class RunCancelled(WrapperError):
    """実行がキャンセルされ、子プロセスを停止した。"""
