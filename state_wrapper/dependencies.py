"""バックエンドのレジストリとファクトリ関数。

state_wrapper/ 直下に配置することで、adapter/ や wrapper/ から
backends/ への直接依存を避ける。
"""

from state_wrapper.backends.file import FileBackend
from state_wrapper.errors import ConfigurationError
from state_wrapper.interfaces.backend import Backend

BACKEND_REGISTRY: dict[str, type[Backend]] = {
    "file": FileBackend,
}
"""利用可能なバックエンドのレジストリ。

キーは TF_STATE_WRAPPER_BACKEND に指定する名前。
新しいバックエンドを追加する際はここに登録するだけでよい。
"""


def create_backend(name: str) -> Backend:
    """名前からバックエンドを構築する（config() は呼ばない）。

    Raises:
        ConfigurationError: 未知のバックエンド名が指定された場合
    """
    backend_cls = BACKEND_REGISTRY.get(name)
    if backend_cls is None:
        known = ", ".join(sorted(BACKEND_REGISTRY))
        raise ConfigurationError(
            f"Unknown backend: {name!r} (available: {known})"
        )
    return backend_cls()
