"""層間インターフェース定義。

全ての層はこのパッケージの抽象クラスにのみ依存する。
state_wrapper/backends/ の実装に直接依存してはならない。
"""
