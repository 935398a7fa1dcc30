from .factory import sqlite_store_factory
from .handle import SQLiteRemoteStore
from .notifier import SQLiteChangeNotifier

__all__ = ["sqlite_store_factory", "SQLiteRemoteStore", "SQLiteChangeNotifier"]
