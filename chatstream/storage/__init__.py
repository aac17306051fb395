from .sqlite_db import SQLiteDB

__all__ = ["SQLiteDB"]
