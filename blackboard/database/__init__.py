"""
blackboard database package

- connection: explicitly opened SQLite handle with immediate-mode write transactions
- migrations: schema versioning for the shared database file
"""

from .connection import Database, format_timestamp, parse_timestamp, utcnow

__all__ = ["Database", "format_timestamp", "parse_timestamp", "utcnow"]
