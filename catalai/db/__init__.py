"""Datenbank-Paket: SQLite State-Management.

Stellt die Database-Klasse bereit.
"""

from catalai.db.database import Database, to_db_timestamp

__all__ = [
    "Database",
    "to_db_timestamp",
]
