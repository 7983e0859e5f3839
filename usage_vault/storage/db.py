"""
Vault database connections.

Monitor threads record attestations while the CLI reads the same file, so
every connection waits on a held write lock instead of failing at once.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "usage_vault.db"
MEMORY_DB = ":memory:"
BUSY_TIMEOUT_SECONDS = 10.0


def resolve_db_path(db_path: str) -> str:
    """Expand ``~`` and create missing parent directories for a database file.

    ``:memory:`` is returned unchanged.
    """
    if db_path == MEMORY_DB:
        return db_path
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = BUSY_TIMEOUT_SECONDS) -> sqlite3.Connection:
    """Open the vault database.

    Args:
        db_path: Path to SQLite database file, e.g. ``~/.usage_vault/vault.db``
        timeout: Seconds a writer waits for another connection's lock

    Returns:
        Connection with foreign keys on and the busy timeout applied
    """
    if timeout < 0:
        raise ValueError("timeout must be >= 0")
    conn = sqlite3.connect(resolve_db_path(db_path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
