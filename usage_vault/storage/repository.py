"""
Repository pattern for data access.

Local bookkeeping for vaults created through this package and for accepted
usage attestations. The ledger remains the source of truth; these tables let
a restarted process find vaults left without a stored credential and resume
from the last confirmed snapshot.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import ProtectedCredential, UsageConfirmedSnapshot, VaultRecord


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the vault_record and usage_attestation tables if missing.

    usage_attestation is append-only: rows are never updated or deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS vault_record (
                vault_id INTEGER PRIMARY KEY,
                owner TEXT NOT NULL,
                provider TEXT NOT NULL,
                ciphertext TEXT,
                salt TEXT,
                credential_stored INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_attestation (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                vault_id INTEGER NOT NULL,
                tokens INTEGER NOT NULL,
                requests INTEGER NOT NULL,
                cost TEXT NOT NULL,
                attested_at TEXT,
                attestation_round TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_usage_attestation_vault
            ON usage_attestation (vault_id, id)
        """)
        conn.commit()
    finally:
        conn.close()


class VaultRepository:
    """Repository for vault records and attestation history.

    Each method opens its own connection, so one instance can be shared
    between threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def save_vault(self, record: VaultRecord) -> None:
        """Insert a vault record; an existing row for the same vault is kept."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR IGNORE INTO vault_record
                (vault_id, owner, provider, ciphertext, salt, credential_stored, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                record.vault_id,
                record.owner,
                record.provider,
                record.ciphertext,
                record.salt,
                int(record.credential_stored),
                record.created_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()

    def save_credential(self, vault_id: int, credential: ProtectedCredential) -> None:
        """Record the encrypted credential issued for a vault, not yet on the ledger."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE vault_record SET ciphertext = ?, salt = ?
                WHERE vault_id = ?
            """, (credential.ciphertext, credential.salt, vault_id))
            conn.commit()
        finally:
            conn.close()

    def mark_credential_stored(self, vault_id: int, credential: ProtectedCredential) -> None:
        """Record that the vault's credential is on the ledger."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE vault_record
                SET ciphertext = ?, salt = ?, credential_stored = 1
                WHERE vault_id = ?
            """, (credential.ciphertext, credential.salt, vault_id))
            conn.commit()
        finally:
            conn.close()

    def get_vault(self, vault_id: int) -> Optional[VaultRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT vault_id, owner, provider, created_at, ciphertext, salt, credential_stored
                FROM vault_record WHERE vault_id = ?
            """, (vault_id,))
            row = cursor.fetchone()
            return _row_to_vault(row) if row else None
        finally:
            conn.close()

    def list_unprotected_vaults(self, owner: Optional[str] = None) -> List[VaultRecord]:
        """Vaults created locally whose credential never reached the ledger.

        Args:
            owner: Optional filter for a specific owner

        Returns:
            Vault records ordered by creation time (oldest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT vault_id, owner, provider, created_at, ciphertext, salt, credential_stored
                FROM vault_record WHERE credential_stored = 0
            """
            params = []
            if owner:
                query += " AND owner = ?"
                params.append(owner)
            query += " ORDER BY created_at ASC"

            cursor = conn.execute(query, params)
            return [_row_to_vault(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def insert_attestation(self, vault_id: int, snapshot: UsageConfirmedSnapshot) -> None:
        """Append an accepted attestation for a vault."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO usage_attestation
                (vault_id, tokens, requests, cost, attested_at, attestation_round)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                vault_id,
                snapshot.tokens,
                snapshot.requests,
                str(snapshot.cost),
                snapshot.attested_at.isoformat() if snapshot.attested_at else None,
                snapshot.attestation_round,
            ))
            conn.commit()
        finally:
            conn.close()

    def latest_attestation(self, vault_id: int) -> Optional[UsageConfirmedSnapshot]:
        """Most recently accepted attestation for a vault, if any."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT tokens, requests, cost, attested_at, attestation_round
                FROM usage_attestation
                WHERE vault_id = ?
                ORDER BY id DESC LIMIT 1
            """, (vault_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return UsageConfirmedSnapshot(
                tokens=row[0],
                requests=row[1],
                cost=Decimal(row[2]),
                attested_at=datetime.fromisoformat(row[3]) if row[3] else None,
                attestation_round=row[4],
            )
        finally:
            conn.close()


def _row_to_vault(row) -> VaultRecord:
    return VaultRecord(
        vault_id=row[0],
        owner=row[1],
        provider=row[2],
        created_at=datetime.fromisoformat(row[3]),
        ciphertext=row[4],
        salt=row[5],
        credential_stored=bool(row[6]),
    )
