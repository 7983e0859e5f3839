"""
Data models for storage layer.

Defines vault, credential and usage records shared by the core modules.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Optional


class EntitlementKind(Enum):
    """How a vault's withdraw limit is determined."""
    FIXED = "fixed"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class ProtectedCredential:
    """Encrypted gateway credential bound to its owner identity.

    Immutable: re-issuing a credential creates a new record.
    ``ciphertext`` is base64 of nonce + ciphertext + tag; ``salt`` is base64.
    """
    ciphertext: str
    salt: str
    owner_identity: str


@dataclass(frozen=True)
class SubscriptionVault:
    """Ledger-held vault, as read by this package. Never mutated locally."""
    vault_id: int
    owner: str
    provider: str
    balance: Decimal
    entitlement_kind: EntitlementKind
    withdraw_limit: Decimal
    valid_until: datetime
    selected_models: FrozenSet[str] = field(default_factory=frozenset)
    credential: Optional[ProtectedCredential] = None


@dataclass(frozen=True)
class VaultRecord:
    """Local bookkeeping row for a vault created through this package."""
    vault_id: int
    owner: str
    provider: str
    created_at: datetime
    ciphertext: Optional[str] = None
    salt: Optional[str] = None
    credential_stored: bool = False


@dataclass(frozen=True)
class UsagePendingSample:
    """Usage visible at the gateway but not yet attested.

    Counts are absolute for the credential, never increments; each sample
    replaces the previous one.
    """
    tokens: int
    requests: int
    cost: Decimal
    observed_at: datetime
    stale: bool = False
    data_unavailable: bool = False


@dataclass(frozen=True)
class UsageConfirmedSnapshot:
    """Cumulative usage the ledger has priced and settled.

    Non-decreasing in tokens, requests and cost across attestations.
    """
    tokens: int
    requests: int
    cost: Decimal
    attested_at: Optional[datetime] = None
    attestation_round: Optional[str] = None

    def __post_init__(self):
        """Validate counts are non-negative."""
        if self.tokens < 0:
            raise ValueError("tokens cannot be negative")
        if self.requests < 0:
            raise ValueError("requests cannot be negative")
        if self.cost < 0:
            raise ValueError("cost cannot be negative")

    def is_behind(self, other: "UsageConfirmedSnapshot") -> bool:
        """True if any counter is lower than the same counter in ``other``."""
        return (
            self.tokens < other.tokens
            or self.requests < other.requests
            or self.cost < other.cost
        )

    def same_counts(self, other: "UsageConfirmedSnapshot") -> bool:
        return (
            self.tokens == other.tokens
            and self.requests == other.requests
            and self.cost == other.cost
        )


EMPTY_SNAPSHOT = UsageConfirmedSnapshot(tokens=0, requests=0, cost=Decimal("0"))
