"""
LLM gateway client.

Issues per-vault gateway credentials and reads raw usage records. Usage
responses come in several shapes; they are normalized here into a single
record type so nothing else depends on the wire format.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..core.cipher import key_preview
from ..core.errors import GatewayUnavailable

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "https://llm.p10p.io"
DEFAULT_MODELS = ("gpt-3.5-turbo", "gpt-4", "claude-3-sonnet", "llama-2-70b")

_RECORD_LIST_KEYS = ("data", "logs", "usage")


@dataclass(frozen=True)
class UsageRecord:
    """One gateway usage record after normalization."""
    tokens: int
    requests: int
    cost: Optional[Decimal]
    model: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UsageSummary:
    """Absolute usage totals for a credential, as pushed by the gateway."""
    tokens: int
    requests: int
    cost: Decimal


def parse_usage_summary(payload: Any) -> Optional[UsageSummary]:
    """Read a pushed ``{tokens, requests, cost}`` summary.

    Returns:
        The summary, or None if the payload is not a summary object

    Raises:
        GatewayUnavailable: If the summary has invalid or negative numbers
    """
    if not isinstance(payload, dict) or "tokens" not in payload:
        return None
    if any(isinstance(payload.get(key), list) for key in _RECORD_LIST_KEYS):
        return None

    try:
        tokens = int(payload["tokens"])
        requests = int(payload.get("requests", 0))
        cost = Decimal(str(payload.get("cost", 0)))
    except (TypeError, ValueError, InvalidOperation):
        raise GatewayUnavailable("Usage summary has invalid numbers") from None
    if tokens < 0 or requests < 0 or not cost.is_finite() or cost < 0:
        raise GatewayUnavailable("Usage summary has negative counts")

    return UsageSummary(tokens=tokens, requests=requests, cost=cost)


def parse_usage_payload(payload: Any) -> List[UsageRecord]:
    """Normalize a gateway usage response into records.

    Accepted shapes: a bare list, or an object holding the list under
    ``data``, ``logs`` or ``usage``.

    Raises:
        GatewayUnavailable: If the payload has none of the known shapes
    """
    if isinstance(payload, list):
        raw_records = payload
    elif isinstance(payload, dict):
        raw_records = None
        for key in _RECORD_LIST_KEYS:
            if isinstance(payload.get(key), list):
                raw_records = payload[key]
                break
        if raw_records is None:
            raise GatewayUnavailable(
                f"Unrecognized usage response with keys {sorted(payload.keys())}"
            )
    else:
        raise GatewayUnavailable(f"Unrecognized usage response of type {type(payload).__name__}")

    return [_parse_record(raw, i) for i, raw in enumerate(raw_records)]


def _parse_record(raw: Any, index: int) -> UsageRecord:
    if not isinstance(raw, dict):
        raise GatewayUnavailable(f"Usage record at index {index} is not an object")

    try:
        tokens = int(raw.get("total_tokens", raw.get("tokens", 0)) or 0)
        requests = int(raw.get("requests", 1))
        raw_cost = raw.get("cost", raw.get("spend"))
        cost = Decimal(str(raw_cost)) if raw_cost is not None else None
    except (TypeError, ValueError, InvalidOperation):
        raise GatewayUnavailable(f"Usage record at index {index} has invalid numbers") from None

    if tokens < 0 or requests < 0 or (cost is not None and cost < 0):
        raise GatewayUnavailable(f"Usage record at index {index} has negative counts")

    timestamp = None
    raw_ts = raw.get("timestamp") or raw.get("startTime")
    if isinstance(raw_ts, str):
        try:
            timestamp = datetime.fromisoformat(raw_ts.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Ignoring unparseable timestamp %r", raw_ts)

    return UsageRecord(
        tokens=tokens,
        requests=requests,
        cost=cost,
        model=raw.get("model"),
        timestamp=timestamp,
    )


class GatewayClient:
    """Synchronous client for the gateway's key and usage endpoints.

    All transport failures surface as GatewayUnavailable.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GATEWAY_URL,
        admin_key: Optional[str] = None,
        timeout: float = 3.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the gateway client.

        Args:
            base_url: Gateway root URL
            admin_key: Bearer key for admin endpoints
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required and cannot be empty")

        headers = {"Content-Type": "application/json"}
        if admin_key:
            headers["Authorization"] = f"Bearer {admin_key}"

        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url, timeout=timeout, headers=headers, transport=transport
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_usage(self, credential_id: str, since: Optional[datetime] = None) -> List[UsageRecord]:
        """GET /usage for a credential.

        Raises:
            GatewayUnavailable: On transport errors, HTTP errors or unknown shapes
        """
        params: Dict[str, str] = {"credential": credential_id}
        if since is not None:
            params["since"] = since.isoformat()
        payload = self._request("GET", "/usage", params=params)
        return parse_usage_payload(payload)

    def create_credential(
        self,
        vault_id: int,
        owner: str,
        provider: str,
        models: Sequence[str] = DEFAULT_MODELS,
        max_budget: float = 100.0,
        budget_duration: str = "30d",
    ) -> str:
        """Issue a new gateway key for a vault.

        Raises:
            GatewayUnavailable: If the key cannot be created
        """
        body = {
            "key_alias": f"vault_{vault_id}_{owner[2:8]}",
            "user_id": owner,
            "models": list(models),
            "max_budget": max_budget,
            "budget_duration": budget_duration,
            "metadata": {
                "vaultId": vault_id,
                "customer": owner,
                "provider": provider,
                "createdAt": datetime.now(timezone.utc).isoformat(),
                "type": "subscription_key",
                "request_nonce": secrets.token_hex(8),
            },
        }
        payload = self._request("POST", "/key/generate", json=body)
        key = payload.get("key") if isinstance(payload, dict) else None
        if not key:
            raise GatewayUnavailable("Gateway did not return a key")
        logger.info("Created gateway key %s for vault %s", key_preview(key), vault_id)
        return key

    def revoke_credential(self, credential: str) -> None:
        """Delete a gateway key."""
        self._request("POST", "/key/delete", json={"keys": [credential]})
        logger.info("Revoked gateway key %s", key_preview(credential))

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Gateway {method} {path} failed: {e}") from e
        except ValueError as e:
            raise GatewayUnavailable(f"Gateway {method} {path} returned invalid JSON") from e
