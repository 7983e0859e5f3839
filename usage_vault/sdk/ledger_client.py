"""
HTTP ledger client.

Talks to a ledger relay that accepts filled transaction templates with typed
arguments and reports transaction status, block and execution log.
"""

import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from ..core.errors import LedgerUnavailable
from ..core.transactions import LedgerArgument

logger = logging.getLogger(__name__)


class HttpLedgerClient:
    """LedgerClient implementation over HTTP.

    POST /transactions   {"script": ..., "arguments": [...]} -> {"id": ...}
    GET  /transactions/{id} -> {"status_code", "block_id", "logs", "error_message"}
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required and cannot be empty")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout, headers=headers, transport=transport
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpLedgerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def submit_transaction(self, script: str, args: Sequence[LedgerArgument]) -> str:
        payload = self._request(
            "POST",
            "/transactions",
            json={"script": script, "arguments": [arg.to_json() for arg in args]},
        )
        tx_id = payload.get("id") if isinstance(payload, dict) else None
        if not tx_id:
            raise LedgerUnavailable("Ledger did not return a transaction id")
        return str(tx_id)

    def get_transaction_status(self, tx_id: str) -> Dict[str, Any]:
        payload = self._request("GET", f"/transactions/{tx_id}")
        if not isinstance(payload, dict) or "status_code" not in payload:
            raise LedgerUnavailable(f"Malformed status for transaction {tx_id}")
        return {
            "status_code": payload["status_code"],
            "block_id": payload.get("block_id"),
            "logs": list(payload.get("logs") or []),
            "error_message": payload.get("error_message") or None,
        }

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise LedgerUnavailable(f"Ledger {method} {path} failed: {e}") from e
        except ValueError as e:
            raise LedgerUnavailable(f"Ledger {method} {path} returned invalid JSON") from e
