"""
SDK for usage_vault.

Boundary clients for the LLM gateway and the ledger.
"""

from .gateway_client import GatewayClient, UsageRecord, parse_usage_payload
from .ledger_client import HttpLedgerClient

__all__ = ["GatewayClient", "HttpLedgerClient", "UsageRecord", "parse_usage_payload"]
