"""
Core modules for Usage Vault.

This package contains credential protection, ledger transaction
orchestration, pricing and usage reconciliation.
"""
