"""
Ledger transaction templates.

Templates are opaque to the rest of the package: they are filled with the
contract address and submitted with typed arguments. Each one logs the
identifiers it touches so they can be read back from the execution log.
"""

from enum import Enum


class LedgerOperation(Enum):
    """Mutating operations this package submits."""
    CREATE_VAULT = "create_vault"
    TOP_UP = "top_up"
    STORE_CREDENTIAL = "store_credential"


CREATE_VAULT_TEMPLATE = """
import FlowToken from 0x1654653399040a61
import FungibleToken from 0xf233dcee88fe0abe
import EncryptedUsageSubscriptions from {contract_address}

transaction(providerAddress: Address, initialDeposit: UFix64, entitlementKind: String,
            withdrawLimit: UFix64, validForSeconds: UFix64, selectedModels: [String]) {{
    prepare(customer: auth(BorrowValue, Storage, Capabilities) &Account) {{
        let flowVaultRef = customer.storage.borrow<auth(FungibleToken.Withdraw) &FlowToken.Vault>(
            from: /storage/flowTokenVault
        ) ?? panic("Could not borrow Flow vault")
        let deposit <- flowVaultRef.withdraw(amount: initialDeposit) as! @FlowToken.Vault

        let vault <- EncryptedUsageSubscriptions.createSubscriptionVault(
            customer: customer.address,
            provider: providerAddress,
            initialDeposit: <- deposit,
            entitlementType: entitlementKind,
            withdrawLimit: withdrawLimit,
            validityPeriod: validForSeconds,
            selectedModels: selectedModels
        )
        let vaultId = vault.id
        customer.storage.save(<- vault, to: EncryptedUsageSubscriptions.VaultStoragePath)
        log("Vault ID: ".concat(vaultId.toString()))
    }}
}}
"""

TOP_UP_TEMPLATE = """
import FlowToken from 0x1654653399040a61
import FungibleToken from 0xf233dcee88fe0abe
import EncryptedUsageSubscriptions from {contract_address}

transaction(vaultId: UInt64, amount: UFix64, idempotencyKey: String) {{
    prepare(customer: auth(BorrowValue, Storage) &Account) {{
        let flowVaultRef = customer.storage.borrow<auth(FungibleToken.Withdraw) &FlowToken.Vault>(
            from: /storage/flowTokenVault
        ) ?? panic("Could not borrow Flow vault")
        let payment <- flowVaultRef.withdraw(amount: amount)
        EncryptedUsageSubscriptions.topUp(vaultId: vaultId, payment: <- payment, requestKey: idempotencyKey)
        log("Topped up vault #".concat(vaultId.toString()))
    }}
}}
"""

STORE_CREDENTIAL_TEMPLATE = """
import EncryptedUsageSubscriptions from {contract_address}

transaction(vaultId: UInt64, encryptedKey: String, salt: String, idempotencyKey: String) {{
    prepare(customer: auth(BorrowValue, Storage) &Account) {{
        let vaultRef = customer.storage.borrow<&EncryptedUsageSubscriptions.SubscriptionVault>(
            from: EncryptedUsageSubscriptions.VaultStoragePath
        ) ?? panic("Could not borrow subscription vault")
        vaultRef.setEncryptedCredential(vaultId: vaultId, encryptedKey: encryptedKey, salt: salt, requestKey: idempotencyKey)
        log("Stored credential for vault #".concat(vaultId.toString()))
    }}
}}
"""

TEMPLATES = {
    LedgerOperation.CREATE_VAULT: CREATE_VAULT_TEMPLATE,
    LedgerOperation.TOP_UP: TOP_UP_TEMPLATE,
    LedgerOperation.STORE_CREDENTIAL: STORE_CREDENTIAL_TEMPLATE,
}


def render(operation: LedgerOperation, contract_address: str) -> str:
    """Fill a template with the deployed contract address."""
    return TEMPLATES[operation].format(contract_address=contract_address)
