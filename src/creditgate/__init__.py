"""creditgate: credit metering and entitlement gating for multi-tenant apps.

Prices tenant actions in credits, decides whether each action may run,
debits atomically and idempotently, and settles credit purchases.
"""

__version__ = "0.1.0"

from creditgate.account import CreditTransaction, TenantCreditAccount
from creditgate.account_cache import AccountCache
from creditgate.backend import AccountBackend
from creditgate.backends import InMemoryBackend, PostgrestBackend
from creditgate.config import CreditGateConfig
from creditgate.confirmation import PurchaseConfirmation, verify_confirmation, normalize_public_key
from creditgate.constants import ActionCategory, CreditStatus, DenyReason, GraceState, Tier
from creditgate.engine import ActionResult, MeteringEngine, credit_status
from creditgate.errors import (
    AccountDataError,
    ConcurrentModificationError,
    ConfirmationError,
    CreditGateError,
    RegistryError,
    UnknownActionError,
)
from creditgate.ledger import CreditLedger, CreditResult, DebitResult, LedgerStatus
from creditgate.registry import ActionCostDefinition, ActionCostRegistry, default_registry
from creditgate.settlement import CreditPackage, PackageCatalog, SettlementResult, SettlementStatus
from creditgate.triggers import TriggerEngine, TriggerFired

__all__ = [
    "AccountBackend",
    "AccountCache",
    "AccountDataError",
    "ActionCategory",
    "ActionCostDefinition",
    "ActionCostRegistry",
    "ActionResult",
    "ConcurrentModificationError",
    "ConfirmationError",
    "CreditGateConfig",
    "CreditGateError",
    "CreditLedger",
    "CreditPackage",
    "CreditResult",
    "CreditStatus",
    "CreditTransaction",
    "DebitResult",
    "DenyReason",
    "GraceState",
    "InMemoryBackend",
    "LedgerStatus",
    "MeteringEngine",
    "PackageCatalog",
    "PostgrestBackend",
    "PurchaseConfirmation",
    "RegistryError",
    "SettlementResult",
    "SettlementStatus",
    "TenantCreditAccount",
    "Tier",
    "TriggerEngine",
    "TriggerFired",
    "UnknownActionError",
    "credit_status",
    "default_registry",
    "normalize_public_key",
    "verify_confirmation",
]
