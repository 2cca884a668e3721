"""Constants and enums for credit metering and entitlement gating."""

from enum import Enum


STARTING_FREE_BALANCE = 500  # credits granted when a tenant is provisioned
FREE_TIER_MONTHLY_CREDITS = 500
HIGH_COST_THRESHOLD = 75  # actions at or above this need UI confirmation

# Progressive low-balance warnings, highest first.
DEFAULT_THRESHOLDS: tuple[int, ...] = (2000, 1000, 500, 100)

GRACE_DURATION_HOURS = 24
GRACE_ACTION_BUDGET = 5
GRACE_MAX_ACTION_COST = 100

MIN_BALANCE_BUFFER_FLOOR = 25
MIN_BALANCE_BUFFER_PERCENT = 10

CREDIT_STATUS_CRITICAL = 15
CREDIT_STATUS_WARNING = 50

# How long an idempotency key is answered from the account row. Must outlive
# one billing cycle so the monthly free-grant key is never forgotten early.
IDEMPOTENCY_RETENTION_DAYS = 45


class ActionCategory(str, Enum):
    """Product area an action belongs to."""

    COMMAND_CENTER = "command_center"
    SALES = "sales"
    ORDERS = "orders"
    MENUS = "menus"
    WHOLESALE = "wholesale"
    LOYALTY = "loyalty"
    COUPONS = "coupons"
    POS = "pos"
    INVENTORY = "inventory"
    CUSTOMERS = "customers"
    CRM = "crm"
    INVOICES = "invoices"
    OPERATIONS = "operations"
    DELIVERY = "delivery"
    FLEET = "fleet"
    ANALYTICS = "analytics"
    REPORTS = "reports"
    EXPORTS = "exports"
    AI = "ai"
    API = "api"
    INTEGRATIONS = "integrations"
    COMPLIANCE = "compliance"
    MARKETPLACE = "marketplace"


class Tier(str, Enum):
    FREE = "free"
    PAID = "paid"


class GraceState(str, Enum):
    """Zero-balance state machine: ACTIVE -> GRACE -> BLOCKED -> ACTIVE."""

    ACTIVE = "active"
    GRACE = "grace"
    BLOCKED = "blocked"


class DenyReason(str, Enum):
    UNKNOWN_ACTION = "unknown_action"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    FEATURE_NOT_AVAILABLE = "feature_not_available"
    CAP_EXCEEDED = "cap_exceeded"
    MINIMUM_BALANCE = "minimum_balance"
    GRACE_BLOCKED = "grace_blocked"
    TENANT_INACTIVE = "tenant_inactive"
    EVALUATION_FAILED = "evaluation_failed"
    IDEMPOTENCY_CONFLICT = "idempotency_conflict"


class TransactionKind(str, Enum):
    INITIAL_GRANT = "initial_grant"
    USAGE = "usage"
    GRACE_USAGE = "grace_usage"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"
    ALLOCATION = "allocation"


class CreditStatus(str, Enum):
    """Coarse balance health used by dashboards."""

    UNLIMITED = "unlimited"
    DEPLETED = "depleted"
    CRITICAL = "critical"
    WARNING = "warning"
    HEALTHY = "healthy"
