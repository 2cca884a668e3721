"""Metering tools: perform_action, apply_purchase, purchase_webhook, check_balance, list_packages.

Thin dict-returning wrappers around MeteringEngine for HTTP handlers and
RPC surfaces. Every result carries ``success``; failures add ``error``.
"""

from __future__ import annotations

import logging
from typing import Any

from creditgate.confirmation import verify_confirmation
from creditgate.constants import CreditStatus, Tier
from creditgate.engine import MeteringEngine, credit_status
from creditgate.errors import ConfirmationError, UnknownActionError
from creditgate.settlement import PackageCatalog, SettlementResult, SettlementStatus

logger = logging.getLogger(__name__)


def _settlement_dict(result: SettlementResult) -> dict[str, Any]:
    data: dict[str, Any] = {
        "success": result.ok,
        "status": result.status.value,
        "payment_reference": result.payment_reference,
        "package_id": result.package_id,
    }
    if result.status is SettlementStatus.UNKNOWN_PACKAGE:
        data["error"] = f"Unknown package: {result.package_id}"
        return data
    data["balance_after"] = result.balance_after
    data["credits"] = result.credits
    if result.status is SettlementStatus.DUPLICATE_PAYMENT:
        data["duplicate"] = True
    elif result.status is SettlementStatus.REFERENCE_CONFLICT:
        data["error"] = (
            f"Payment reference {result.payment_reference} is already used; not credited."
        )
    return data


async def perform_action_tool(
    engine: MeteringEngine,
    tenant_id: str,
    action_key: str,
    idempotency_key: str,
) -> dict[str, Any]:
    """Gate and meter one tenant action.

    Returns dict with:
        success: True when the action may proceed.
        allowed/balance_after/cost/triggers_fired: from ActionResult.
        denied_reason/detail/shortfall: present on denial.
        requires_confirmation: True for high-cost actions, so the UI can ask first.
    """
    if not tenant_id or not idempotency_key:
        return {"success": False, "error": "tenant_id and idempotency_key are required."}

    result = await engine.perform_action(tenant_id, action_key, idempotency_key)
    data: dict[str, Any] = {"success": result.allowed, **result.to_dict()}
    try:
        definition = engine.registry.resolve(action_key)
    except UnknownActionError:
        return data
    data["requires_confirmation"] = engine.evaluator.requires_confirmation(definition)
    return data


async def apply_purchase_tool(
    engine: MeteringEngine,
    tenant_id: str,
    package_id: str,
    payment_reference: str,
) -> dict[str, Any]:
    """Credit a purchased package. Redelivery of ``payment_reference`` is a no-op."""
    if not tenant_id or not package_id or not payment_reference:
        return {
            "success": False,
            "error": "tenant_id, package_id and payment_reference are required.",
        }
    return _settlement_dict(
        await engine.apply_purchase(tenant_id, package_id, payment_reference)
    )


async def purchase_webhook_tool(
    engine: MeteringEngine,
    token: str,
) -> dict[str, Any]:
    """Settle a purchase from a payment collaborator's signed confirmation."""
    public_key = engine.config.confirmation_public_key
    if not public_key:
        return {
            "success": False,
            "error": "Misconfigured: confirmation_public_key is required to accept purchases.",
        }
    if not token:
        return {"success": False, "error": "A signed purchase confirmation is required."}

    try:
        confirmation = verify_confirmation(token, public_key)
    except ConfirmationError as e:
        logger.warning("Rejected purchase confirmation: %s", e)
        return {"success": False, "error": f"Confirmation rejected: {e}"}

    result = await engine.apply_purchase(
        confirmation.tenant_id, confirmation.package_id, confirmation.payment_reference,
    )
    data = _settlement_dict(result)
    data["tenant_id"] = confirmation.tenant_id
    return data


async def check_balance_tool(
    engine: MeteringEngine,
    tenant_id: str,
) -> dict[str, Any]:
    """Return balance, tier, grace state, counters and a low-balance hint.

    Read-only. Unknown tenants are reported, not provisioned.
    """
    summary = await engine.summary(tenant_id)
    if summary is None:
        return {"success": False, "error": f"No credit account for tenant {tenant_id}."}

    result: dict[str, Any] = {"success": True, **summary}
    warning = compute_credit_status(
        summary["balance"], Tier(summary["tier"]), engine.settlement.catalog,
    )
    if warning is not None:
        result["low_balance_warning"] = warning
    return result


def list_packages_tool(engine: MeteringEngine) -> dict[str, Any]:
    return {
        "success": True,
        "packages": [p.to_dict() for p in engine.settlement.catalog],
    }


def compute_credit_status(
    balance: int,
    tier: Tier,
    catalog: PackageCatalog | None = None,
) -> dict[str, Any] | None:
    """Compute a low-balance warning dict, or None when the balance is healthy.

    The suggested top-up is the smallest package in ``catalog``.
    """
    status = credit_status(balance, tier)
    if status in (CreditStatus.HEALTHY, CreditStatus.UNLIMITED):
        return None

    packages = sorted(catalog or PackageCatalog(), key=lambda p: p.credits)
    warning: dict[str, Any] = {
        "status": status.value,
        "balance": balance,
        "message": (
            "Credits depleted. Purchase credits to keep using paid features."
            if status is CreditStatus.DEPLETED
            else f"Low balance: {balance} credits remaining."
        ),
    }
    if packages:
        warning["suggested_package"] = packages[0].id
    return warning
