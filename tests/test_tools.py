"""Tests for the dict-returning metering tools."""

import time
from datetime import datetime, timezone

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from creditgate.config import CreditGateConfig
from creditgate.constants import Tier
from creditgate.engine import MeteringEngine
from creditgate.settlement import CreditPackage, PackageCatalog
from creditgate.tools.metering import (
    apply_purchase_tool,
    check_balance_tool,
    compute_credit_status,
    list_packages_tool,
    perform_action_tool,
    purchase_webhook_tool,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _engine(starting_balance: int = 500, **config) -> MeteringEngine:
    return MeteringEngine(
        config=CreditGateConfig(starting_balance=starting_balance, **config),
        clock=lambda: NOW,
    )


# ---------------------------------------------------------------------------
# perform_action_tool
# ---------------------------------------------------------------------------


class TestPerformActionTool:
    @pytest.mark.asyncio
    async def test_allowed_action(self) -> None:
        result = await perform_action_tool(_engine(), "t1", "product_add", "req-1")
        assert result["success"] is True
        assert result["balance_after"] == 490
        assert result["cost"] == 10
        assert result["requires_confirmation"] is False
        assert "denied_reason" not in result

    @pytest.mark.asyncio
    async def test_high_cost_action_flags_confirmation(self) -> None:
        result = await perform_action_tool(
            _engine(starting_balance=550), "t1", "menu_create", "req-1",
        )
        assert result["requires_confirmation"] is True
        assert result["triggers_fired"] == [
            {"threshold": 500, "level": "yellow_badge", "balance_after": 450},
        ]

    @pytest.mark.asyncio
    async def test_confirmation_follows_configured_threshold(self) -> None:
        result = await perform_action_tool(
            _engine(high_cost_threshold=10), "t1", "product_add", "req-1",
        )
        assert result["requires_confirmation"] is True

    @pytest.mark.asyncio
    async def test_denial_is_not_success(self) -> None:
        result = await perform_action_tool(_engine(starting_balance=5), "t1", "product_add", "req-1")
        assert result["success"] is False
        assert result["denied_reason"] == "insufficient_credits"
        assert result["shortfall"] == 5

    @pytest.mark.asyncio
    async def test_unknown_action(self) -> None:
        result = await perform_action_tool(_engine(), "t1", "order_teleport", "req-1")
        assert result["success"] is False
        assert result["denied_reason"] == "unknown_action"
        assert "requires_confirmation" not in result

    @pytest.mark.asyncio
    async def test_requires_tenant_and_key(self) -> None:
        result = await perform_action_tool(_engine(), "t1", "product_add", "")
        assert result["success"] is False
        assert "required" in result["error"]

    @pytest.mark.asyncio
    async def test_replay_is_flagged(self) -> None:
        engine = _engine()
        await perform_action_tool(engine, "t1", "product_add", "req-1")
        replay = await perform_action_tool(engine, "t1", "product_add", "req-1")
        assert replay["replayed"] is True
        assert replay["balance_after"] == 490


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


class TestApplyPurchaseTool:
    @pytest.mark.asyncio
    async def test_purchase(self) -> None:
        result = await apply_purchase_tool(_engine(), "t1", "starter-pack", "pay_1")
        assert result["success"] is True
        assert result["balance_after"] == 2000
        assert result["credits"] == 1500

    @pytest.mark.asyncio
    async def test_duplicate_flagged(self) -> None:
        engine = _engine()
        await apply_purchase_tool(engine, "t1", "starter-pack", "pay_1")
        result = await apply_purchase_tool(engine, "t1", "starter-pack", "pay_1")
        assert result["success"] is True
        assert result["duplicate"] is True
        assert result["balance_after"] == 2000

    @pytest.mark.asyncio
    async def test_reference_matching_an_action_key_still_credits(self) -> None:
        engine = _engine()
        await perform_action_tool(engine, "t1", "product_add", "pay_1")
        result = await apply_purchase_tool(engine, "t1", "starter-pack", "pay_1")
        assert result["success"] is True
        assert result["status"] == "ok"
        assert result["balance_after"] == 1990

    @pytest.mark.asyncio
    async def test_unknown_package(self) -> None:
        result = await apply_purchase_tool(_engine(), "t1", "mega-pack", "pay_1")
        assert result["success"] is False
        assert "mega-pack" in result["error"]
        assert "balance_after" not in result

    @pytest.mark.asyncio
    async def test_missing_fields(self) -> None:
        result = await apply_purchase_tool(_engine(), "t1", "starter-pack", "")
        assert result["success"] is False


class TestPurchaseWebhookTool:
    @pytest.fixture()
    def keypair(self):
        private_key = Ed25519PrivateKey.generate()
        public_pem = private_key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        return private_key, public_pem

    def _token(self, private_key) -> str:
        return jwt.encode({
            "sub": "t9",
            "package_id": "quick-boost",
            "payment_reference": "pay_77",
            "confirmation_type": "credit-purchase-v1",
            "exp": int(time.time()) + 600,
        }, private_key, algorithm="EdDSA")

    @pytest.mark.asyncio
    async def test_settles_signed_confirmation(self, keypair) -> None:
        private_key, public_pem = keypair
        engine = _engine(confirmation_public_key=public_pem)
        result = await purchase_webhook_tool(engine, self._token(private_key))
        assert result["success"] is True
        assert result["tenant_id"] == "t9"
        assert result["balance_after"] == 1000

    @pytest.mark.asyncio
    async def test_rejects_foreign_signature(self, keypair) -> None:
        _, public_pem = keypair
        engine = _engine(confirmation_public_key=public_pem)
        result = await purchase_webhook_tool(engine, self._token(Ed25519PrivateKey.generate()))
        assert result["success"] is False
        assert result["error"].startswith("Confirmation rejected")
        assert await engine.get_balance("t9") is None

    @pytest.mark.asyncio
    async def test_misconfigured(self, keypair) -> None:
        private_key, _ = keypair
        result = await purchase_webhook_tool(_engine(), self._token(private_key))
        assert result["success"] is False
        assert "Misconfigured" in result["error"]


# ---------------------------------------------------------------------------
# check_balance_tool / list_packages_tool
# ---------------------------------------------------------------------------


class TestCheckBalanceTool:
    @pytest.mark.asyncio
    async def test_unknown_tenant(self) -> None:
        result = await check_balance_tool(_engine(), "ghost")
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_healthy_balance_has_no_warning(self) -> None:
        engine = _engine()
        await engine.provision_tenant("t1")
        result = await check_balance_tool(engine, "t1")
        assert result["success"] is True
        assert result["balance"] == 500
        assert result["grace"]["state"] == "active"
        assert "low_balance_warning" not in result

    @pytest.mark.asyncio
    async def test_depleted_balance_warns(self) -> None:
        engine = _engine(starting_balance=0)
        await engine.provision_tenant("t1")
        result = await check_balance_tool(engine, "t1")
        assert result["low_balance_warning"]["status"] == "depleted"
        assert result["low_balance_warning"]["suggested_package"] == "quick-boost"


class TestListPackagesTool:
    def test_lists_catalog(self) -> None:
        result = list_packages_tool(_engine())
        assert result["success"] is True
        assert [p["id"] for p in result["packages"]][0] == "quick-boost"


class TestComputeCreditStatus:
    def test_healthy_is_none(self) -> None:
        assert compute_credit_status(51, Tier.FREE) is None

    def test_paid_is_none(self) -> None:
        assert compute_credit_status(0, Tier.PAID) is None

    def test_critical(self) -> None:
        warning = compute_credit_status(10, Tier.FREE)
        assert warning["status"] == "critical"
        assert "10 credits" in warning["message"]

    def test_smallest_package_suggested(self) -> None:
        catalog = PackageCatalog([
            CreditPackage("big", "Big", 9000, 20000),
            CreditPackage("small", "Small", 100, 500),
        ])
        assert compute_credit_status(40, Tier.FREE, catalog)["suggested_package"] == "small"
