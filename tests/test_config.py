"""Tests for CreditGateConfig validation and backend selection."""

from datetime import timedelta

import pytest

from creditgate.backends import InMemoryBackend, PostgrestBackend, backend_from_config
from creditgate.config import CreditGateConfig


class TestValidate:
    def test_defaults_are_valid(self) -> None:
        CreditGateConfig().validate()

    def test_retention_must_cover_a_billing_cycle(self) -> None:
        with pytest.raises(ValueError, match="idempotency_retention_days"):
            CreditGateConfig(idempotency_retention_days=30).validate()

    def test_retention_as_timedelta(self) -> None:
        assert CreditGateConfig(idempotency_retention_days=60).idempotency_retention == timedelta(days=60)

    def test_backend_url_needs_key(self) -> None:
        with pytest.raises(ValueError, match="backend_api_key"):
            CreditGateConfig(backend_url="https://db.example.com").validate()

    def test_high_cost_threshold_positive(self) -> None:
        with pytest.raises(ValueError):
            CreditGateConfig(high_cost_threshold=0).validate()


class TestBackendFromConfig:
    def test_in_memory_without_url(self) -> None:
        assert isinstance(backend_from_config(CreditGateConfig()), InMemoryBackend)

    def test_postgrest_with_url_and_key(self) -> None:
        backend = backend_from_config(CreditGateConfig(
            backend_url="https://db.example.com", backend_api_key="service-key",
        ))
        assert isinstance(backend, PostgrestBackend)
        assert str(backend._client.base_url).rstrip("/") == "https://db.example.com/rest/v1"
        assert backend._client.headers["apikey"] == "service-key"

    def test_url_without_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            backend_from_config(CreditGateConfig(backend_url="https://db.example.com"))
