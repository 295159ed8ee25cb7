"""
Unit tests for pricing calculations and the cost ledger.

Tests cost accuracy, rounding behavior, and error handling.
"""

import os
import tempfile
from decimal import Decimal

import pytest

from genloop.core.pricing import DEFAULT_PRICING, CostLedger, PricingTable, calculate_cost
from genloop.core.token_counter import TokenUsage, usage_from_metadata
from genloop.storage.models import CostKind
from genloop.storage.repository import CostRepository


class TestTokenUsage:
    """Test TokenUsage and metadata parsing."""

    def test_total_tokens_calculation(self):
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_reported_usage(self):
        body = {"usageMetadata": {"promptTokenCount": 1200, "candidatesTokenCount": 300}}
        usage = usage_from_metadata(body)
        assert usage == TokenUsage(prompt_tokens=1200, completion_tokens=300)
        assert usage.estimated is False

    def test_missing_candidates_count(self):
        usage = usage_from_metadata({"usageMetadata": {"promptTokenCount": 10}})
        assert usage.completion_tokens == 0

    def test_fallback_is_marked_estimated(self):
        usage = usage_from_metadata({}, TokenUsage(prompt_tokens=800, completion_tokens=100))
        assert usage.prompt_tokens == 800
        assert usage.completion_tokens == 100
        assert usage.estimated is True

    def test_no_fallback(self):
        usage = usage_from_metadata({"candidates": []})
        assert usage.total_tokens == 0
        assert usage.estimated is True


class TestPricingTable:
    """Test pricing table functionality."""

    def test_default_rates(self):
        assert DEFAULT_PRICING.get_price(CostKind.TEXT_INPUT_UNITS) == Decimal("0.000002")
        assert DEFAULT_PRICING.get_price(CostKind.TEXT_OUTPUT_UNITS) == Decimal("0.000012")
        assert DEFAULT_PRICING.get_price(CostKind.IMAGE_UNITS) == Decimal("0.134")

    def test_missing_kind(self):
        table = PricingTable({CostKind.IMAGE_UNITS: Decimal("1")})
        with pytest.raises(ValueError, match="No price for cost kind"):
            table.get_price(CostKind.TEXT_INPUT_UNITS)


class TestCalculateCost:
    """Test cost calculation accuracy."""

    def test_dot_product(self):
        sums = {
            CostKind.TEXT_INPUT_UNITS: Decimal("1000000"),
            CostKind.TEXT_OUTPUT_UNITS: Decimal("0"),
            CostKind.IMAGE_UNITS: Decimal("2"),
        }
        assert calculate_cost(sums, DEFAULT_PRICING) == Decimal("2.2680")

    def test_rounds_up(self):
        sums = {CostKind.TEXT_INPUT_UNITS: Decimal("1")}
        # 0.000002 rounds up to the next ten-thousandth
        assert calculate_cost(sums, DEFAULT_PRICING) == Decimal("0.0001")

    def test_zero(self):
        assert calculate_cost({}, DEFAULT_PRICING) == Decimal("0.0000")


class TestCostLedger:
    """Test CostLedger."""

    def test_additive(self):
        ledger = CostLedger()
        ledger.record(CostKind.TEXT_INPUT_UNITS, 2000, "generate")
        ledger.record(CostKind.TEXT_INPUT_UNITS, 800, "verify")
        ledger.record(CostKind.IMAGE_UNITS, 1, "generate")

        sums = ledger.sums()
        assert sums[CostKind.TEXT_INPUT_UNITS] == Decimal("2800")
        assert sums[CostKind.IMAGE_UNITS] == Decimal("1")
        assert sums[CostKind.TEXT_OUTPUT_UNITS] == Decimal("0")
        assert len(ledger.events()) == 3
        assert ledger.total() == Decimal("0.1396")

    def test_total_never_decreases(self):
        ledger = CostLedger()
        totals = []
        for amount in (100, 0, 5000, 1):
            ledger.record(CostKind.TEXT_OUTPUT_UNITS, amount)
            totals.append(ledger.total())
        assert totals == sorted(totals)

    def test_negative_amount_rejected(self):
        ledger = CostLedger()
        with pytest.raises(ValueError, match="must be >= 0"):
            ledger.record(CostKind.IMAGE_UNITS, -1)
        assert ledger.events() == []

    def test_reset(self):
        ledger = CostLedger()
        ledger.record(CostKind.IMAGE_UNITS, 3)
        ledger.reset()
        assert ledger.total() == Decimal("0.0000")
        assert ledger.events() == []

    def test_custom_pricing(self):
        ledger = CostLedger()
        ledger.record(CostKind.IMAGE_UNITS, 2)
        pricing = PricingTable.from_rates("0", "0", "0.5")
        assert ledger.total(pricing) == Decimal("1.0000")


class TestCostLedgerPersistence:
    """Test ledger write-through to the repository."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.repository = CostRepository(self.db_path)
        self.repository.initialize()

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_events_persisted(self):
        ledger = CostLedger(self.repository)
        ledger.record(CostKind.TEXT_INPUT_UNITS, 2000, "generate")
        ledger.record(CostKind.IMAGE_UNITS, 1, "generate")

        sums = self.repository.sums_by_kind()
        assert sums[CostKind.TEXT_INPUT_UNITS] == Decimal("2000")
        assert sums[CostKind.IMAGE_UNITS] == Decimal("1")

    def test_totals_survive_new_ledger(self):
        CostLedger(self.repository).record(CostKind.IMAGE_UNITS, 1)
        CostLedger(self.repository).record(CostKind.IMAGE_UNITS, 1)

        assert calculate_cost(self.repository.sums_by_kind(), DEFAULT_PRICING) == Decimal("0.2680")

    def test_in_process_reset_keeps_persisted_events(self):
        ledger = CostLedger(self.repository)
        ledger.record(CostKind.IMAGE_UNITS, 1)
        ledger.reset()

        assert len(self.repository.recent_events()) == 1
