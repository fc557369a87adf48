"""Tests for coachstream.telemetry.cost - token cost estimation."""

from __future__ import annotations

import pytest

from coachstream.telemetry.cost import MODEL_ALIASES, PRICING_TABLE, estimate_cost


class TestEstimateCost:
    """Test estimate_cost against the pricing table."""

    def test_gpt_4o_mini(self):
        # 1000 * 0.00015/1k + 500 * 0.0006/1k
        assert estimate_cost("gpt-4o-mini", 1000, 500) == pytest.approx(0.00045)

    def test_gpt_4o(self):
        assert estimate_cost("gpt-4o", 2000, 1000) == pytest.approx(0.015)

    def test_dated_alias_uses_base_pricing(self):
        assert estimate_cost("gpt-4.1-2025-04-14", 1000, 1000) == estimate_cost(
            "gpt-4.1", 1000, 1000
        )

    def test_embedding_has_no_output_price(self):
        assert estimate_cost("text-embedding-3-small", 10_000, 0) == pytest.approx(0.0002)

    def test_unknown_model_returns_none(self):
        assert estimate_cost("mystery-model", 1000, 1000) is None

    def test_zero_tokens(self):
        assert estimate_cost("claude-haiku-4-5", 0, 0) == 0.0

    def test_rounded_to_six_places(self):
        cost = estimate_cost("gpt-4o-mini", 1, 1)
        assert cost == round(cost, 6)

    def test_aliases_resolve_to_known_models(self):
        for target in MODEL_ALIASES.values():
            assert target in PRICING_TABLE
