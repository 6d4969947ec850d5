"""
Hypothesis Property-Based Tests for pricing, overage and limit math.

Tests billing invariants without database mocking.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

from hypothesis import assume, given, settings
from hypothesis import strategies as st

from app.models.domain import ExpiredCycle, UsageIntent, compute_overage
from app.services.limits import estimate_cost
from app.services.overage import overage_cents, overage_description, should_invoice
from app.services.pricing import MODEL_PRICING, calculate_token_cost

# ============================================================================
# Hypothesis Strategies
# ============================================================================

token_counts = st.integers(min_value=0, max_value=10_000_000)
model_names = st.sampled_from([*MODEL_PRICING, "unknown-model"])
usd_amounts = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("100000"),
    places=6,
    allow_nan=False,
    allow_infinity=False,
)


@st.composite
def expired_cycles(draw):
    """Generate expired cycles with arbitrary overage."""
    start = draw(
        st.datetimes(
            min_value=datetime(2024, 1, 1),
            max_value=datetime(2030, 1, 1),
            timezones=st.just(UTC),
        )
    )
    return ExpiredCycle(
        billing_cycle_id=draw(st.uuids()),
        user_id=draw(st.text(min_size=1, max_size=50)),
        period_start=start,
        period_end=start + timedelta(days=draw(st.integers(min_value=1, max_value=31))),
        overage_amount=draw(usd_amounts),
        stripe_customer_id="cus_test",
    )


# ============================================================================
# Pricing Properties
# ============================================================================


class TestPricingProperties:
    @given(model=model_names, input_tokens=token_counts, output_tokens=token_counts)
    @settings(max_examples=100)
    def test_cost_never_negative(self, model, input_tokens, output_tokens):
        assert calculate_token_cost(model, input_tokens, output_tokens) >= 0

    @given(
        model=model_names,
        input_tokens=token_counts,
        output_tokens=token_counts,
        extra=st.integers(min_value=1, max_value=100_000),
    )
    @settings(max_examples=100)
    def test_cost_monotonic_in_output_tokens(self, model, input_tokens, output_tokens, extra):
        """More tokens never cost less."""
        assert calculate_token_cost(model, input_tokens, output_tokens + extra) >= (
            calculate_token_cost(model, input_tokens, output_tokens)
        )

    @given(model=model_names, a=token_counts, b=token_counts)
    @settings(max_examples=100)
    def test_cost_additive_across_turns(self, model, a, b):
        """Splitting input tokens over two turns costs the same."""
        assert calculate_token_cost(model, a + b, 0) == (
            calculate_token_cost(model, a, 0) + calculate_token_cost(model, b, 0)
        )


# ============================================================================
# Overage Properties
# ============================================================================


class TestOverageProperties:
    @given(cost=usd_amounts, credit=usd_amounts)
    def test_overage_is_excess_over_credit(self, cost, credit):
        overage = compute_overage(cost, credit)
        assert overage >= 0
        if cost > credit:
            assert overage == cost - credit
        else:
            assert overage == 0

    @given(amount=usd_amounts)
    def test_cents_within_half_cent(self, amount):
        """Rounded cents never drift more than half a cent from the amount."""
        assert abs(Decimal(overage_cents(amount)) - amount * 100) <= Decimal("0.5")

    @given(amount=usd_amounts, threshold=usd_amounts)
    def test_threshold_is_strict(self, amount, threshold):
        assert should_invoice(amount, threshold) == (amount > threshold)

    @given(amount=usd_amounts)
    def test_invoiced_amounts_never_round_below_minimum(self, amount):
        """Anything above the default minimum never rounds below 50 cents."""
        assume(should_invoice(amount))
        assert overage_cents(amount) >= 50

    @given(cycle=expired_cycles())
    def test_description_names_period(self, cycle):
        description = overage_description(cycle)
        assert cycle.period_start.date().isoformat() in description
        assert cycle.period_end.date().isoformat() in description


# ============================================================================
# Limit and Intent Properties
# ============================================================================


class TestLimitProperties:
    @given(a=token_counts, b=token_counts)
    def test_estimate_monotonic(self, a, b):
        assume(a <= b)
        assert estimate_cost(a) <= estimate_cost(b)

    @given(tokens=token_counts, cost=usd_amounts)
    def test_valid_intent_accepted(self, tokens, cost):
        intent = UsageIntent(
            user_id="user_1",
            conversation_id="conv_1",
            node_id="node_1",
            model="gpt-4o-2024-08-06",
            tokens_used=tokens,
            token_cost=cost,
        )
        assert intent.tokens_used == tokens
