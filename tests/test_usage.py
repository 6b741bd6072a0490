from datetime import UTC, datetime

import pytest

from memoria.providers.costs import calculate_cost, price_for
from memoria.providers.usage import UsageLedger, UsageRecord, month_start


def _record(cost: float, *, job_type: str = "respond", model: str = "claude-sonnet") -> UsageRecord:
    return UsageRecord(
        workspace_id="ws1",
        job_type=job_type,
        model=model,
        input_tokens=1000,
        output_tokens=200,
        cost_cents=cost,
    )


def test_monthly_usage_ignores_previous_month(ledger: UsageLedger) -> None:
    now = datetime(2026, 3, 15, 12, tzinfo=UTC)
    ledger.track_usage(_record(40.0), created_at=datetime(2026, 2, 28, 23, tzinfo=UTC))
    ledger.track_usage(_record(1.5), created_at=datetime(2026, 3, 1, 0, 5, tzinfo=UTC))
    ledger.track_usage(_record(2.5), created_at=datetime(2026, 3, 10, tzinfo=UTC))

    usage = ledger.get_monthly_usage("ws1", now=now)
    assert usage.total_cost_cents == pytest.approx(4.0)
    assert usage.job_count == 2
    assert usage.total_input_tokens == 2000
    assert usage.total_output_tokens == 400


def test_budget_check(ledger: UsageLedger) -> None:
    now = datetime(2026, 3, 15, tzinfo=UTC)
    ledger.set_budget("ws1", 10)
    ledger.track_usage(_record(4.0), created_at=now)
    status = ledger.check_budget("ws1", now=now)
    assert status.within_budget
    assert status.remaining_cents == pytest.approx(6.0)

    ledger.track_usage(_record(6.0), created_at=now)
    status = ledger.check_budget("ws1", now=now)
    assert not status.within_budget
    assert status.remaining_cents == 0.0


def test_default_budget_applies(tmp_path) -> None:
    ledger = UsageLedger(tmp_path / "u.db", default_budget_cents=250)
    try:
        assert ledger.get_workspace_budget("ws-new") == 250
        assert ledger.check_budget("ws-new").within_budget
    finally:
        ledger.close()


def test_negative_budget_rejected(ledger: UsageLedger) -> None:
    with pytest.raises(ValueError):
        ledger.set_budget("ws1", -1)


def test_ai_toggle_is_independent_of_budget(ledger: UsageLedger) -> None:
    assert ledger.is_ai_enabled("ws1")
    ledger.set_budget("ws1", 50)
    ledger.set_ai_enabled("ws1", False)
    assert not ledger.is_ai_enabled("ws1")
    assert ledger.get_workspace_budget("ws1") == 50
    ledger.set_ai_enabled("ws1", True)
    assert ledger.is_ai_enabled("ws1")


def test_usage_stats_grouped_costliest_first(ledger: UsageLedger) -> None:
    now = datetime(2026, 3, 15, tzinfo=UTC)
    ledger.track_usage(_record(0.0, job_type="embed", model="nomic-embed-text"), created_at=now)
    ledger.track_usage(_record(0.0, job_type="embed", model="nomic-embed-text"), created_at=now)
    ledger.track_usage(_record(3.0), created_at=now)

    stats = ledger.get_usage_stats("ws1", days=30, now=now)
    assert [(s.job_type, s.calls) for s in stats] == [("respond", 1), ("embed", 2)]
    assert stats[1].input_tokens == 2000


def test_month_start() -> None:
    assert month_start(datetime(2026, 3, 15, 8, 30, tzinfo=UTC)) == datetime(2026, 3, 1, tzinfo=UTC)


@pytest.mark.parametrize(
    ("model", "input_tokens", "output_tokens", "expected"),
    [
        ("anthropic/claude-sonnet-4", 1_000_000, 0, 300.0),
        ("claude-3-5-haiku", 1_000_000, 1_000_000, 150.0),
        ("openai/text-embedding-3-small", 500, 0, 0.001),
        ("granite4:1b", 1_000_000, 1_000_000, 0.0),
    ],
)
def test_calculate_cost(model, input_tokens, output_tokens, expected) -> None:
    cost = calculate_cost(model, input_tokens=input_tokens, output_tokens=output_tokens)
    assert cost == pytest.approx(expected, abs=1e-4)


def test_cost_rounds_up() -> None:
    assert calculate_cost("claude-haiku", input_tokens=1) == 0.0001
    assert price_for("local-model") is None
