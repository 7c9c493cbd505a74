import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from cascade_categorizer.services.budget import BudgetManager, alert_severity, remaining_budget
from cascade_categorizer.storage.memory import InMemoryStorage
from conftest import NOW, ORG


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def budget(storage: InMemoryStorage, clock: Clock) -> BudgetManager:
    return BudgetManager(storage, clock=clock)


def test_reservation_up_to_ceiling_then_refusal(budget: BudgetManager) -> None:
    budget.update_budget(ORG, monthly_budget=100.0, daily_budget=10.0)

    assert budget.check_budget(ORG, 9.99)
    assert budget.check_budget(ORG, 0.01)
    assert not budget.check_budget(ORG, 0.01)
    assert budget.get_cost_tracker(ORG).current_spend == pytest.approx(10.0)


def test_refusal_when_estimate_exceeds_remaining(budget: BudgetManager) -> None:
    budget.update_budget(ORG, monthly_budget=100.0, daily_budget=10.0)
    assert budget.check_budget(ORG, 9.99)

    assert not budget.check_budget(ORG, 0.02)
    assert budget.get_cost_tracker(ORG).current_spend == pytest.approx(9.99)


def test_monthly_ceiling_applies_independently(budget: BudgetManager) -> None:
    budget.update_budget(ORG, monthly_budget=1.0, daily_budget=10.0)
    assert budget.check_budget(ORG, 1.0)
    assert not budget.check_budget(ORG, 0.5)


def test_zero_ceiling_means_unlimited(budget: BudgetManager) -> None:
    budget.update_budget(ORG, monthly_budget=0.0, daily_budget=0.0)
    assert budget.check_budget(ORG, 1_000_000.0)
    assert remaining_budget(budget.get_cost_tracker(ORG)) == {"daily": None, "monthly": None}


def test_concurrent_reservations_never_overspend(budget: BudgetManager) -> None:
    budget.update_budget(ORG, monthly_budget=100.0, daily_budget=1.0)
    granted: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(20):
            allowed = budget.check_budget(ORG, 0.01)
            with lock:
                granted.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(granted) == 100
    assert budget.get_cost_tracker(ORG).current_spend == pytest.approx(1.0)


def test_record_spend_reconciles_reservation(budget: BudgetManager) -> None:
    assert budget.check_budget(ORG, 0.5)

    tracker = budget.record_spend(ORG, actual_cost=0.2, reserved=0.5, transaction_count=4)

    assert tracker.current_spend == pytest.approx(0.2)
    assert tracker.monthly_spend == pytest.approx(0.2)
    assert tracker.transaction_count == 4
    assert tracker.avg_cost_per_txn == pytest.approx(0.05)


def test_release_returns_the_reservation(budget: BudgetManager) -> None:
    assert budget.check_budget(ORG, 0.5)
    assert budget.release(ORG, 0.5).current_spend == pytest.approx(0.0)


def test_daily_rollover_keeps_monthly_spend(budget: BudgetManager, clock: Clock) -> None:
    budget.update_budget(ORG, monthly_budget=100.0, daily_budget=1.0)
    assert budget.check_budget(ORG, 1.0)
    assert not budget.check_budget(ORG, 0.5)

    clock.now = NOW + timedelta(days=1)

    assert budget.check_budget(ORG, 0.5)
    tracker = budget.get_cost_tracker(ORG)
    assert tracker.current_spend == pytest.approx(0.5)
    assert tracker.monthly_spend == pytest.approx(1.5)


def test_monthly_rollover_resets_month(budget: BudgetManager, clock: Clock) -> None:
    budget.record_spend(ORG, 2.0, transaction_count=3)

    clock.now = datetime(2024, 4, 1, 0, 5, tzinfo=timezone.utc)

    tracker = budget.get_cost_tracker(ORG)
    assert tracker.monthly_spend == 0.0
    assert tracker.current_spend == 0.0
    assert tracker.transaction_count == 0
    assert tracker.period_month == "2024-04"


def test_update_budget_applies_immediately(budget: BudgetManager) -> None:
    budget.update_budget(ORG, monthly_budget=100.0, daily_budget=1.0)
    assert budget.check_budget(ORG, 1.0)
    assert not budget.check_budget(ORG, 1.0)

    budget.update_budget(ORG, monthly_budget=100.0, daily_budget=5.0)

    assert budget.check_budget(ORG, 1.0)


def test_negative_budget_is_rejected(budget: BudgetManager) -> None:
    with pytest.raises(ValueError):
        budget.update_budget(ORG, monthly_budget=-1.0, daily_budget=1.0)


def test_default_budgets_come_from_storage(storage: InMemoryStorage, budget: BudgetManager) -> None:
    tracker = budget.get_cost_tracker(ORG)
    assert (tracker.monthly_budget, tracker.daily_budget) == (50.0, 5.0)


def test_ledger_is_bound_to_one_organization(budget: BudgetManager) -> None:
    ledger = budget.ledger(ORG)
    assert ledger.check(0.25)
    ledger.record(0.25, reserved=0.25, transaction_count=1)
    assert ledger.tracker().current_spend == pytest.approx(0.25)
    assert budget.get_cost_tracker("other").current_spend == 0.0


def test_alerts_logged_once_per_threshold(budget: BudgetManager, caplog: pytest.LogCaptureFixture) -> None:
    budget.update_budget(ORG, monthly_budget=0.0, daily_budget=1.0)

    with caplog.at_level(logging.WARNING, logger="cascade_categorizer.services.budget"):
        budget.check_budget(ORG, 0.55)
        budget.check_budget(ORG, 0.01)
        budget.check_budget(ORG, 0.4)

    alerts = [record for record in caplog.records if "reached" in record.getMessage()]
    assert len(alerts) == 2
    assert "50%" in alerts[0].getMessage()
    assert alerts[1].levelno == logging.ERROR
    assert "95%" in alerts[1].getMessage()


@pytest.mark.parametrize(("ratio", "severity"), [(0.5, "info"), (0.8, "warning"), (0.97, "critical")])
def test_alert_severity(ratio: float, severity: str) -> None:
    assert alert_severity(ratio) == severity
