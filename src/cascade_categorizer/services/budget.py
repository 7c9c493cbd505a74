import threading
from collections.abc import Callable
from datetime import datetime

from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import CostTracker, utcnow
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)

ALERT_THRESHOLDS = (0.5, 0.8, 0.95)


def alert_severity(ratio: float) -> str:
    if ratio >= 0.95:
        return "critical"
    if ratio >= 0.8:
        return "warning"
    return "info"


def remaining_budget(tracker: CostTracker) -> dict[str, float | None]:
    """Money left in each period; ``None`` when that ceiling is unlimited."""
    daily = max(0.0, tracker.daily_budget - tracker.current_spend) if tracker.daily_budget > 0 else None
    monthly = max(0.0, tracker.monthly_budget - tracker.monthly_spend) if tracker.monthly_budget > 0 else None
    return {"daily": daily, "monthly": monthly}


class BudgetLedger:
    """Budget operations bound to one organization."""

    def __init__(self, manager: "BudgetManager", organization_id: str):
        self.manager = manager
        self.organization_id = organization_id

    def check(self, estimated_cost: float) -> bool:
        return self.manager.check_budget(self.organization_id, estimated_cost)

    def record(self, actual_cost: float, reserved: float = 0.0, transaction_count: int = 0) -> CostTracker:
        return self.manager.record_spend(self.organization_id, actual_cost, reserved, transaction_count)

    def tracker(self) -> CostTracker:
        return self.manager.get_cost_tracker(self.organization_id)


class BudgetManager:
    def __init__(
        self,
        storage: Storage,
        clock: Callable[[], datetime] = utcnow,
        alert_thresholds: tuple[float, ...] = ALERT_THRESHOLDS,
    ) -> None:
        self.storage = storage
        self.clock = clock
        self.alert_thresholds = tuple(sorted(alert_thresholds))
        self._alerted: dict[tuple[str, str, str], float] = {}
        self._alert_lock = threading.Lock()

    def ledger(self, organization_id: str) -> BudgetLedger:
        return BudgetLedger(self, organization_id)

    def check_budget(self, organization_id: str, estimated_cost: float) -> bool:
        """Reserve ``estimated_cost`` if both ceilings allow it. Check and reserve are one atomic step."""
        amount = max(0.0, estimated_cost)
        allowed, tracker = self.storage.try_reserve_spend(organization_id, amount, self.clock())
        if not allowed:
            logger.warning(
                "[BUDGET] Org %s: refused %.6f (today %.6f/%.2f, month %.6f/%.2f)",
                organization_id,
                amount,
                tracker.current_spend,
                tracker.daily_budget,
                tracker.monthly_spend,
                tracker.monthly_budget,
            )
            return False
        self._check_alerts(tracker)
        return True

    def record_spend(
        self,
        organization_id: str,
        actual_cost: float,
        reserved: float = 0.0,
        transaction_count: int = 0,
    ) -> CostTracker:
        """Book the actual cost of a call, releasing or topping up what ``check_budget`` reserved."""
        tracker = self.storage.adjust_spend(
            organization_id,
            actual_cost - reserved,
            transaction_count,
            self.clock(),
        )
        logger.debug(
            "[BUDGET] Org %s: recorded %.6f (reserved %.6f) for %s transactions",
            organization_id,
            actual_cost,
            reserved,
            transaction_count,
        )
        self._check_alerts(tracker)
        return tracker

    def release(self, organization_id: str, reserved: float) -> CostTracker:
        return self.record_spend(organization_id, 0.0, reserved)

    def get_cost_tracker(self, organization_id: str) -> CostTracker:
        return self.storage.get_cost_tracker(organization_id, self.clock())

    def update_budget(self, organization_id: str, monthly_budget: float, daily_budget: float) -> CostTracker:
        if monthly_budget < 0 or daily_budget < 0:
            raise ValueError("budgets must be non-negative (0 means unlimited)")
        tracker = self.storage.set_budget(organization_id, monthly_budget, daily_budget, self.clock())
        logger.info(
            "[BUDGET] Org %s: monthly budget %.2f, daily budget %.2f",
            organization_id,
            monthly_budget,
            daily_budget,
        )
        return tracker

    def _check_alerts(self, tracker: CostTracker) -> None:
        scopes = (
            ("daily", str(tracker.period_day), tracker.current_spend, tracker.daily_budget),
            ("monthly", str(tracker.period_month), tracker.monthly_spend, tracker.monthly_budget),
        )
        for scope, period, spend, budget in scopes:
            if budget <= 0:
                continue
            ratio = spend / budget
            crossed = [threshold for threshold in self.alert_thresholds if ratio >= threshold]
            if not crossed:
                continue
            level = crossed[-1]
            key = (tracker.organization_id, scope, period)
            with self._alert_lock:
                if self._alerted.get(key, 0.0) >= level:
                    continue
                self._alerted[key] = level
            severity = alert_severity(ratio)
            log = logger.error if severity == "critical" else logger.warning
            log(
                "[BUDGET] Org %s reached %.0f%% of its %s budget (%.4f / %.2f, %s)",
                tracker.organization_id,
                level * 100,
                scope,
                spend,
                budget,
                severity,
            )
