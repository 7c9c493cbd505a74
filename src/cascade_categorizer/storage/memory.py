import json
import os
import threading
from datetime import datetime
from typing import Any

from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    CategorizationFeedback,
    CategorizationResult,
    Category,
    CategoryRule,
    CostTracker,
    LLMBatchRecord,
    MerchantPattern,
    Transaction,
    TransactionEmbedding,
)
from cascade_categorizer.storage.base import PatternUpdater, Storage

logger = get_logger(__name__)

# Float slack so that spending exactly up to a ceiling is still allowed.
_BUDGET_EPSILON = 1e-9


def roll_period(tracker: CostTracker, now: datetime) -> CostTracker:
    """Reset the daily and monthly counters when ``now`` is in a new period.

    A tracker that has no period yet is stamped with the current one and kept as is.
    """
    today = now.date()
    month = now.strftime("%Y-%m")
    if tracker.period_day is not None and tracker.period_day != today:
        tracker.current_spend = 0.0
    tracker.period_day = today
    if tracker.period_month is not None and tracker.period_month != month:
        tracker.monthly_spend = 0.0
        tracker.transaction_count = 0
        tracker.avg_cost_per_txn = 0.0
    tracker.period_month = month
    return tracker


class InMemoryStorage(Storage):
    """Process-local storage. With ``data_path`` set, every write is snapshotted to a JSON file."""

    def __init__(
        self,
        data_path: str | None = None,
        default_monthly_budget: float = 50.0,
        default_daily_budget: float = 5.0,
    ) -> None:
        self.data_path = data_path
        self.default_monthly_budget = default_monthly_budget
        self.default_daily_budget = default_daily_budget
        self._lock = threading.RLock()
        self._ledger_locks: dict[str, threading.Lock] = {}

        self._transactions: dict[str, Transaction] = {}
        self._categories: dict[tuple[str, int], Category] = {}
        self._rules: dict[str, CategoryRule] = {}
        self._patterns: dict[tuple[str, str], MerchantPattern] = {}
        self._embeddings: dict[str, TransactionEmbedding] = {}
        self._feedback: list[CategorizationFeedback] = []
        self._trackers: dict[str, CostTracker] = {}
        self._batches: list[LLMBatchRecord] = []
        self.load()

    # Persistence

    def load(self) -> None:
        if not self.data_path or not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError:
            logger.warning("[STORAGE] Snapshot %s is not valid JSON; starting empty.", self.data_path)
            return

        with self._lock:
            for item in data.get("transactions", []):
                tx = Transaction.model_validate(item)
                self._transactions[tx.id] = tx
            for item in data.get("categories", []):
                category = Category.model_validate(item)
                self._categories[(category.organization_id, category.id)] = category
            for item in data.get("rules", []):
                rule = CategoryRule.model_validate(item)
                self._rules[rule.id] = rule
            for item in data.get("patterns", []):
                pattern = MerchantPattern.model_validate(item)
                self._patterns[(pattern.organization_id, pattern.pattern)] = pattern
            for item in data.get("embeddings", []):
                embedding = TransactionEmbedding.model_validate(item)
                self._embeddings[embedding.transaction_id] = embedding
            self._feedback = [CategorizationFeedback.model_validate(item) for item in data.get("feedback", [])]
            for item in data.get("trackers", []):
                tracker = CostTracker.model_validate(item)
                self._trackers[tracker.organization_id] = tracker
            self._batches = [LLMBatchRecord.model_validate(item) for item in data.get("batches", [])]

    def save(self) -> None:
        if not self.data_path:
            return
        with self._lock:
            snapshot: dict[str, list[Any]] = {
                "transactions": [tx.model_dump(mode="json") for tx in self._transactions.values()],
                "categories": [c.model_dump(mode="json") for c in self._categories.values()],
                "rules": [r.model_dump(mode="json") for r in self._rules.values()],
                "patterns": [p.model_dump(mode="json") for p in self._patterns.values()],
                "embeddings": [e.model_dump(mode="json") for e in self._embeddings.values()],
                "feedback": [f.model_dump(mode="json") for f in self._feedback],
                "trackers": [t.model_dump(mode="json") for t in list(self._trackers.values())],
                "batches": [b.model_dump(mode="json") for b in self._batches],
            }
            # Swapped in whole; the target file is never partially written.
            tmp_path = f"{self.data_path}.tmp"
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(snapshot, f, indent=2)
                os.replace(tmp_path, self.data_path)
            except (OSError, TypeError, ValueError):
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise

    # Transactions

    def add_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            self._transactions[transaction.id] = transaction.model_copy(deep=True)
            self.save()
        return transaction

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        with self._lock:
            tx = self._transactions.get(transaction_id)
            return tx.model_copy(deep=True) if tx else None

    def get_transactions(self, transaction_ids: list[str]) -> list[Transaction]:
        with self._lock:
            return [
                self._transactions[tx_id].model_copy(deep=True)
                for tx_id in transaction_ids
                if tx_id in self._transactions
            ]

    def list_transactions(
        self,
        organization_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        uncategorized_only: bool = False,
    ) -> list[Transaction]:
        with self._lock:
            selected = []
            for tx in self._transactions.values():
                if tx.organization_id != organization_id:
                    continue
                if uncategorized_only and tx.category_id is not None:
                    continue
                if start and tx.date < start:
                    continue
                if end and tx.date > end:
                    continue
                selected.append(tx.model_copy(deep=True))
        selected.sort(key=lambda tx: (tx.date, tx.id))
        return selected

    def save_categorization(self, transaction_id: str, result: CategorizationResult) -> None:
        with self._lock:
            tx = self._transactions.get(transaction_id)
            if tx is None:
                return
            tx.categorization = result.model_copy(deep=True)
            if result.accepted:
                tx.category_id = result.category_id
            self.save()

    def set_transaction_category(self, transaction_id: str, category_id: int | None) -> None:
        with self._lock:
            tx = self._transactions.get(transaction_id)
            if tx is not None:
                tx.category_id = category_id
                self.save()

    # Categories

    def add_category(self, category: Category) -> Category:
        with self._lock:
            self._categories[(category.organization_id, category.id)] = category
            self.save()
        return category

    def list_categories(self, organization_id: str) -> list[Category]:
        with self._lock:
            categories = [c for (org, _), c in self._categories.items() if org == organization_id]
        return sorted(categories, key=lambda c: c.id)

    # Rules

    def create_rule(self, rule: CategoryRule) -> CategoryRule:
        with self._lock:
            self._rules[rule.id] = rule.model_copy()
            self.save()
        return rule

    def update_rule(self, rule: CategoryRule) -> CategoryRule:
        with self._lock:
            self._rules[rule.id] = rule.model_copy()
            self.save()
        return rule

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None) is not None
            if removed:
                self.save()
            return removed

    def get_rule(self, rule_id: str) -> CategoryRule | None:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy() if rule else None

    def list_rules(self, organization_id: str) -> list[CategoryRule]:
        with self._lock:
            return [r.model_copy() for r in self._rules.values() if r.organization_id == organization_id]

    def record_rule_usage(self, rule_id: str, used_at: datetime) -> None:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return
            uses = rule.usage_count
            rule.success_rate = (rule.success_rate * uses + 1.0) / (uses + 1)
            rule.usage_count = uses + 1
            rule.last_used_at = used_at
            self.save()

    def record_rule_correction(self, rule_id: str) -> None:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return
            uses = max(rule.usage_count, 1)
            rule.success_rate = max(0.0, (rule.success_rate * uses - 1.0) / uses)
            self.save()

    # Merchant pattern cache

    def list_patterns(self, organization_id: str) -> list[MerchantPattern]:
        with self._lock:
            return [p.model_copy() for (org, _), p in self._patterns.items() if org == organization_id]

    def get_pattern(self, organization_id: str, pattern: str) -> MerchantPattern | None:
        with self._lock:
            entry = self._patterns.get((organization_id, pattern))
            return entry.model_copy() if entry else None

    def upsert_pattern(self, organization_id: str, pattern: str, updater: PatternUpdater) -> MerchantPattern | None:
        key = (organization_id, pattern)
        with self._lock:
            current = self._patterns.get(key)
            updated = updater(current.model_copy() if current else None)
            if updated is None:
                return current.model_copy() if current else None
            self._patterns[key] = updated
            self.save()
            return updated.model_copy()

    def clear_patterns(self, organization_id: str) -> int:
        with self._lock:
            keys = [key for key in self._patterns if key[0] == organization_id]
            for key in keys:
                del self._patterns[key]
            if keys:
                self.save()
            return len(keys)

    # Embeddings

    def get_embedding(self, transaction_id: str) -> TransactionEmbedding | None:
        with self._lock:
            embedding = self._embeddings.get(transaction_id)
            return embedding.model_copy() if embedding else None

    def save_embedding(self, embedding: TransactionEmbedding) -> None:
        with self._lock:
            self._embeddings[embedding.transaction_id] = embedding.model_copy()
            self.save()

    def list_embeddings(self, organization_id: str, *, labeled_only: bool = True) -> list[TransactionEmbedding]:
        with self._lock:
            return [
                e.model_copy()
                for e in self._embeddings.values()
                if e.organization_id == organization_id and (e.category_id is not None or not labeled_only)
            ]

    def update_embedding_label(self, transaction_id: str, category_id: int | None) -> bool:
        with self._lock:
            embedding = self._embeddings.get(transaction_id)
            if embedding is None:
                return False
            embedding.category_id = category_id
            embedding.updated_at = datetime.now(embedding.updated_at.tzinfo)
            self.save()
            return True

    # Feedback

    def append_feedback(self, feedback: CategorizationFeedback) -> None:
        with self._lock:
            self._feedback.append(feedback.model_copy())
            self.save()

    def list_feedback(self, organization_id: str, limit: int | None = None, offset: int = 0) -> list[CategorizationFeedback]:
        with self._lock:
            items = [f.model_copy() for f in self._feedback if f.organization_id == organization_id]
        items.sort(key=lambda f: f.created_at, reverse=True)
        if limit is None:
            return items[offset:]
        return items[offset:offset + limit]

    def list_feedback_for_transaction(self, transaction_id: str) -> list[CategorizationFeedback]:
        with self._lock:
            return [f.model_copy() for f in self._feedback if f.transaction_id == transaction_id]

    # Cost ledger

    def _ledger_lock(self, organization_id: str) -> threading.Lock:
        with self._lock:
            lock = self._ledger_locks.get(organization_id)
            if lock is None:
                lock = self._ledger_locks[organization_id] = threading.Lock()
            return lock

    def _tracker(self, organization_id: str, now: datetime) -> CostTracker:
        tracker = self._trackers.get(organization_id)
        if tracker is None:
            tracker = CostTracker(
                organization_id=organization_id,
                monthly_budget=self.default_monthly_budget,
                daily_budget=self.default_daily_budget,
            )
            self._trackers[organization_id] = tracker
        return roll_period(tracker, now)

    def get_cost_tracker(self, organization_id: str, now: datetime) -> CostTracker:
        with self._ledger_lock(organization_id):
            return self._tracker(organization_id, now).model_copy()

    def put_cost_tracker(self, tracker: CostTracker) -> None:
        with self._ledger_lock(tracker.organization_id):
            self._trackers[tracker.organization_id] = tracker.model_copy()
            self.save()

    def set_budget(self, organization_id: str, monthly_budget: float, daily_budget: float, now: datetime) -> CostTracker:
        with self._ledger_lock(organization_id):
            tracker = self._tracker(organization_id, now)
            tracker.monthly_budget = monthly_budget
            tracker.daily_budget = daily_budget
            self.save()
            return tracker.model_copy()

    def try_reserve_spend(self, organization_id: str, amount: float, now: datetime) -> tuple[bool, CostTracker]:
        with self._ledger_lock(organization_id):
            tracker = self._tracker(organization_id, now)
            daily_over = (
                tracker.daily_budget > 0
                and tracker.current_spend + amount > tracker.daily_budget + _BUDGET_EPSILON
            )
            monthly_over = (
                tracker.monthly_budget > 0
                and tracker.monthly_spend + amount > tracker.monthly_budget + _BUDGET_EPSILON
            )
            if daily_over or monthly_over:
                return False, tracker.model_copy()
            tracker.current_spend += amount
            tracker.monthly_spend += amount
            self.save()
            return True, tracker.model_copy()

    def adjust_spend(self, organization_id: str, delta: float, transaction_count: int, now: datetime) -> CostTracker:
        with self._ledger_lock(organization_id):
            tracker = self._tracker(organization_id, now)
            tracker.current_spend = max(0.0, tracker.current_spend + delta)
            tracker.monthly_spend = max(0.0, tracker.monthly_spend + delta)
            tracker.transaction_count += transaction_count
            if tracker.transaction_count > 0:
                tracker.avg_cost_per_txn = tracker.monthly_spend / tracker.transaction_count
            self.save()
            return tracker.model_copy()

    def record_llm_batch(self, record: LLMBatchRecord) -> None:
        with self._lock:
            self._batches.append(record.model_copy())
            self.save()

    def list_llm_batches(self, organization_id: str) -> list[LLMBatchRecord]:
        with self._lock:
            return [b.model_copy() for b in self._batches if b.organization_id == organization_id]
