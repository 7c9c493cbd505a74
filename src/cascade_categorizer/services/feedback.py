import threading
from collections import Counter, defaultdict
from dataclasses import dataclass

from cascade_categorizer.classifiers.patterns import PatternEngine, merchant_key
from cascade_categorizer.classifiers.rag import RAGEngine
from cascade_categorizer.errors import NotFoundError
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    CategorizationFeedback,
    CategoryCorrection,
    FeedbackAnalysis,
    FeedbackType,
    MerchantPattern,
    Method,
    ProblematicMerchant,
)
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)

PROBLEM_MIN_OCCURRENCES = 2
PROBLEM_MIN_ERROR_RATE = 0.5
MAX_COMMON_CORRECTIONS = 10


@dataclass
class FeedbackOutcome:
    feedback: CategorizationFeedback
    pattern: MerchantPattern | None = None
    penalized_rules: tuple[str, ...] = ()
    learning_due: bool = False


class FeedbackManager:
    def __init__(
        self,
        storage: Storage,
        patterns: PatternEngine,
        rag: RAGEngine,
        learning_trigger: int = 20,
    ) -> None:
        self.storage = storage
        self.patterns = patterns
        self.rag = rag
        self.learning_trigger = learning_trigger
        self._pending: dict[str, int] = defaultdict(int)
        self._pending_lock = threading.Lock()

    def record_feedback(self, feedback: CategorizationFeedback) -> FeedbackOutcome:
        tx = self.storage.get_transaction(feedback.transaction_id)
        if tx is None or tx.organization_id != feedback.organization_id:
            raise NotFoundError(f"transaction {feedback.transaction_id} not found")

        previous = tx.categorization
        updates = {}
        if feedback.old_category_id is None:
            updates["old_category_id"] = tx.category_id
        if feedback.confidence_before is None and previous is not None:
            updates["confidence_before"] = previous.confidence
        if feedback.method_used is None and previous is not None:
            updates["method_used"] = previous.method
        if updates:
            feedback = feedback.model_copy(update=updates)

        self.storage.append_feedback(feedback)

        if feedback.feedback_type == FeedbackType.REJECTION:
            self.storage.set_transaction_category(tx.id, None)
            self.rag.update_label(tx.id, None)
        else:
            self.storage.set_transaction_category(tx.id, feedback.new_category_id)
            self.rag.update_label(tx.id, feedback.new_category_id)

        pattern = self.patterns.apply_feedback(
            feedback.organization_id,
            merchant_key(tx),
            feedback.feedback_type,
            feedback.new_category_id,
            feedback.confidence_before,
        )
        originating = previous.matched_pattern if previous is not None else None
        if (
            feedback.feedback_type != FeedbackType.CONFIRMATION
            and feedback.method_used == Method.PATTERN_BASED
            and originating
            and originating != merchant_key(tx)
        ):
            # A fuzzy or partial hit came from another entry; it answered wrong too.
            self.patterns.penalize(feedback.organization_id, originating)

        penalized: tuple[str, ...] = ()
        if feedback.feedback_type == FeedbackType.CORRECTION and feedback.method_used == Method.RULE_BASED:
            penalized = tuple(match.rule_id for match in (previous.rule_matches if previous else []))
            for rule_id in penalized:
                self.storage.record_rule_correction(rule_id)

        with self._pending_lock:
            self._pending[feedback.organization_id] += 1
            pending = self._pending[feedback.organization_id]
        learning_due = pending >= self.learning_trigger
        if learning_due:
            logger.info(
                "[FEEDBACK] Org %s has %s new feedback entries; learning job is due.",
                feedback.organization_id,
                pending,
            )

        logger.info(
            "[FEEDBACK] %s on transaction %s: %s -> %s (method %s)",
            feedback.feedback_type.value,
            tx.id,
            feedback.old_category_id,
            feedback.new_category_id,
            feedback.method_used.value if feedback.method_used else "unknown",
        )
        return FeedbackOutcome(
            feedback=feedback,
            pattern=pattern,
            penalized_rules=penalized,
            learning_due=learning_due,
        )

    def pending_feedback(self, organization_id: str) -> int:
        with self._pending_lock:
            return self._pending[organization_id]

    def learning_due(self, organization_id: str) -> bool:
        return self.pending_feedback(organization_id) >= self.learning_trigger

    def reset_pending(self, organization_id: str) -> None:
        with self._pending_lock:
            self._pending[organization_id] = 0

    def get_feedback(self, organization_id: str, limit: int | None = 50, offset: int = 0) -> list[CategorizationFeedback]:
        return self.storage.list_feedback(organization_id, limit=limit, offset=offset)

    def get_feedback_for_transaction(self, transaction_id: str) -> list[CategorizationFeedback]:
        return self.storage.list_feedback_for_transaction(transaction_id)

    def analyze_feedback(self, organization_id: str) -> FeedbackAnalysis:
        entries = self.storage.list_feedback(organization_id)
        total = len(entries)
        if total == 0:
            return FeedbackAnalysis(
                organization_id=organization_id,
                total_feedback=0,
                correction_rate=0.0,
                confirmation_rate=0.0,
                rejection_rate=0.0,
            )

        by_type = Counter(entry.feedback_type for entry in entries)

        per_method: dict[str, Counter] = defaultdict(Counter)
        for entry in entries:
            method = entry.method_used.value if entry.method_used else "unknown"
            per_method[method][entry.feedback_type] += 1

        correction_rate_by_method = {}
        method_accuracy = {}
        for method, counts in per_method.items():
            seen = sum(counts.values())
            correction_rate_by_method[method] = counts[FeedbackType.CORRECTION] / seen
            wrong = counts[FeedbackType.CORRECTION] + counts[FeedbackType.REJECTION]
            method_accuracy[method] = 1.0 - wrong / seen

        return FeedbackAnalysis(
            organization_id=organization_id,
            total_feedback=total,
            correction_rate=by_type[FeedbackType.CORRECTION] / total,
            confirmation_rate=by_type[FeedbackType.CONFIRMATION] / total,
            rejection_rate=by_type[FeedbackType.REJECTION] / total,
            correction_rate_by_method=correction_rate_by_method,
            method_accuracy=method_accuracy,
            common_corrections=self._common_corrections(entries),
            problematic_merchants=self._problematic_merchants(entries),
        )

    @staticmethod
    def _common_corrections(entries: list[CategorizationFeedback]) -> list[CategoryCorrection]:
        pairs: dict[tuple[int | None, int], list[float]] = defaultdict(list)
        counts: Counter = Counter()
        for entry in entries:
            if entry.feedback_type != FeedbackType.CORRECTION:
                continue
            key = (entry.old_category_id, entry.new_category_id)
            counts[key] += 1
            if entry.confidence_before is not None:
                pairs[key].append(entry.confidence_before)

        corrections = [
            CategoryCorrection(
                from_category_id=old,
                to_category_id=new,
                count=count,
                avg_confidence=sum(pairs[(old, new)]) / len(pairs[(old, new)]) if pairs[(old, new)] else None,
            )
            for (old, new), count in counts.items()
        ]
        corrections.sort(key=lambda item: (-item.count, item.to_category_id))
        return corrections[:MAX_COMMON_CORRECTIONS]

    def _problematic_merchants(self, entries: list[CategorizationFeedback]) -> list[ProblematicMerchant]:
        transactions = {tx.id: tx for tx in self.storage.get_transactions([entry.transaction_id for entry in entries])}
        occurrences: Counter = Counter()
        errors: Counter = Counter()
        targets: dict[str, Counter] = defaultdict(Counter)
        for entry in entries:
            tx = transactions.get(entry.transaction_id)
            if tx is None:
                continue
            merchant = merchant_key(tx)
            if not merchant:
                continue
            occurrences[merchant] += 1
            if entry.feedback_type != FeedbackType.CONFIRMATION:
                errors[merchant] += 1
            if entry.feedback_type == FeedbackType.CORRECTION:
                targets[merchant][entry.new_category_id] += 1

        problems = []
        for merchant, seen in occurrences.items():
            error_rate = errors[merchant] / seen
            if seen < PROBLEM_MIN_OCCURRENCES or error_rate < PROBLEM_MIN_ERROR_RATE:
                continue
            suggestion = None
            if targets[merchant]:
                category_id, _ = targets[merchant].most_common(1)[0]
                suggestion = f"merchant_pattern '{merchant.upper()}*' -> category {category_id}"
            problems.append(
                ProblematicMerchant(
                    merchant=merchant,
                    error_rate=error_rate,
                    occurrences=seen,
                    suggested_rule=suggestion,
                )
            )
        problems.sort(key=lambda item: (-item.error_rate, -item.occurrences, item.merchant))
        return problems
