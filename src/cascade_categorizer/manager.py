import threading
from collections import defaultdict
from collections.abc import Iterator
from time import perf_counter

from cascade_categorizer.classifiers.base import Stage, StageOutcome
from cascade_categorizer.classifiers.llm import LLMBatchEngine
from cascade_categorizer.classifiers.patterns import EXACT, PatternEngine
from cascade_categorizer.classifiers.rag import RAGEngine
from cascade_categorizer.classifiers.rules import RuleEngine
from cascade_categorizer.core.settings import CascadeConfig
from cascade_categorizer.domain.timefmt import elapsed_ms
from cascade_categorizer.errors import StorageUnavailableError
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    BatchReport,
    CategorizationResult,
    CategorizationStats,
    Category,
    CostEstimate,
    FeedbackType,
    LLMModel,
    Method,
    Transaction,
)
from cascade_categorizer.services.budget import BudgetManager
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)

LEARNABLE_METHODS = (Method.RULE_BASED, Method.RAG_BASED, Method.LLM_BASED)


class CascadeAttempt:
    """Outcome of the free stages for one transaction."""

    def __init__(self, transaction: Transaction):
        self.transaction = transaction
        self.started = perf_counter()
        self.accepted: tuple[Stage, StageOutcome] | None = None
        self.best: tuple[Stage, StageOutcome] | None = None
        self.errors: list[str] = []

    def consider(self, stage: Stage, outcome: StageOutcome) -> None:
        if not outcome.matched:
            return
        if self.best is None or outcome.confidence > self.best[1].confidence:
            self.best = (stage, outcome)


def _chunks(items: list[Transaction], size: int) -> Iterator[list[Transaction]]:
    for index in range(0, len(items), size):
        yield items[index:index + size]


class CategorizationCoordinator:
    def __init__(
        self,
        storage: Storage,
        rules: RuleEngine,
        patterns: PatternEngine,
        rag: RAGEngine,
        llm: LLMBatchEngine,
        budget: BudgetManager,
        config: CascadeConfig | None = None,
    ) -> None:
        self.storage = storage
        self.rules = rules
        self.patterns = patterns
        self.rag = rag
        self.llm = llm
        self.budget = budget
        self.config = config or CascadeConfig()

        # Free stages, cheapest first, with the confidence each must reach to win.
        self.stages: list[tuple[Stage, float]] = [
            (self.rules, self.config.rule_threshold),
            (self.patterns, self.config.pattern_threshold),
            (self.rag, self.config.rag_threshold),
        ]

    def stage_order(self, transaction: Transaction) -> list[tuple[Stage, float]]:
        order = list(self.stages)
        if self.config.corrected_merchant_order == "pattern_first" and self.patterns.has_user_correction(transaction):
            order.sort(key=lambda entry: entry[0] is not self.patterns)
        return order

    def _run_free_stages(self, transaction: Transaction, persist: bool = True) -> CascadeAttempt:
        attempt = CascadeAttempt(transaction)
        for stage, threshold in self.stage_order(transaction):
            stage_name = stage.__class__.__name__
            try:
                outcome = stage.evaluate(transaction, record_usage=persist)
            except StorageUnavailableError:
                raise
            except Exception as exc:
                # A broken stage counts as "no confidence"; the cascade moves on.
                logger.warning("[CASCADE] %s failed for transaction %s: %s", stage_name, transaction.id, exc)
                attempt.errors.append(f"{stage.method.value}: {exc}")
                continue

            logger.debug(
                "[CASCADE] %s -> category %s (confidence %.2f, threshold %.2f) for transaction %s",
                stage_name,
                outcome.category_id,
                outcome.confidence,
                threshold,
                transaction.id,
            )
            attempt.consider(stage, outcome)
            if outcome.matched and outcome.confidence >= threshold:
                attempt.accepted = (stage, outcome)
                break
        return attempt

    @staticmethod
    def _from_outcome(
        transaction: Transaction,
        stage: Stage,
        outcome: StageOutcome,
        processing_ms: float,
        accepted: bool,
    ) -> CategorizationResult:
        return CategorizationResult(
            transaction_id=transaction.id,
            category_id=outcome.category_id,
            confidence=outcome.confidence,
            method=stage.method,
            processing_time_ms=processing_ms,
            explanation=outcome.explanation,
            accepted=accepted,
            rule_matches=outcome.rule_matches,
            similarity_matches=outcome.similarity_matches,
            pattern_match_type=outcome.pattern_match_type,
            matched_pattern=outcome.matched_pattern,
        )

    def _budget_exceeded(self, attempt: CascadeAttempt) -> CategorizationResult:
        tx = attempt.transaction
        result = CategorizationResult(
            transaction_id=tx.id,
            method=Method.BUDGET_EXCEEDED,
            processing_time_ms=elapsed_ms(attempt.started),
            explanation="LLM budget exceeded; no stage was confident enough",
            error="; ".join(attempt.errors) or None,
        )
        if attempt.best is not None:
            stage, outcome = attempt.best
            result.category_id = outcome.category_id
            result.confidence = outcome.confidence
            result.explanation = f"LLM budget exceeded; best suggestion from {stage.method.value}: {outcome.explanation}"
            result.rule_matches = outcome.rule_matches
            result.similarity_matches = outcome.similarity_matches
            result.pattern_match_type = outcome.pattern_match_type
            result.matched_pattern = outcome.matched_pattern
        return result

    def _no_categories(self, attempt: CascadeAttempt) -> CategorizationResult:
        return CategorizationResult(
            transaction_id=attempt.transaction.id,
            method=Method.LLM_BASED,
            processing_time_ms=elapsed_ms(attempt.started),
            explanation="LLM skipped",
            error="organization has no categories",
        )

    def _finish(self, transaction: Transaction, result: CategorizationResult, persist: bool = True) -> CategorizationResult:
        if not persist:
            return result
        self.storage.save_categorization(transaction.id, result)
        if result.accepted and result.category_id is not None:
            self._learn(transaction, result)
        return result

    def _learn(self, transaction: Transaction, result: CategorizationResult) -> None:
        # Published, never awaited: the usage worker applies these later.
        learnable = result.method in LEARNABLE_METHODS or (
            # a fuzzy or partial hit caches the new merchant spelling
            result.method == Method.PATTERN_BASED and result.pattern_match_type != EXACT
        )
        if learnable and result.confidence >= self.config.pattern_learn_floor:
            self.patterns.publish_learn(transaction, result.category_id, result.confidence)
        self.rag.publish_label(transaction, result.category_id)

    def _accept_llm(self, result: CategorizationResult) -> CategorizationResult:
        result.accepted = result.category_id is not None and result.error is None
        return result

    def _select_model(self) -> LLMModel:
        return self.llm.select_model_for_task(self.config.llm_strategy)

    def categorize(self, transaction: Transaction, persist: bool = True) -> CategorizationResult:
        """Run the cascade for one transaction and store exactly one result for it.

        With ``persist`` off nothing is stored and nothing is learned; budget spend is still booked.
        """
        attempt = self._run_free_stages(transaction, persist)
        if attempt.accepted is not None:
            stage, outcome = attempt.accepted
            result = self._from_outcome(transaction, stage, outcome, elapsed_ms(attempt.started), accepted=True)
            logger.info(
                "[CASCADE] Transaction %s -> category %s via %s (%.2f)",
                transaction.id,
                result.category_id,
                result.method.value,
                result.confidence,
            )
            return self._finish(transaction, result, persist)

        categories = self.storage.list_categories(transaction.organization_id)
        if not categories:
            return self._finish(transaction, self._no_categories(attempt), persist)

        model = self._select_model()
        estimated = self.llm.estimate_cost(1, model)
        if not self.budget.check_budget(transaction.organization_id, estimated):
            return self._finish(transaction, self._budget_exceeded(attempt), persist)

        outcome = self.llm.categorize_batch([transaction], categories, model, use_rag=self.config.llm_use_rag)
        self.budget.record_spend(transaction.organization_id, outcome.actual_cost, estimated, 1)
        result = self._accept_llm(outcome.results[0])
        result.processing_time_ms = elapsed_ms(attempt.started)
        return self._finish(transaction, result, persist)

    def categorize_batch(
        self,
        transactions: list[Transaction],
        cancel_event: threading.Event | None = None,
    ) -> BatchReport:
        """Categorize many transactions, sending only the unresolved ones to the LLM in shared prompts.

        When ``cancel_event`` is set, results produced so far are kept and the rest is left
        untouched for a later run.
        """
        organization_id = transactions[0].organization_id if transactions else ""
        report = BatchReport(organization_id=organization_id, requested=len(transactions))
        produced: dict[str, CategorizationResult] = {}
        unresolved: dict[str, list[CascadeAttempt]] = defaultdict(list)

        def cancelled() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
            return report.cancelled

        for tx in transactions:
            if cancelled():
                break
            attempt = self._run_free_stages(tx)
            if attempt.accepted is None:
                unresolved[tx.organization_id].append(attempt)
                continue
            stage, outcome = attempt.accepted
            result = self._from_outcome(tx, stage, outcome, elapsed_ms(attempt.started), accepted=True)
            produced[tx.id] = self._finish(tx, result)

        model = self._select_model()
        for org, attempts in unresolved.items():
            if cancelled():
                break
            categories = self.storage.list_categories(org)
            by_id = {attempt.transaction.id: attempt for attempt in attempts}
            if not categories:
                for attempt in attempts:
                    produced[attempt.transaction.id] = self._finish(attempt.transaction, self._no_categories(attempt))
                continue

            for chunk in _chunks([attempt.transaction for attempt in attempts], self.config.llm_max_batch_size):
                if cancelled():
                    break
                estimated = self.llm.estimate_cost(len(chunk), model)
                if not self.budget.check_budget(org, estimated):
                    report.budget_blocked += len(chunk)
                    for tx in chunk:
                        produced[tx.id] = self._finish(tx, self._budget_exceeded(by_id[tx.id]))
                    continue

                outcome = self.llm.categorize_batch(chunk, categories, model, use_rag=self.config.llm_use_rag)
                self.budget.record_spend(org, outcome.actual_cost, estimated, len(chunk))
                report.sent_to_llm += len(chunk)
                report.total_cost += outcome.actual_cost
                for tx, result in zip(chunk, outcome.results):
                    produced[tx.id] = self._finish(tx, self._accept_llm(result))

        report.results = [produced[tx.id] for tx in transactions if tx.id in produced]
        report.categorized = sum(1 for result in report.results if result.accepted)
        logger.info(
            "[BATCH] Org %s: %s/%s categorized, %s sent to LLM, %s blocked by budget%s",
            organization_id,
            report.categorized,
            report.requested,
            report.sent_to_llm,
            report.budget_blocked,
            " (cancelled)" if report.cancelled else "",
        )
        return report

    def estimate_batch(self, transactions: list[Transaction], strategy: str | None = None) -> CostEstimate:
        """Upper bound for sending every uncategorized transaction to the LLM."""
        model = self.llm.select_model_for_task(strategy or self.config.llm_strategy)
        candidates = sum(1 for tx in transactions if tx.category_id is None)
        return CostEstimate(
            transaction_count=len(transactions),
            llm_candidates=candidates,
            estimated_tokens=self.llm.estimate_tokens(candidates),
            estimated_cost=self.llm.estimate_cost(candidates, model),
            model=model.name,
        )

    def categories(self, organization_id: str) -> list[Category]:
        return self.storage.list_categories(organization_id)

    def stats(self, organization_id: str) -> CategorizationStats:
        transactions = self.storage.list_transactions(organization_id)
        by_method: dict[str, int] = defaultdict(int)
        confidences = []
        for tx in transactions:
            if tx.categorization is not None:
                by_method[tx.categorization.method.value] += 1
                if tx.categorization.accepted:
                    confidences.append(tx.categorization.confidence)
        corrected = {
            feedback.transaction_id
            for feedback in self.storage.list_feedback(organization_id)
            if feedback.feedback_type == FeedbackType.CORRECTION
        }
        categorized = sum(1 for tx in transactions if tx.category_id is not None)
        return CategorizationStats(
            organization_id=organization_id,
            total_transactions=len(transactions),
            categorized_transactions=categorized,
            uncategorized_transactions=len(transactions) - categorized,
            user_corrected=len(corrected),
            by_method=dict(by_method),
            avg_confidence=sum(confidences) / len(confidences) if confidences else None,
        )
