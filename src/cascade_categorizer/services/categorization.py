import asyncio
import threading
from datetime import datetime

from cascade_categorizer.classifiers.base import ChatCompleter, Embedder
from cascade_categorizer.classifiers.llm import LLMBatchEngine
from cascade_categorizer.classifiers.patterns import PatternEngine
from cascade_categorizer.classifiers.rag import RAGEngine
from cascade_categorizer.classifiers.rules import RuleEngine
from cascade_categorizer.core.settings import CascadeConfig
from cascade_categorizer.errors import NotFoundError
from cascade_categorizer.logger import get_logger
from cascade_categorizer.manager import CategorizationCoordinator
from cascade_categorizer.models import (
    BatchReport,
    CategorizationFeedback,
    CategorizationResult,
    CostEstimate,
    FeedbackAnalysis,
    Transaction,
)
from cascade_categorizer.services.budget import BudgetManager
from cascade_categorizer.services.feedback import FeedbackManager, FeedbackOutcome
from cascade_categorizer.services.learning import LearningManager
from cascade_categorizer.services.usage import UsageRecorder
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)


class CategorizationPipeline:
    """Async entry points over the synchronous engines."""

    def __init__(
        self,
        storage: Storage,
        coordinator: CategorizationCoordinator,
        feedback: FeedbackManager,
        learning: LearningManager,
        usage: UsageRecorder,
    ) -> None:
        self.storage = storage
        self.coordinator = coordinator
        self.feedback = feedback
        self.learning = learning
        self.usage = usage

    @property
    def rules(self) -> RuleEngine:
        return self.coordinator.rules

    @property
    def patterns(self) -> PatternEngine:
        return self.coordinator.patterns

    @property
    def llm(self) -> LLMBatchEngine:
        return self.coordinator.llm

    @property
    def budget(self) -> BudgetManager:
        return self.coordinator.budget

    def get_transaction(self, organization_id: str, transaction_id: str) -> Transaction:
        tx = self.storage.get_transaction(transaction_id)
        if tx is None or tx.organization_id != organization_id:
            raise NotFoundError(f"transaction {transaction_id} not found")
        return tx

    def select_transactions(
        self,
        organization_id: str,
        transaction_ids: list[str] | None = None,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        uncategorized_only: bool = True,
    ) -> list[Transaction]:
        if transaction_ids:
            found = self.storage.get_transactions(transaction_ids)
            selected = [tx for tx in found if tx.organization_id == organization_id]
            if uncategorized_only:
                selected = [tx for tx in selected if tx.category_id is None]
            return selected
        return self.storage.list_transactions(
            organization_id,
            start=start,
            end=end,
            uncategorized_only=uncategorized_only,
        )

    async def categorize(self, transaction: Transaction, persist: bool = True) -> CategorizationResult:
        return await asyncio.to_thread(self.coordinator.categorize, transaction, persist)

    async def categorize_transaction(self, organization_id: str, transaction_id: str) -> CategorizationResult:
        tx = await asyncio.to_thread(self.get_transaction, organization_id, transaction_id)
        logger.debug("[PREDICT] Starting categorization for transaction ID: %s", transaction_id)
        return await self.categorize(tx)

    async def categorize_batch(
        self,
        transactions: list[Transaction],
        cancel_event: threading.Event | None = None,
    ) -> BatchReport:
        return await asyncio.to_thread(self.coordinator.categorize_batch, transactions, cancel_event)

    async def estimate_batch(self, transactions: list[Transaction], strategy: str | None = None) -> CostEstimate:
        return await asyncio.to_thread(self.coordinator.estimate_batch, transactions, strategy)

    async def record_feedback(self, feedback: CategorizationFeedback) -> FeedbackOutcome:
        return await asyncio.to_thread(self.feedback.record_feedback, feedback)

    async def analyze_feedback(self, organization_id: str) -> FeedbackAnalysis:
        return await asyncio.to_thread(self.feedback.analyze_feedback, organization_id)

    def shutdown(self) -> None:
        self.usage.stop()


def build_pipeline(
    storage: Storage,
    embedder: Embedder,
    completer: ChatCompleter,
    config: CascadeConfig | None = None,
    usage: UsageRecorder | None = None,
) -> CategorizationPipeline:
    config = config or CascadeConfig()
    usage = usage or UsageRecorder()

    rules = RuleEngine(storage, usage)
    patterns = PatternEngine(storage, usage, fuzzy_threshold=config.pattern_fuzzy_threshold)
    rag = RAGEngine(
        storage,
        embedder,
        usage,
        embedding_model=config.embedding_model,
        top_k=config.rag_top_k,
        min_similarity=config.rag_min_similarity,
        min_vote_share=config.rag_min_vote_share,
    )
    llm = LLMBatchEngine(
        completer,
        storage,
        avg_tokens_per_transaction=config.llm_avg_tokens_per_transaction,
        rag=rag,
    )
    budget = BudgetManager(storage)
    coordinator = CategorizationCoordinator(
        storage,
        rules,
        patterns,
        rag,
        llm,
        budget,
        config=config,
    )
    feedback = FeedbackManager(storage, patterns, rag, learning_trigger=config.feedback_learning_trigger)
    learning = LearningManager(storage, rag, patterns, feedback, min_confidence=config.pattern_learn_floor)
    return CategorizationPipeline(storage, coordinator, feedback, learning, usage)
