from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

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

PatternUpdater = Callable[[MerchantPattern | None], MerchantPattern | None]


class Storage(ABC):
    """Persistence used by the categorization core. Everything is scoped by organization_id.

    Implementations raise ``StorageUnavailableError`` when the backend cannot be reached.
    """

    # Transactions
    @abstractmethod
    def add_transaction(self, transaction: Transaction) -> Transaction: ...

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Transaction | None: ...

    @abstractmethod
    def get_transactions(self, transaction_ids: list[str]) -> list[Transaction]: ...

    @abstractmethod
    def list_transactions(
        self,
        organization_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        uncategorized_only: bool = False,
    ) -> list[Transaction]: ...

    @abstractmethod
    def save_categorization(self, transaction_id: str, result: CategorizationResult) -> None:
        """Store the result as metadata; also set category_id when ``result.accepted``."""

    @abstractmethod
    def set_transaction_category(self, transaction_id: str, category_id: int | None) -> None: ...

    # Categories
    @abstractmethod
    def add_category(self, category: Category) -> Category: ...

    @abstractmethod
    def list_categories(self, organization_id: str) -> list[Category]: ...

    # Rules
    @abstractmethod
    def create_rule(self, rule: CategoryRule) -> CategoryRule: ...

    @abstractmethod
    def update_rule(self, rule: CategoryRule) -> CategoryRule: ...

    @abstractmethod
    def delete_rule(self, rule_id: str) -> bool: ...

    @abstractmethod
    def get_rule(self, rule_id: str) -> CategoryRule | None: ...

    @abstractmethod
    def list_rules(self, organization_id: str) -> list[CategoryRule]: ...

    @abstractmethod
    def record_rule_usage(self, rule_id: str, used_at: datetime) -> None:
        """Count one successful use of the rule."""

    @abstractmethod
    def record_rule_correction(self, rule_id: str) -> None:
        """Take one success back from the rule's success_rate."""

    # Merchant pattern cache
    @abstractmethod
    def list_patterns(self, organization_id: str) -> list[MerchantPattern]: ...

    @abstractmethod
    def get_pattern(self, organization_id: str, pattern: str) -> MerchantPattern | None: ...

    @abstractmethod
    def upsert_pattern(self, organization_id: str, pattern: str, updater: PatternUpdater) -> MerchantPattern | None:
        """Atomically replace the entry with ``updater(current)``; ``None`` leaves it unchanged."""

    @abstractmethod
    def clear_patterns(self, organization_id: str) -> int: ...

    # Embeddings
    @abstractmethod
    def get_embedding(self, transaction_id: str) -> TransactionEmbedding | None: ...

    @abstractmethod
    def save_embedding(self, embedding: TransactionEmbedding) -> None: ...

    @abstractmethod
    def list_embeddings(self, organization_id: str, *, labeled_only: bool = True) -> list[TransactionEmbedding]: ...

    @abstractmethod
    def update_embedding_label(self, transaction_id: str, category_id: int | None) -> bool: ...

    # Feedback
    @abstractmethod
    def append_feedback(self, feedback: CategorizationFeedback) -> None: ...

    @abstractmethod
    def list_feedback(self, organization_id: str, limit: int | None = None, offset: int = 0) -> list[CategorizationFeedback]: ...

    @abstractmethod
    def list_feedback_for_transaction(self, transaction_id: str) -> list[CategorizationFeedback]: ...

    # Cost ledger
    @abstractmethod
    def get_cost_tracker(self, organization_id: str, now: datetime) -> CostTracker: ...

    @abstractmethod
    def set_budget(self, organization_id: str, monthly_budget: float, daily_budget: float, now: datetime) -> CostTracker: ...

    @abstractmethod
    def try_reserve_spend(self, organization_id: str, amount: float, now: datetime) -> tuple[bool, CostTracker]:
        """Compare-and-increment: add ``amount`` only if no ceiling would be crossed."""

    @abstractmethod
    def adjust_spend(self, organization_id: str, delta: float, transaction_count: int, now: datetime) -> CostTracker: ...

    @abstractmethod
    def record_llm_batch(self, record: LLMBatchRecord) -> None: ...

    @abstractmethod
    def list_llm_batches(self, organization_id: str) -> list[LLMBatchRecord]: ...
