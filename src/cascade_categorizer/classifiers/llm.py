from dataclasses import dataclass, field
from time import perf_counter

from cascade_categorizer.classifiers.base import ChatCompleter
from cascade_categorizer.classifiers.rag import RAGEngine
from cascade_categorizer.domain.llm_decoder import DecodeStatus, decode
from cascade_categorizer.domain.timefmt import elapsed_ms
from cascade_categorizer.errors import TransientStageError
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    CategorizationResult,
    Category,
    LLMBatchRecord,
    LLMModel,
    Method,
    SimilarityMatch,
    Transaction,
)
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)

DEFAULT_MODELS = (
    LLMModel(
        name="gpt-4o-mini",
        cost_per_1k_tokens=0.00015,
        max_tokens=128000,
        accuracy_score=0.92,
        is_default=True,
    ),
    LLMModel(
        name="claude-3-haiku-20240307",
        cost_per_1k_tokens=0.00025,
        max_tokens=200000,
        accuracy_score=0.90,
    ),
)

SYSTEM_PROMPT = (
    "You are an expert financial transaction categorization system. "
    "Analyze transactions and return valid JSON responses only."
)

MISSING_FROM_RESPONSE = "Transaction not found in LLM response"
UNKNOWN_CATEGORY = "Could not find matching category"


def build_prompt(
    transactions: list[Transaction],
    categories: list[Category],
    examples: dict[str, list[SimilarityMatch]] | None = None,
) -> str:
    names = {category.id: category.name for category in categories}
    lines = [
        "You are a financial transaction categorization expert. "
        "Your task is to categorize each transaction into the most appropriate category.",
        "",
        "Available Categories:",
    ]
    lines.extend(f"- {category.name} (ID: {category.id})" for category in categories)
    lines.extend(["", "Transactions to categorize:"])

    for index, tx in enumerate(transactions, start=1):
        lines.append(f"{index}. ID: {tx.id}")
        lines.append(f"   Amount: {tx.amount:.2f}")
        if tx.merchant_name:
            lines.append(f"   Merchant: {tx.merchant_name}")
        if tx.description:
            lines.append(f"   Description: {tx.description}")
        lines.append(f"   Date: {tx.date:%Y-%m-%d}")
        for match in (examples or {}).get(tx.id, []):
            label = names.get(match.category_id, str(match.category_id))
            text = match.merchant_name or match.description
            lines.append(f"   Similar past transaction: '{text}' -> {label} (similarity {match.similarity:.2f})")
        lines.append("")

    lines.extend(
        [
            "For each transaction, respond with a JSON object containing:",
            "- transaction_id: the transaction ID (string)",
            "- category_id: the most appropriate category ID (integer)",
            "- confidence: your confidence level (0.0 to 1.0)",
            "- reasoning: brief explanation of your choice",
            "",
            "IMPORTANT: Respond with ONLY a valid JSON array of these objects, "
            "one for each transaction. Do not include any other text.",
        ]
    )
    return "\n".join(lines)


def _resolve_category(item: dict, categories: list[Category]) -> int | None:
    by_id = {category.id: category for category in categories}
    raw_id = item.get("category_id")
    if raw_id is not None and not isinstance(raw_id, bool):
        try:
            category_id = int(raw_id)
        except (TypeError, ValueError):
            category_id = None
        if category_id in by_id:
            return category_id

    name = item.get("category_name")
    if isinstance(name, str):
        wanted = name.strip().casefold()
        for category in categories:
            if category.name.casefold() == wanted:
                return category.id
    return None


def _clamp(value: object) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, number))


@dataclass
class LLMBatchOutcome:
    model: LLMModel
    results: list[CategorizationResult] = field(default_factory=list)
    tokens_used: int = 0
    estimated_cost: float = 0.0
    actual_cost: float = 0.0
    error: str | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.category_id is not None)


class LLMBatchEngine:
    """One prompt, one round-trip, many transactions."""

    def __init__(
        self,
        completer: ChatCompleter,
        storage: Storage,
        models: tuple[LLMModel, ...] | list[LLMModel] = DEFAULT_MODELS,
        avg_tokens_per_transaction: int = 150,
        temperature: float = 0.0,
        max_output_tokens: int | None = None,
        rag: RAGEngine | None = None,
        rag_examples: int = 3,
    ) -> None:
        if not models:
            raise ValueError("at least one LLM model must be configured")
        self.completer = completer
        self.storage = storage
        self.models = list(models)
        self.avg_tokens_per_transaction = avg_tokens_per_transaction
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.rag = rag
        self.rag_examples = rag_examples

    # Model catalog

    def get_model(self, name: str | None) -> LLMModel | None:
        if name is None:
            return None
        return next((model for model in self.models if model.name == name), None)

    def default_model(self) -> LLMModel:
        return next((model for model in self.models if model.is_default), self.models[0])

    def select_model_for_task(self, strategy: str | None) -> LLMModel:
        strategy = (strategy or "").lower()
        if strategy == "cost":
            return min(self.models, key=lambda model: model.cost_per_1k_tokens)
        if strategy == "accuracy":
            return max(self.models, key=lambda model: model.accuracy_score)
        if strategy == "speed":
            timed = [model for model in self.models if model.avg_latency_ms is not None]
            if timed:
                return min(timed, key=lambda model: model.avg_latency_ms)
            # Without latency data the cheapest model is the smallest one.
            return min(self.models, key=lambda model: model.cost_per_1k_tokens)
        if strategy == "balanced":
            return max(
                self.models,
                key=lambda model: model.accuracy_score / model.cost_per_1k_tokens
                if model.cost_per_1k_tokens > 0
                else float("inf"),
            )
        return self.default_model()

    # Cost

    def estimate_tokens(self, count: int) -> int:
        return count * self.avg_tokens_per_transaction

    def estimate_cost(self, count: int, model: LLMModel | None = None) -> float:
        model = model or self.default_model()
        return self.estimate_tokens(count) / 1000.0 * model.cost_per_1k_tokens

    @staticmethod
    def cost_for_tokens(tokens: int, model: LLMModel) -> float:
        return tokens / 1000.0 * model.cost_per_1k_tokens

    # Categorization

    def categorize_batch(
        self,
        transactions: list[Transaction],
        categories: list[Category],
        model: LLMModel | None = None,
        use_rag: bool = False,
    ) -> LLMBatchOutcome:
        """Categorize all transactions with a single completion call.

        Every input transaction gets exactly one result, in input order. Entries the
        model skipped or answered with an unknown category come back with ``error`` set.
        """
        model = model or self.default_model()
        outcome = LLMBatchOutcome(model=model, estimated_cost=self.estimate_cost(len(transactions), model))
        if not transactions:
            return outcome

        start = perf_counter()
        examples = self._examples(transactions) if use_rag else None
        prompt = build_prompt(transactions, categories, examples)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        logger.info("[LLM] Sending %s transactions to %s", len(transactions), model.name)

        try:
            text, tokens = self.completer.complete(
                model.name,
                messages,
                temperature=self.temperature,
                max_tokens=self.max_output_tokens,
            )
        except TransientStageError as exc:
            outcome.error = str(exc)
            outcome.results = self._failed(transactions, outcome.error, model, elapsed_ms(start))
            logger.warning("[LLM] Batch of %s failed: %s", len(transactions), exc)
            return outcome

        outcome.tokens_used = tokens or self.estimate_tokens(len(transactions))
        outcome.actual_cost = self.cost_for_tokens(outcome.tokens_used, model)
        per_transaction_cost = outcome.actual_cost / len(transactions)

        decoded = decode(text)
        if decoded.status is DecodeStatus.UNPARSEABLE:
            outcome.error = f"unparseable LLM response: {decoded.error}"
            outcome.results = self._failed(
                transactions, outcome.error, model, elapsed_ms(start), per_transaction_cost
            )
            logger.warning("[LLM] %s", outcome.error)
        else:
            if decoded.status is DecodeStatus.FENCED:
                logger.debug("[LLM] Response JSON was wrapped; recovered %s items", len(decoded.items))
            outcome.results = self._match_back(
                transactions, categories, decoded.items, model, elapsed_ms(start), per_transaction_cost
            )

        self._record(transactions, outcome, elapsed_ms(start))
        logger.info(
            "[LLM] %s/%s categorized, %s tokens, cost %.6f (estimated %.6f)",
            outcome.succeeded,
            len(transactions),
            outcome.tokens_used,
            outcome.actual_cost,
            outcome.estimated_cost,
        )
        return outcome

    def _examples(self, transactions: list[Transaction]) -> dict[str, list[SimilarityMatch]]:
        if self.rag is None:
            return {}
        return {tx.id: self.rag.similar_examples(tx, self.rag_examples) for tx in transactions}

    def _match_back(
        self,
        transactions: list[Transaction],
        categories: list[Category],
        items: list[dict],
        model: LLMModel,
        processing_ms: float,
        per_transaction_cost: float,
    ) -> list[CategorizationResult]:
        by_id: dict[str, dict] = {}
        for item in items:
            tx_id = item.get("transaction_id")
            if tx_id is not None:
                by_id.setdefault(str(tx_id), item)

        results = []
        for tx in transactions:
            item = by_id.get(tx.id)
            result = CategorizationResult(
                transaction_id=tx.id,
                method=Method.LLM_BASED,
                processing_time_ms=processing_ms,
                cost_estimate=per_transaction_cost,
                model_used=model.name,
            )
            if item is None:
                result.error = MISSING_FROM_RESPONSE
                result.explanation = "No result from LLM"
            else:
                category_id = _resolve_category(item, categories)
                reasoning = item.get("reasoning")
                result.explanation = reasoning if isinstance(reasoning, str) and reasoning else "LLM categorization"
                if category_id is None:
                    result.error = UNKNOWN_CATEGORY
                else:
                    result.category_id = category_id
                    result.confidence = _clamp(item.get("confidence"))
            results.append(result)
        return results

    @staticmethod
    def _failed(
        transactions: list[Transaction],
        error: str,
        model: LLMModel,
        processing_ms: float,
        per_transaction_cost: float = 0.0,
    ) -> list[CategorizationResult]:
        return [
            CategorizationResult(
                transaction_id=tx.id,
                method=Method.LLM_BASED,
                processing_time_ms=processing_ms,
                cost_estimate=per_transaction_cost,
                explanation="LLM failed to categorize transaction",
                error=error,
                model_used=model.name,
            )
            for tx in transactions
        ]

    def _record(self, transactions: list[Transaction], outcome: LLMBatchOutcome, processing_ms: float) -> None:
        succeeded = [result for result in outcome.results if result.category_id is not None]
        record = LLMBatchRecord(
            organization_id=transactions[0].organization_id,
            transaction_count=len(transactions),
            tokens_used=outcome.tokens_used,
            total_cost=outcome.actual_cost,
            estimated_cost=outcome.estimated_cost,
            model_used=outcome.model.name,
            success_rate=len(succeeded) / len(transactions),
            avg_confidence=sum(r.confidence for r in succeeded) / len(succeeded) if succeeded else None,
            processing_time_ms=processing_ms,
        )
        self.storage.record_llm_batch(record)
