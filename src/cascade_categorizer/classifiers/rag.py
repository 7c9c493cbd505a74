from collections import defaultdict
from collections.abc import Callable
from datetime import datetime

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from cascade_categorizer.classifiers.base import Embedder, Stage, StageOutcome
from cascade_categorizer.errors import TransientStageError
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    Method,
    SimilarityMatch,
    Transaction,
    TransactionEmbedding,
    utcnow,
)
from cascade_categorizer.services.usage import EMBEDDING_LABELED, UsageEvent, UsageRecorder
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)


def embedding_text(transaction: Transaction) -> str:
    parts = [transaction.merchant_name or "", transaction.description or ""]
    return " ".join(part.strip() for part in parts if part and part.strip())


class RAGEngine(Stage):
    method = Method.RAG_BASED

    def __init__(
        self,
        storage: Storage,
        embedder: Embedder,
        usage: UsageRecorder,
        embedding_model: str = "text-embedding-3-small",
        top_k: int = 5,
        min_similarity: float = 0.75,
        min_vote_share: float = 0.6,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.embedder = embedder
        self.usage = usage
        self.embedding_model = embedding_model
        self.top_k = top_k
        self.min_similarity = min_similarity
        self.min_vote_share = min_vote_share
        self.clock = clock
        usage.register(EMBEDDING_LABELED, self._record_label)

    def evaluate(self, transaction: Transaction, record_usage: bool = True) -> StageOutcome:
        category_id, confidence, matches = self.retrieve(transaction)
        if category_id is None:
            explanation = "No similar categorized transactions"
        else:
            explanation = f"Similar to {len(matches)} categorized transactions (closest {matches[0].similarity:.2f})"
        return StageOutcome(
            category_id=category_id,
            confidence=confidence,
            explanation=explanation,
            similarity_matches=matches,
        )

    def ensure_embedding(self, transaction: Transaction) -> TransactionEmbedding:
        existing = self.storage.get_embedding(transaction.id)
        if existing is not None and existing.embedding_model == self.embedding_model:
            return existing

        text = embedding_text(transaction)
        if not text:
            raise TransientStageError(f"transaction {transaction.id} has no text to embed")
        vector = self.embedder.embed(text)
        now = self.clock()
        embedding = TransactionEmbedding(
            transaction_id=transaction.id,
            organization_id=transaction.organization_id,
            vector=vector,
            embedding_model=self.embedding_model,
            category_id=existing.category_id if existing is not None else transaction.category_id,
            created_at=existing.created_at if existing is not None else now,
            updated_at=now,
        )
        self.storage.save_embedding(embedding)
        if existing is not None:
            logger.info(
                "[RAG] Re-embedded transaction %s (%s -> %s)",
                transaction.id,
                existing.embedding_model,
                self.embedding_model,
            )
        return embedding

    def _nearest(self, transaction: Transaction, query: TransactionEmbedding, k: int) -> list[tuple[TransactionEmbedding, float]]:
        dimension = len(query.vector)
        candidates = [
            emb
            for emb in self.storage.list_embeddings(transaction.organization_id, labeled_only=True)
            if emb.organization_id == transaction.organization_id
            and emb.transaction_id != transaction.id
            and emb.embedding_model == self.embedding_model
            and len(emb.vector) == dimension
        ]
        if not candidates or dimension == 0:
            return []

        matrix = np.asarray([emb.vector for emb in candidates], dtype=float)
        scores = cosine_similarity(np.asarray([query.vector], dtype=float), matrix)[0]
        order = np.argsort(-scores, kind="stable")[:k]
        return [(candidates[i], float(scores[i])) for i in order]

    def _as_matches(self, neighbours: list[tuple[TransactionEmbedding, float]]) -> list[SimilarityMatch]:
        transactions = {
            tx.id: tx for tx in self.storage.get_transactions([emb.transaction_id for emb, _ in neighbours])
        }
        matches = []
        for emb, score in neighbours:
            tx = transactions.get(emb.transaction_id)
            matches.append(
                SimilarityMatch(
                    transaction_id=emb.transaction_id,
                    category_id=emb.category_id,
                    similarity=round(score, 6),
                    description=tx.description if tx else "",
                    merchant_name=tx.merchant_name if tx else None,
                    amount=tx.amount if tx else 0.0,
                )
            )
        return matches

    def retrieve(self, transaction: Transaction) -> tuple[int | None, float, list[SimilarityMatch]]:
        """Infer a category from the k most similar labeled transactions of the same organization."""
        query = self.ensure_embedding(transaction)
        neighbours = self._nearest(transaction, query, self.top_k)
        if not neighbours:
            return None, 0.0, []

        weights: dict[int, float] = defaultdict(float)
        best_by_category: dict[int, float] = {}
        for emb, score in neighbours:
            if score <= 0:
                continue
            weights[emb.category_id] += score
            best_by_category[emb.category_id] = max(best_by_category.get(emb.category_id, 0.0), score)

        matches = self._as_matches(neighbours)
        total = sum(weights.values())
        if total <= 0:
            return None, 0.0, matches

        winner = max(weights, key=lambda category: (weights[category], -category))
        share = weights[winner] / total
        closest = neighbours[0][1]
        if share < self.min_vote_share or closest < self.min_similarity:
            logger.debug(
                "[RAG] Transaction %s: vote share %.2f / closest %.2f below minimums",
                transaction.id,
                share,
                closest,
            )
            return None, 0.0, matches

        confidence = share * best_by_category[winner]
        return winner, confidence, matches

    def similar_examples(self, transaction: Transaction, limit: int = 3) -> list[SimilarityMatch]:
        """Closest labeled transactions, without any confidence gate. Used as prompt hints."""
        try:
            query = self.ensure_embedding(transaction)
        except TransientStageError as exc:
            logger.warning("[RAG] No examples for transaction %s: %s", transaction.id, exc)
            return []
        return self._as_matches(self._nearest(transaction, query, limit))

    def update_label(self, transaction_id: str, category_id: int | None) -> bool:
        """Relabel an existing embedding; the vector is left untouched."""
        return self.storage.update_embedding_label(transaction_id, category_id)

    def publish_label(self, transaction: Transaction, category_id: int) -> None:
        self.usage.publish(
            UsageEvent(
                EMBEDDING_LABELED,
                transaction.organization_id,
                {"transaction_id": transaction.id, "category_id": category_id},
            )
        )

    def index_transactions(self, transactions: list[Transaction]) -> int:
        indexed = 0
        for transaction in transactions:
            try:
                embedding = self.ensure_embedding(transaction)
            except TransientStageError as exc:
                logger.warning("[RAG] Could not index transaction %s: %s", transaction.id, exc)
                continue
            if transaction.category_id is not None and embedding.category_id != transaction.category_id:
                self.update_label(transaction.id, transaction.category_id)
            indexed += 1
        return indexed

    def _record_label(self, event: UsageEvent) -> None:
        self.update_label(event.payload["transaction_id"], event.payload["category_id"])
