import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any

from cascade_categorizer.classifiers.patterns import PatternEngine, merchant_key
from cascade_categorizer.classifiers.rag import RAGEngine
from cascade_categorizer.domain.timefmt import format_duration
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import FeedbackType, utcnow
from cascade_categorizer.services.feedback import FeedbackManager
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)


class LearningManager:
    """Re-indexing and pattern-mining jobs. An external scheduler decides when they run."""

    def __init__(
        self,
        storage: Storage,
        rag: RAGEngine,
        patterns: PatternEngine,
        feedback: FeedbackManager,
        min_confidence: float = 0.75,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.rag = rag
        self.patterns = patterns
        self.feedback = feedback
        self.min_confidence = min_confidence
        self.clock = clock
        self._lock = threading.Lock()
        self.active = False
        self.status: dict[str, Any] = {"stage": "idle", "active": False}

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            status = dict(self.status)
            status["active"] = self.active
        return status

    def _begin(self, stage: str, organization_id: str) -> None:
        with self._lock:
            self.active = True
            self.status.clear()
            self.status.update({"stage": stage, "organization_id": organization_id, "active": True})

    def _end(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self.active = False
            self.status.clear()
            self.status.update({**payload, "active": False})

    def reindex(self, organization_id: str) -> dict[str, Any]:
        """Embed categorized transactions that lack embeddings and apply feedback labels."""
        logger.info("[LEARN] Re-indexing embeddings for org %s...", organization_id)
        start = perf_counter()
        self._begin("reindex", organization_id)
        try:
            categorized = [
                tx for tx in self.storage.list_transactions(organization_id) if tx.category_id is not None
            ]
            indexed = self.rag.index_transactions(categorized)

            # Oldest first so the newest feedback decides the label.
            relabeled = 0
            for entry in reversed(self.storage.list_feedback(organization_id)):
                label = None if entry.feedback_type == FeedbackType.REJECTION else entry.new_category_id
                if self.rag.update_label(entry.transaction_id, label):
                    relabeled += 1
            self.feedback.reset_pending(organization_id)
        except Exception as exc:
            self._end({"stage": "error", "message": str(exc), "organization_id": organization_id})
            raise

        duration = perf_counter() - start
        payload = {
            "stage": "complete",
            "job": "reindex",
            "organization_id": organization_id,
            "indexed": indexed,
            "relabeled": relabeled,
            "candidates": len(categorized),
            "duration": format_duration(duration),
        }
        self._end(payload)
        logger.info(
            "[LEARN] Re-index complete for org %s. Indexed: %s/%s, relabeled: %s (%s)",
            organization_id,
            indexed,
            len(categorized),
            relabeled,
            payload["duration"],
        )
        return payload

    def mine_patterns(self, organization_id: str, min_confidence: float | None = None, since_days: int = 30) -> dict[str, Any]:
        """Turn recent confident categorizations into merchant pattern cache entries."""
        floor = self.min_confidence if min_confidence is None else min_confidence
        since = self.clock() - timedelta(days=since_days)
        logger.info("[LEARN] Mining patterns for org %s since %s...", organization_id, since.date())
        start = perf_counter()
        self._begin("mine_patterns", organization_id)
        try:
            learned = 0
            skipped = 0
            for tx in self.storage.list_transactions(organization_id, start=since):
                result = tx.categorization
                if tx.category_id is None or not merchant_key(tx):
                    skipped += 1
                    continue
                if result is not None and result.accepted and result.category_id == tx.category_id:
                    confidence = result.confidence
                else:
                    # Category set by the user.
                    confidence = self.patterns.confidence_cap
                if confidence < floor:
                    skipped += 1
                    continue
                if self.patterns.learn(organization_id, merchant_key(tx), tx.category_id, confidence) is not None:
                    learned += 1
        except Exception as exc:
            self._end({"stage": "error", "message": str(exc), "organization_id": organization_id})
            raise

        duration = perf_counter() - start
        payload = {
            "stage": "complete",
            "job": "mine_patterns",
            "organization_id": organization_id,
            "learned": learned,
            "skipped": skipped,
            "duration": format_duration(duration),
        }
        self._end(payload)
        logger.info(
            "[LEARN] Pattern mining complete for org %s. Learned: %s, skipped: %s (%s)",
            organization_id,
            learned,
            skipped,
            payload["duration"],
        )
        return payload

    def run_if_due(self, organization_id: str) -> dict[str, Any] | None:
        if not self.feedback.learning_due(organization_id):
            return None
        mined = self.mine_patterns(organization_id)
        reindexed = self.reindex(organization_id)
        return {"reindex": reindexed, "mine_patterns": mined}
