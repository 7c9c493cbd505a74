from collections.abc import Callable
from datetime import datetime

from rapidfuzz import fuzz, process

from cascade_categorizer.classifiers.base import Stage, StageOutcome
from cascade_categorizer.domain.matching import normalize_merchant
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import (
    FeedbackType,
    MerchantPattern,
    Method,
    SimilarPattern,
    Transaction,
    utcnow,
)
from cascade_categorizer.services.usage import PATTERN_CONFIRMED, PATTERN_MATCHED, UsageEvent, UsageRecorder
from cascade_categorizer.storage.base import Storage

logger = get_logger(__name__)

EXACT = "exact"
FUZZY = "fuzzy"
PARTIAL = "partial"

MIN_PARTIAL_LENGTH = 3


def merchant_key(transaction: Transaction) -> str:
    """Normalized merchant name, falling back to the description when there is none."""
    return normalize_merchant(transaction.merchant_name) or normalize_merchant(transaction.description)


def _ranking_score(similarity: float, entry: MerchantPattern) -> float:
    # similarity 70%, usage 20% (saturates at 100 uses), stored confidence 10%
    usage = min(entry.usage_count / 100.0, 1.0)
    return similarity * 0.7 + usage * 0.2 + entry.confidence * 0.1


class PatternEngine(Stage):
    method = Method.PATTERN_BASED

    def __init__(
        self,
        storage: Storage,
        usage: UsageRecorder,
        fuzzy_threshold: float = 85.0,
        partial_factor: float = 0.6,
        reinforce_step: float = 0.02,
        correction_decay: float = 0.8,
        confidence_cap: float = 0.99,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.usage = usage
        self.fuzzy_threshold = fuzzy_threshold
        self.partial_factor = partial_factor
        self.reinforce_step = reinforce_step
        self.correction_decay = correction_decay
        self.confidence_cap = confidence_cap
        self.clock = clock
        usage.register(PATTERN_MATCHED, self._record_hit)
        usage.register(PATTERN_CONFIRMED, self._record_confirmation)

    def evaluate(self, transaction: Transaction, record_usage: bool = True) -> StageOutcome:
        entry, confidence, match_type = self.find_pattern(transaction, record_usage=record_usage)
        if entry is None:
            return StageOutcome(explanation="No similar patterns found")
        return StageOutcome(
            category_id=entry.category_id,
            confidence=confidence,
            explanation=f"{match_type.capitalize()} pattern match: {merchant_key(transaction)} ~ {entry.pattern}",
            pattern_match_type=match_type,
            matched_pattern=entry.pattern,
        )

    def match_pattern(self, transaction: Transaction, record_usage: bool = True) -> tuple[int | None, float, str | None]:
        entry, confidence, match_type = self.find_pattern(transaction, record_usage=record_usage)
        if entry is None:
            return None, 0.0, None
        return entry.category_id, confidence, match_type

    def find_pattern(
        self, transaction: Transaction, record_usage: bool = True
    ) -> tuple[MerchantPattern | None, float, str | None]:
        """Find the cache entry behind a transaction's merchant. Nothing is learned here."""
        key = merchant_key(transaction)
        if not key:
            return None, 0.0, None

        org = transaction.organization_id
        entries = {entry.pattern: entry for entry in self.storage.list_patterns(org)}
        if not entries:
            return None, 0.0, None

        exact = entries.get(key)
        if exact is not None:
            if record_usage:
                self.usage.publish(UsageEvent(PATTERN_MATCHED, org, {"pattern": key, "used_at": self.clock()}))
            return exact, exact.confidence, EXACT

        candidates = process.extract(
            key,
            list(entries),
            scorer=fuzz.token_sort_ratio,
            score_cutoff=self.fuzzy_threshold,
            limit=None,
        )
        if candidates:
            best_pattern, best_score = None, -1.0
            for pattern, score, _ in candidates:
                ranked = _ranking_score(score / 100.0, entries[pattern])
                if ranked > best_score:
                    best_pattern, best_score = pattern, ranked
            entry = entries[best_pattern]
            similarity = fuzz.token_sort_ratio(key, best_pattern) / 100.0
            logger.debug("[PATTERN] Fuzzy '%s' ~ '%s' (similarity %.2f)", key, best_pattern, similarity)
            return entry, entry.confidence * similarity, FUZZY

        partial = self._partial_match(key, entries)
        if partial is not None:
            return partial, partial.confidence * self.partial_factor, PARTIAL

        return None, 0.0, None

    @staticmethod
    def _partial_match(key: str, entries: dict[str, MerchantPattern]) -> MerchantPattern | None:
        best: MerchantPattern | None = None
        for pattern, entry in entries.items():
            if len(pattern) < MIN_PARTIAL_LENGTH:
                continue
            if pattern in key or key in pattern:
                if best is None or len(pattern) > len(best.pattern):
                    best = entry
        return best

    def get_similar_patterns(self, organization_id: str, merchant: str, threshold: float = 0.3) -> list[SimilarPattern]:
        key = normalize_merchant(merchant)
        if not key:
            return []
        entries = {entry.pattern: entry for entry in self.storage.list_patterns(organization_id)}
        matches = process.extract(
            key,
            list(entries),
            scorer=fuzz.token_sort_ratio,
            score_cutoff=threshold * 100.0,
            limit=None,
        )
        similar = [
            SimilarPattern(
                pattern=pattern,
                category_id=entries[pattern].category_id,
                confidence=entries[pattern].confidence,
                similarity=score / 100.0,
                usage_count=entries[pattern].usage_count,
            )
            for pattern, score, _ in matches
        ]
        similar.sort(key=lambda item: (-item.similarity, item.pattern))
        return similar

    def has_user_correction(self, transaction: Transaction) -> bool:
        key = merchant_key(transaction)
        if not key:
            return False
        entry = self.storage.get_pattern(transaction.organization_id, key)
        return entry is not None and entry.user_corrected

    def list_patterns(self, organization_id: str) -> list[MerchantPattern]:
        patterns = self.storage.list_patterns(organization_id)
        return sorted(patterns, key=lambda p: (-p.usage_count, p.pattern))

    def clear_cache(self, organization_id: str) -> int:
        removed = self.storage.clear_patterns(organization_id)
        logger.info("[PATTERN] Cleared %s cached patterns for org %s", removed, organization_id)
        return removed

    # Learning

    def publish_learn(self, transaction: Transaction, category_id: int, confidence: float) -> None:
        key = merchant_key(transaction)
        if not key:
            return
        self.usage.publish(
            UsageEvent(
                PATTERN_CONFIRMED,
                transaction.organization_id,
                {"pattern": key, "category_id": category_id, "confidence": confidence},
            )
        )

    def _reinforced(self, current: float, incoming: float) -> float:
        grown = min(self.confidence_cap, max(current, incoming) + self.reinforce_step)
        return max(current, grown)

    def learn(self, organization_id: str, merchant: str, category_id: int, confidence: float) -> MerchantPattern | None:
        """Upsert a cache entry from a confident decision."""
        key = normalize_merchant(merchant)
        if not key:
            return None
        now = self.clock()

        def update(entry: MerchantPattern | None) -> MerchantPattern | None:
            if entry is None:
                return MerchantPattern(
                    organization_id=organization_id,
                    pattern=key,
                    category_id=category_id,
                    confidence=min(confidence, self.confidence_cap),
                    usage_count=1,
                    created_at=now,
                    last_used_at=now,
                )
            if entry.category_id == category_id:
                entry.confidence = self._reinforced(entry.confidence, confidence)
            elif confidence > entry.confidence:
                entry.category_id = category_id
                entry.confidence = min(confidence, self.confidence_cap)
                entry.user_corrected = False
            else:
                return None
            entry.usage_count += 1
            entry.last_used_at = now
            return entry

        return self.storage.upsert_pattern(organization_id, key, update)

    def apply_feedback(
        self,
        organization_id: str,
        merchant: str | None,
        feedback_type: FeedbackType,
        category_id: int,
        confidence: float | None = None,
    ) -> MerchantPattern | None:
        key = normalize_merchant(merchant)
        if not key:
            return None
        now = self.clock()
        decay = self.correction_decay

        if feedback_type == FeedbackType.CONFIRMATION:
            return self.learn(
                organization_id, key, category_id, confidence if confidence is not None else self.confidence_cap
            )

        def update(entry: MerchantPattern | None) -> MerchantPattern | None:
            if feedback_type == FeedbackType.REJECTION:
                if entry is None:
                    return None
                entry.confidence *= decay
                entry.last_used_at = now
                return entry

            # Correction: the user's category wins, with less certainty than before.
            if entry is None:
                return MerchantPattern(
                    organization_id=organization_id,
                    pattern=key,
                    category_id=category_id,
                    confidence=decay,
                    usage_count=1,
                    user_corrected=True,
                    created_at=now,
                    last_used_at=now,
                )
            entry.category_id = category_id
            entry.confidence *= decay
            entry.user_corrected = True
            entry.usage_count += 1
            entry.last_used_at = now
            return entry

        updated = self.storage.upsert_pattern(organization_id, key, update)
        if updated is not None:
            logger.info(
                "[PATTERN] %s for '%s' (org %s): category %s, confidence %.2f",
                feedback_type.value,
                key,
                organization_id,
                updated.category_id,
                updated.confidence,
            )
        return updated

    def penalize(self, organization_id: str, pattern: str) -> MerchantPattern | None:
        """Lower the confidence of an entry that produced a wrong answer for another spelling."""
        now = self.clock()

        def decay(entry: MerchantPattern | None) -> MerchantPattern | None:
            if entry is None:
                return None
            entry.confidence *= self.correction_decay
            entry.last_used_at = now
            return entry

        updated = self.storage.upsert_pattern(organization_id, pattern, decay)
        if updated is not None:
            logger.info(
                "[PATTERN] Lowered '%s' (org %s) to confidence %.2f after a correction",
                pattern,
                organization_id,
                updated.confidence,
            )
        return updated

    def _record_hit(self, event: UsageEvent) -> None:
        used_at = event.payload["used_at"]

        def bump(entry: MerchantPattern | None) -> MerchantPattern | None:
            if entry is None:
                return None
            entry.usage_count += 1
            entry.last_used_at = used_at
            return entry

        self.storage.upsert_pattern(event.organization_id, event.payload["pattern"], bump)

    def _record_confirmation(self, event: UsageEvent) -> None:
        payload = event.payload
        self.learn(event.organization_id, payload["pattern"], payload["category_id"], payload["confidence"])
