from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from cascade_categorizer.models import Method, RuleMatch, SimilarityMatch, Transaction


@dataclass
class StageOutcome:
    """What one stage thinks about a transaction. ``category_id=None`` means no opinion."""

    category_id: int | None = None
    confidence: float = 0.0
    explanation: str = ""
    rule_matches: list[RuleMatch] = field(default_factory=list)
    similarity_matches: list[SimilarityMatch] = field(default_factory=list)
    pattern_match_type: str | None = None
    matched_pattern: str | None = None

    @property
    def matched(self) -> bool:
        return self.category_id is not None and self.confidence > 0


class Stage(ABC):
    method: Method

    @abstractmethod
    def evaluate(self, transaction: Transaction, record_usage: bool = True) -> StageOutcome:
        """Return a category suggestion with a confidence in [0, 1].

        With ``record_usage`` off the stage publishes no usage statistics.
        """
        pass


class Embedder(ABC):
    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Return a fixed-length vector for the text."""
        pass


class ChatCompleter(ABC):
    @abstractmethod
    def complete(
        self,
        model: str,
        messages: list[dict[str, str]],
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> tuple[str, int]:
        """Return the reply text and the number of tokens the provider billed."""
        pass
