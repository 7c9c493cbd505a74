import pytest

from cascade_categorizer.classifiers.patterns import EXACT, FUZZY, PARTIAL, PatternEngine
from cascade_categorizer.models import FeedbackType
from cascade_categorizer.services.usage import UsageRecorder
from cascade_categorizer.storage.memory import InMemoryStorage
from conftest import ORG, make_tx


@pytest.fixture
def engine(storage: InMemoryStorage, usage: UsageRecorder) -> PatternEngine:
    return PatternEngine(storage, usage)


def test_empty_cache_has_no_opinion(engine: PatternEngine) -> None:
    assert engine.match_pattern(make_tx("t1", merchant="Starbucks")) == (None, 0.0, None)


def test_exact_match_uses_stored_confidence(engine: PatternEngine, storage: InMemoryStorage) -> None:
    engine.learn(ORG, "Whole Foods Market", 2, 0.9)

    category_id, confidence, match_type = engine.match_pattern(make_tx("t1", merchant="  WHOLE FOODS   market"))

    assert (category_id, match_type) == (2, EXACT)
    assert confidence == pytest.approx(0.9)
    assert storage.get_pattern(ORG, "whole foods market").usage_count == 2


def test_fuzzy_match_scales_confidence_by_similarity(engine: PatternEngine) -> None:
    engine.learn(ORG, "whole foods market", 2, 0.9)

    category_id, confidence, match_type = engine.match_pattern(make_tx("t1", merchant="whole foods markt"))

    assert (category_id, match_type) == (2, FUZZY)
    assert 0.8 < confidence < 0.9


def test_partial_match_ranks_below_fuzzy(engine: PatternEngine) -> None:
    engine.learn(ORG, "amazon", 2, 0.9)

    category_id, confidence, match_type = engine.match_pattern(make_tx("t1", merchant="amazon marketplace eu sarl"))

    assert (category_id, match_type) == (2, PARTIAL)
    assert confidence == pytest.approx(0.9 * 0.6)


def test_merchant_falls_back_to_description(engine: PatternEngine) -> None:
    engine.learn(ORG, "netflix", 3, 0.85)
    assert engine.match_pattern(make_tx("t1", description="NETFLIX"))[0] == 3


def test_cache_is_scoped_to_organization(engine: PatternEngine) -> None:
    engine.learn(ORG, "starbucks", 1, 0.9)
    assert engine.match_pattern(make_tx("t1", merchant="starbucks", org="other"))[0] is None


def test_learning_same_category_never_lowers_confidence(engine: PatternEngine) -> None:
    first = engine.learn(ORG, "starbucks", 1, 0.9)
    second = engine.learn(ORG, "starbucks", 1, 0.5)
    third = engine.learn(ORG, "starbucks", 1, 0.95)

    assert second.confidence >= first.confidence
    assert third.confidence >= second.confidence
    assert third.confidence <= engine.confidence_cap
    assert third.usage_count == 3


def test_different_category_replaces_only_when_more_confident(engine: PatternEngine) -> None:
    engine.learn(ORG, "costco", 2, 0.9)

    kept = engine.learn(ORG, "costco", 4, 0.7)
    assert (kept.category_id, kept.confidence) == (2, 0.9)

    replaced = engine.learn(ORG, "costco", 4, 0.95)
    assert (replaced.category_id, replaced.confidence) == (4, 0.95)


def test_correction_switches_category_and_lowers_confidence(engine: PatternEngine) -> None:
    before = engine.learn(ORG, "shell", 2, 0.9)

    after = engine.apply_feedback(ORG, "Shell", FeedbackType.CORRECTION, 4)

    assert after.category_id == 4
    assert after.confidence < before.confidence
    assert after.user_corrected is True


def test_correction_on_unknown_merchant_creates_entry(engine: PatternEngine) -> None:
    entry = engine.apply_feedback(ORG, "new cafe", FeedbackType.CORRECTION, 1)
    assert entry.category_id == 1
    assert entry.user_corrected is True
    assert 0 < entry.confidence < 1


def test_rejection_decays_but_keeps_category(engine: PatternEngine) -> None:
    engine.learn(ORG, "shell", 2, 0.9)
    entry = engine.apply_feedback(ORG, "shell", FeedbackType.REJECTION, 2)
    assert entry.category_id == 2
    assert entry.confidence == pytest.approx(0.72)


def test_confirmation_reinforces(engine: PatternEngine) -> None:
    engine.learn(ORG, "shell", 4, 0.8)
    entry = engine.apply_feedback(ORG, "shell", FeedbackType.CONFIRMATION, 4, 0.8)
    assert entry.confidence == pytest.approx(0.82)


def test_similar_patterns_sorted_by_similarity(engine: PatternEngine) -> None:
    engine.learn(ORG, "starbucks coffee", 1, 0.9)
    engine.learn(ORG, "starbucks", 1, 0.9)
    engine.learn(ORG, "shell", 4, 0.9)

    similar = engine.get_similar_patterns(ORG, "Starbucks", threshold=0.5)

    assert [item.pattern for item in similar] == ["starbucks", "starbucks coffee"]
    assert similar[0].similarity == pytest.approx(1.0)


def test_clear_cache_removes_only_that_organization(engine: PatternEngine) -> None:
    engine.learn(ORG, "starbucks", 1, 0.9)
    engine.learn("other", "starbucks", 1, 0.9)

    assert engine.clear_cache(ORG) == 1
    assert engine.list_patterns(ORG) == []
    assert len(engine.list_patterns("other")) == 1


def test_has_user_correction(engine: PatternEngine) -> None:
    engine.learn(ORG, "shell", 2, 0.9)
    assert not engine.has_user_correction(make_tx("t1", merchant="Shell"))
    engine.apply_feedback(ORG, "shell", FeedbackType.CORRECTION, 4)
    assert engine.has_user_correction(make_tx("t1", merchant="Shell"))


def test_fuzzy_match_learns_nothing_by_itself(engine: PatternEngine, storage: InMemoryStorage) -> None:
    engine.learn(ORG, "whole foods market", 2, 0.9)

    engine.match_pattern(make_tx("t1", merchant="whole foods markt"))

    assert storage.get_pattern(ORG, "whole foods markt") is None


def test_match_without_usage_recording(engine: PatternEngine, storage: InMemoryStorage) -> None:
    engine.learn(ORG, "starbucks", 1, 0.9)

    engine.match_pattern(make_tx("t1", merchant="Starbucks"), record_usage=False)

    assert storage.get_pattern(ORG, "starbucks").usage_count == 1


def test_penalize_lowers_only_confidence(engine: PatternEngine) -> None:
    engine.learn(ORG, "starbucks coffee", 1, 0.9)

    entry = engine.penalize(ORG, "starbucks coffee")

    assert entry.category_id == 1
    assert entry.confidence == pytest.approx(0.9 * 0.8)
    assert engine.penalize(ORG, "unknown") is None
