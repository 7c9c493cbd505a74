import pytest

from cascade_categorizer.errors import NotFoundError
from cascade_categorizer.models import (
    CategorizationFeedback,
    CategorizationResult,
    CategoryRule,
    FeedbackType,
    Method,
    RuleMatch,
    RuleType,
)
from cascade_categorizer.services.categorization import CategorizationPipeline
from cascade_categorizer.services.feedback import FeedbackManager
from cascade_categorizer.storage.memory import InMemoryStorage
from conftest import ORG, make_tx


@pytest.fixture
def feedback(pipeline: CategorizationPipeline) -> FeedbackManager:
    return pipeline.feedback


def _categorized(storage: InMemoryStorage, tx_id: str, merchant: str, category_id: int, method: Method, confidence: float = 0.9, **extra) -> None:
    storage.add_transaction(make_tx(tx_id, merchant=merchant))
    storage.save_categorization(
        tx_id,
        CategorizationResult(
            transaction_id=tx_id,
            category_id=category_id,
            confidence=confidence,
            method=method,
            accepted=True,
            **extra,
        ),
    )


def _feedback(tx_id: str, new_category_id: int, feedback_type: FeedbackType = FeedbackType.CORRECTION, org: str = ORG) -> CategorizationFeedback:
    return CategorizationFeedback(
        transaction_id=tx_id,
        organization_id=org,
        user_id="user-1",
        new_category_id=new_category_id,
        feedback_type=feedback_type,
    )


def test_correction_updates_transaction_and_fills_context(feedback: FeedbackManager, storage: InMemoryStorage) -> None:
    _categorized(storage, "t1", "Shell", 2, Method.LLM_BASED, confidence=0.7)

    outcome = feedback.record_feedback(_feedback("t1", 4))

    assert storage.get_transaction("t1").category_id == 4
    assert outcome.feedback.old_category_id == 2
    assert outcome.feedback.confidence_before == 0.7
    assert outcome.feedback.method_used == Method.LLM_BASED
    assert storage.list_feedback(ORG)[0].id == outcome.feedback.id


def test_correction_of_pattern_result_lowers_pattern_confidence(
    pipeline: CategorizationPipeline, storage: InMemoryStorage
) -> None:
    before = pipeline.patterns.learn(ORG, "shell", 2, 0.9)
    _categorized(storage, "t1", "Shell", 2, Method.PATTERN_BASED)

    outcome = pipeline.feedback.record_feedback(_feedback("t1", 4))

    assert outcome.pattern.category_id == 4
    assert outcome.pattern.confidence < before.confidence
    assert outcome.pattern.user_corrected


def test_correction_of_fuzzy_match_lowers_originating_pattern(
    pipeline: CategorizationPipeline, storage: InMemoryStorage
) -> None:
    pipeline.patterns.learn(ORG, "starbucks coffee", 1, 0.95)
    tx = storage.add_transaction(make_tx("t1", merchant="Starbucks Coffe"))
    result = pipeline.coordinator.categorize(tx)
    assert (result.pattern_match_type, result.matched_pattern) == ("fuzzy", "starbucks coffee")

    outcome = pipeline.feedback.record_feedback(_feedback("t1", 2))

    assert (outcome.pattern.pattern, outcome.pattern.category_id) == ("starbucks coffe", 2)
    originating = storage.get_pattern(ORG, "starbucks coffee")
    assert originating.confidence == pytest.approx(0.95 * 0.8)


def test_confirmation_of_fuzzy_match_keeps_originating_pattern(
    pipeline: CategorizationPipeline, storage: InMemoryStorage
) -> None:
    pipeline.patterns.learn(ORG, "starbucks coffee", 1, 0.95)
    tx = storage.add_transaction(make_tx("t1", merchant="Starbucks Coffe"))
    pipeline.coordinator.categorize(tx)

    pipeline.feedback.record_feedback(_feedback("t1", 1, FeedbackType.CONFIRMATION))

    assert storage.get_pattern(ORG, "starbucks coffee").confidence == pytest.approx(0.95)


def test_correction_of_rule_result_lowers_rule_success_rate(
    pipeline: CategorizationPipeline, storage: InMemoryStorage
) -> None:
    rule = pipeline.rules.add_rule(
        CategoryRule(organization_id=ORG, category_id=2, rule_type=RuleType.MERCHANT_PATTERN, pattern="shell*")
    )
    pipeline.rules.evaluate_rules(make_tx("x", merchant="shell"))
    trace = [RuleMatch(rule_id=rule.id, rule_type=rule.rule_type, pattern=rule.pattern, confidence=0.9, priority=100)]
    _categorized(storage, "t1", "Shell", 2, Method.RULE_BASED, rule_matches=trace)

    outcome = pipeline.feedback.record_feedback(_feedback("t1", 4))

    assert outcome.penalized_rules == (rule.id,)
    assert storage.get_rule(rule.id).success_rate < 1.0


def test_rejection_clears_category(feedback: FeedbackManager, storage: InMemoryStorage) -> None:
    _categorized(storage, "t1", "Shell", 2, Method.LLM_BASED)
    feedback.record_feedback(_feedback("t1", 2, FeedbackType.REJECTION))
    assert storage.get_transaction("t1").category_id is None


def test_feedback_relabels_embedding(pipeline: CategorizationPipeline, storage: InMemoryStorage, embedder) -> None:
    embedder.vectors["Shell"] = [1.0, 0.0]
    _categorized(storage, "t1", "Shell", 2, Method.LLM_BASED)
    pipeline.coordinator.rag.index_transactions([storage.get_transaction("t1")])

    pipeline.feedback.record_feedback(_feedback("t1", 4))

    assert storage.get_embedding("t1").category_id == 4


def test_unknown_or_foreign_transaction_is_not_found(feedback: FeedbackManager, storage: InMemoryStorage) -> None:
    storage.add_transaction(make_tx("t1", merchant="Shell"))
    with pytest.raises(NotFoundError):
        feedback.record_feedback(_feedback("missing", 1))
    with pytest.raises(NotFoundError):
        feedback.record_feedback(_feedback("t1", 1, org="other"))


def test_learning_becomes_due_after_trigger(storage: InMemoryStorage, pipeline: CategorizationPipeline) -> None:
    manager = FeedbackManager(storage, pipeline.patterns, pipeline.coordinator.rag, learning_trigger=3)
    storage.add_transaction(make_tx("t1", merchant="Shell"))

    outcomes = [manager.record_feedback(_feedback("t1", 4)) for _ in range(3)]

    assert [outcome.learning_due for outcome in outcomes] == [False, False, True]
    manager.reset_pending(ORG)
    assert not manager.learning_due(ORG)


def test_analysis_rates_corrections_and_problem_merchants(feedback: FeedbackManager, storage: InMemoryStorage) -> None:
    _categorized(storage, "t1", "Shell", 2, Method.LLM_BASED, confidence=0.6)
    _categorized(storage, "t2", "Shell", 2, Method.LLM_BASED, confidence=0.8)
    _categorized(storage, "t3", "Starbucks", 1, Method.RULE_BASED)
    _categorized(storage, "t4", "Starbucks", 1, Method.RULE_BASED)

    feedback.record_feedback(_feedback("t1", 4))
    feedback.record_feedback(_feedback("t2", 4))
    feedback.record_feedback(_feedback("t3", 1, FeedbackType.CONFIRMATION))
    feedback.record_feedback(_feedback("t4", 1, FeedbackType.CONFIRMATION))

    analysis = feedback.analyze_feedback(ORG)

    assert analysis.total_feedback == 4
    assert analysis.correction_rate == 0.5
    assert analysis.confirmation_rate == 0.5
    assert analysis.correction_rate_by_method == {"llm_based": 1.0, "rule_based": 0.0}
    assert analysis.method_accuracy["rule_based"] == 1.0
    correction = analysis.common_corrections[0]
    assert (correction.from_category_id, correction.to_category_id, correction.count) == (2, 4, 2)
    assert correction.avg_confidence == pytest.approx(0.7)
    assert [problem.merchant for problem in analysis.problematic_merchants] == ["shell"]
    assert analysis.problematic_merchants[0].suggested_rule == "merchant_pattern 'SHELL*' -> category 4"


def test_analysis_of_empty_history(feedback: FeedbackManager) -> None:
    analysis = feedback.analyze_feedback(ORG)
    assert analysis.total_feedback == 0
    assert analysis.common_corrections == []


def test_feedback_listing_is_paged(feedback: FeedbackManager, storage: InMemoryStorage) -> None:
    storage.add_transaction(make_tx("t1", merchant="Shell"))
    for _ in range(3):
        feedback.record_feedback(_feedback("t1", 4))

    assert len(feedback.get_feedback(ORG, limit=2)) == 2
    assert len(feedback.get_feedback(ORG, limit=2, offset=2)) == 1
    assert len(feedback.get_feedback_for_transaction("t1")) == 3
