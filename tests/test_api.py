import threading
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from cascade_categorizer.app import create_app
from cascade_categorizer.models import CategoryRule, RuleType
from cascade_categorizer.services.categorization import CategorizationPipeline
from cascade_categorizer.storage.memory import InMemoryStorage
from conftest import ORG, FakeCompleter, llm_reply, make_tx

HEADERS = {"X-Organization-ID": ORG}
BASE = "/api/v1/categorization"


@pytest.fixture
def client(pipeline: CategorizationPipeline) -> Generator[TestClient, None, None]:
    with TestClient(create_app(pipeline)) as test_client:
        yield test_client


@pytest.fixture
def starbucks_rule(pipeline: CategorizationPipeline) -> CategoryRule:
    return pipeline.rules.add_rule(
        CategoryRule(organization_id=ORG, category_id=1, rule_type=RuleType.MERCHANT_PATTERN, pattern="STARBUCKS*", confidence=0.95)
    )


def test_organization_header_is_required(client: TestClient) -> None:
    response = client.get(f"{BASE}/rules")
    assert response.status_code == 400
    assert "X-Organization-ID" in response.json()["detail"]


def test_rule_lifecycle(client: TestClient) -> None:
    created = client.post(
        f"{BASE}/rules",
        json={"category_id": 1, "rule_type": "merchant_pattern", "pattern": "STARBUCKS*", "confidence": 0.95},
        headers=HEADERS,
    )
    assert created.status_code == 201
    rule_id = created.json()["id"]

    updated = client.put(f"{BASE}/rules/{rule_id}", json={"priority": 200}, headers=HEADERS)
    assert updated.status_code == 200
    assert updated.json()["priority"] == 200
    assert updated.json()["pattern"] == "STARBUCKS*"

    listed = client.get(f"{BASE}/rules", headers=HEADERS)
    assert [rule["id"] for rule in listed.json()] == [rule_id]

    assert client.get(f"{BASE}/rules", headers={"X-Organization-ID": "other"}).json() == []

    deleted = client.delete(f"{BASE}/rules/{rule_id}", headers=HEADERS)
    assert deleted.json() == {"status": "deleted", "id": rule_id}
    assert client.delete(f"{BASE}/rules/{rule_id}", headers=HEADERS).status_code == 404


def test_invalid_rule_is_rejected(client: TestClient) -> None:
    response = client.post(
        f"{BASE}/rules",
        json={"category_id": 1, "rule_type": "regex_pattern", "pattern": "([bad"},
        headers=HEADERS,
    )
    assert response.status_code == 422


def test_rule_dry_run(client: TestClient, storage: InMemoryStorage, starbucks_rule: CategoryRule) -> None:
    storage.add_transaction(make_tx("t1", merchant="Starbucks 12", category_id=1))
    storage.add_transaction(make_tx("t2", merchant="Shell"))

    response = client.post(f"{BASE}/rules/{starbucks_rule.id}/test", headers=HEADERS)

    body = response.json()
    assert body["matched_transactions"] == 1
    assert body["accuracy_rate"] == 1.0


def test_categorize_stored_transaction(client: TestClient, storage: InMemoryStorage, starbucks_rule: CategoryRule) -> None:
    storage.add_transaction(make_tx("t1", merchant="STARBUCKS #1234", amount=-4.5))

    response = client.post(f"{BASE}/transactions/t1/categorize", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["category_id"] == 1
    assert body["method"] == "rule_based"
    assert body["accepted"] is True


def test_categorize_unknown_transaction_is_404(client: TestClient) -> None:
    assert client.post(f"{BASE}/transactions/missing/categorize", headers=HEADERS).status_code == 404


def test_categorize_ad_hoc_writes_nothing(client: TestClient, storage: InMemoryStorage, starbucks_rule: CategoryRule) -> None:
    storage.add_transaction(make_tx("t1", merchant="Shell"))

    response = client.post(
        f"{BASE}/categorize",
        json={"id": "t1", "amount": -3.2, "merchant_name": "Starbucks Reserve"},
        headers=HEADERS,
    )

    assert response.json()["category_id"] == 1
    assert response.json()["transaction_id"] != "t1"
    assert storage.get_transaction("t1").category_id is None
    assert storage.list_patterns(ORG) == []
    assert storage.list_rules(ORG)[0].usage_count == 0


def test_batch_and_estimate(client: TestClient, storage: InMemoryStorage, completer: FakeCompleter, starbucks_rule: CategoryRule) -> None:
    completer.reply = llm_reply({"t2": 2})
    storage.add_transaction(make_tx("t1", merchant="Starbucks"))
    storage.add_transaction(make_tx("t2", description="Aldi"))

    estimate = client.post(f"{BASE}/batch/estimate", json={}, headers=HEADERS).json()
    assert estimate["llm_candidates"] == 2

    report = client.post(f"{BASE}/batch/categorize", json={}, headers=HEADERS).json()
    assert report["requested"] == 2
    assert report["categorized"] == 2
    assert report["sent_to_llm"] == 1

    again = client.post(f"{BASE}/batch/categorize", json={}, headers=HEADERS).json()
    assert again["requested"] == 0


def test_feedback_flow(client: TestClient, storage: InMemoryStorage, starbucks_rule: CategoryRule) -> None:
    storage.add_transaction(make_tx("t1", merchant="Starbucks"))
    client.post(f"{BASE}/transactions/t1/categorize", headers=HEADERS)

    response = client.post(
        f"{BASE}/transactions/t1/feedback",
        json={"user_id": "u1", "new_category_id": 2},
        headers=HEADERS,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["feedback"]["old_category_id"] == 1
    assert body["feedback"]["method_used"] == "rule_based"
    assert body["pattern"]["category_id"] == 2

    listed = client.get(f"{BASE}/feedback", headers=HEADERS).json()
    assert len(listed) == 1
    analysis = client.get(f"{BASE}/feedback/analysis", headers=HEADERS).json()
    assert analysis["correction_rate"] == 1.0


def test_patterns_endpoints(client: TestClient, pipeline: CategorizationPipeline) -> None:
    pipeline.patterns.learn(ORG, "starbucks", 1, 0.9)

    assert [p["pattern"] for p in client.get(f"{BASE}/patterns", headers=HEADERS).json()] == ["starbucks"]
    similar = client.get(f"{BASE}/patterns/similar", params={"merchant": "Starbucks"}, headers=HEADERS).json()
    assert similar[0]["similarity"] == 1.0
    assert client.delete(f"{BASE}/patterns/cache", headers=HEADERS).json() == {"status": "cleared", "cleared": 1}


def test_models_endpoints(client: TestClient) -> None:
    models = client.get(f"{BASE}/models").json()
    assert models["default"] == "gpt-4o-mini"
    assert len(models["models"]) == 2
    assert client.get(f"{BASE}/models/best", params={"strategy": "cost"}).json()["name"] == "gpt-4o-mini"


def test_budget_endpoints(client: TestClient) -> None:
    initial = client.get(f"{BASE}/budget", headers=HEADERS).json()
    assert initial["tracker"]["daily_budget"] == 5.0
    assert initial["remaining_daily"] == 5.0

    updated = client.put(f"{BASE}/budget", json={"monthly_budget": 20.0, "daily_budget": 0.0}, headers=HEADERS).json()
    assert updated["tracker"]["monthly_budget"] == 20.0
    assert updated["remaining_daily"] is None

    assert client.put(f"{BASE}/budget", json={"monthly_budget": -1, "daily_budget": 1}, headers=HEADERS).status_code == 422


def test_stats_cost_and_learning_status(client: TestClient, storage: InMemoryStorage, starbucks_rule: CategoryRule) -> None:
    storage.add_transaction(make_tx("t1", merchant="Starbucks"))
    client.post(f"{BASE}/transactions/t1/categorize", headers=HEADERS)

    stats = client.get(f"{BASE}/stats", headers=HEADERS).json()
    assert stats["by_method"] == {"rule_based": 1}

    cost = client.get(f"{BASE}/cost", headers=HEADERS).json()
    assert cost["batches"] == 0
    assert cost["total_cost"] == 0.0

    mined = client.post(f"{BASE}/learning/mine-patterns", headers=HEADERS).json()
    assert mined["job"] == "mine_patterns"
    status = client.get(f"{BASE}/learning/status", headers=HEADERS).json()
    assert status["stage"] == "complete"
    assert status["pending_feedback"] == 0


def test_catalog_endpoints(client: TestClient) -> None:
    created = client.post(f"{BASE}/categories", json={"id": 10, "name": "Books"}, headers=HEADERS)
    assert created.status_code == 201
    names = [category["name"] for category in client.get(f"{BASE}/categories", headers=HEADERS).json()]
    assert "Books" in names

    tx = client.post(f"{BASE}/transactions", json={"amount": -12.0, "description": "Bookshop"}, headers=HEADERS).json()
    listed = client.get(f"{BASE}/transactions", params={"uncategorized_only": True}, headers=HEADERS).json()
    assert [item["id"] for item in listed] == [tx["id"]]


def test_batch_selection_runs_off_the_event_loop(
    client: TestClient, pipeline: CategorizationPipeline, monkeypatch: pytest.MonkeyPatch
) -> None:
    threads = {}
    select = pipeline.select_transactions
    estimate = pipeline.estimate_batch

    def recording_select(*args, **kwargs):
        threads["select"] = threading.get_ident()
        return select(*args, **kwargs)

    async def recording_estimate(*args, **kwargs):
        threads["loop"] = threading.get_ident()
        return await estimate(*args, **kwargs)

    monkeypatch.setattr(pipeline, "select_transactions", recording_select)
    monkeypatch.setattr(pipeline, "estimate_batch", recording_estimate)

    assert client.post(f"{BASE}/batch/estimate", json={}, headers=HEADERS).status_code == 200
    assert threads["select"] != threads["loop"]
