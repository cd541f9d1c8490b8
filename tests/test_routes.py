"""HTTP-level tests for the recommendation and feedback routers."""
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from conftest import FailingStore
from shelfrank.core.deps import get_recommendation_service
from shelfrank.main import app
from shelfrank.services.recommendation_config import ConfigurationRegistry
from shelfrank.services.recommendation_service import RecommendationService

HEADERS = {"X-User-Id": "reader"}


@pytest.fixture
def library(add_book, set_preferences):
    add_book("mistborn", title="Mistborn", authors=["Brandon Sanderson"], genres=["Fantasy"], rating=4.6, ratings_count=5000)
    add_book("hobbit", title="The Hobbit", authors=["J.R.R. Tolkien"], genres=["Fantasy"], rating=4.3, ratings_count=8000)
    add_book("dune", title="Dune", authors=["Frank Herbert"], genres=["Science Fiction"], rating=4.3, ratings_count=6000)
    set_preferences("reader", top_genres=[("Fantasy", 0.8)], favorite_authors=["Brandon Sanderson"])


def _client_for(stores, clock, **kwargs):
    service = RecommendationService(stores, registry=ConfigurationRegistry(), timeout=5, clock=clock)
    app.dependency_overrides[get_recommendation_service] = lambda: service
    return TestClient(app, **kwargs)


@pytest.fixture
def client(stores, clock, library):
    with _client_for(stores, clock) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_missing_user_header_is_401(client):
    response = client.get("/api/recommendations/home")
    assert response.status_code == 401


def test_home_recommendations(client):
    response = client.get("/api/recommendations/home", params={"limit": 2}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "fresh"
    assert body["algorithm"] == "hybrid"
    # the second slot goes to an adjacent genre, not the next Fantasy title
    assert [r["book_id"] for r in body["recommendations"]] == ["mistborn", "dune"]
    assert set(body["recommendations"][0]["score_breakdown"]) >= {"genre_match", "author_match"}


def test_limit_is_validated(client):
    response = client.get("/api/recommendations/home", params={"limit": 0}, headers=HEADERS)
    assert response.status_code == 422


def test_friends_recommendations_empty_without_follows(client):
    response = client.get("/api/recommendations/friends", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["recommendations"] == []


def test_similar_books(client):
    response = client.get("/api/recommendations/similar/mistborn", headers=HEADERS)
    assert response.status_code == 200
    assert [r["book_id"] for r in response.json()] == ["hobbit"]


def test_unavailable_store_is_503(stores, clock, library):
    broken = replace(stores, preferences=FailingStore(stores.preferences, {"read"}))
    with _client_for(broken, clock) as client:
        response = client.get("/api/recommendations/home", headers=HEADERS)
    app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json() == {"detail": "recommendations_unavailable", "retryable": True}


def test_unexpected_error_is_500(stores, clock, library):
    class Exploding(RecommendationService):
        async def get_similar_books(self, book_id, limit=20):
            raise RuntimeError("boom")

    service = Exploding(stores, registry=ConfigurationRegistry(), timeout=5, clock=clock)
    app.dependency_overrides[get_recommendation_service] = lambda: service
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/recommendations/similar/mistborn", headers=HEADERS)
    app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal Server Error"}


def test_feedback_round_trip(client):
    client.get("/api/recommendations/home", headers=HEADERS)

    for action in ("shown", "clicked"):
        response = client.post(
            "/api/recommendations/feedback",
            json={"book_id": "mistborn", "action": action, "algorithm": "hybrid"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "funnel_violation": False}

    metrics = client.get("/api/recommendations/feedback/metrics", params={"algorithm": "hybrid"}, headers=HEADERS)
    assert metrics.status_code == 200
    assert metrics.json()["clicked"] == 1
    assert metrics.json()["ctr"] == 1.0


def test_feedback_conversion_without_click_is_flagged(client):
    response = client.post(
        "/api/recommendations/feedback",
        json={"book_id": "mistborn", "action": "converted", "algorithm": "hybrid", "converted_action": "liked"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "funnel_violation": True}


@pytest.mark.parametrize("payload", [
    {"book_id": "mistborn", "action": "purchased"},
    {"book_id": "mistborn", "action": "converted", "converted_action": "bought"},
])
def test_feedback_rejects_unknown_actions(client, payload):
    response = client.post("/api/recommendations/feedback", json=payload, headers=HEADERS)
    assert response.status_code == 400


def test_compare_endpoint(client):
    response = client.get(
        "/api/recommendations/feedback/compare",
        params={"a": "hybrid", "b": "hybrid:high_diversity"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["winner"] is None
    assert body["metrics_a"]["total"] == 0
