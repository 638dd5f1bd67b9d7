"""API tests for the contextdocs HTTP and WebSocket endpoints."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from indexer.sqlite_adapter import SQLiteAdapter
from pipelines.ranker import RelevanceRanker
from server.api import create_app
from server.caching import CacheManager, SuggestionCache
from server.distributor import ContextDistributor
from server.jobs import JobManager
from server.realtime import ConnectionHub

KUBECTL_CONTEXT = {"type": "command_execution", "commands": ["kubectl get pods"], "timestamp": 1700000000000}


@pytest.fixture
def client(tmp_path):
    settings = Settings(sqlite_path=str(tmp_path / "api.db"))
    store = SQLiteAdapter(settings.sqlite_path)
    asyncio.run(store.initialize())
    distributor = ContextDistributor(
        store,
        SuggestionCache(CacheManager()),
        RelevanceRanker(store),
        ConnectionHub(settings.publish_scope),
        JobManager(settings.job_queue_size, workers=1),
        settings
    )
    app = create_app(settings, distributor)
    with TestClient(app) as test_client:
        yield test_client
    asyncio.run(store.close())


def generate(client, subject_id="alice", context=None):
    response = client.post("/suggestions/generate",
                           json={"subject_id": subject_id, "context_data": context or KUBECTL_CONTEXT})
    assert response.status_code == 200
    return response.json()


class TestHealth:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True

    def test_detailed_health(self, client):
        r = client.get("/health/detailed")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["components"]["database"]["status"] == "healthy"
        assert data["components"]["jobs"]["status"] == "healthy"
        assert data["components"]["cache"]["backend"] == "memory"

    def test_metrics_exposition(self, client):
        client.get("/health")
        r = client.get("/metrics")
        assert r.status_code == 200
        assert "contextdocs_http_requests_total" in r.text


class TestContextRoutes:

    def test_update_and_read_back(self, client):
        r = client.post("/context/update", json={"subject_id": "alice", "context_data": KUBECTL_CONTEXT})
        assert r.status_code == 200
        assert r.json()["success"] is True

        current = client.get("/context/current/alice").json()
        assert current["context"]["commands"] == ["kubectl get pods"]

        activity = client.get("/context/activity/alice", params={"type": "command_execution"}).json()
        assert activity["total"] == 1

        search = client.get("/context/search", params={"query": "kubectl"}).json()
        assert search["total"] == 1

        analytics = client.get("/context/analytics/alice", params={"period": "30d"}).json()
        assert analytics["summary"]["total_activities"] == 1
        assert analytics["period"] == "30d"

    def test_update_requires_subject(self, client):
        r = client.post("/context/update", json={"context_data": {"type": "log_update"}})
        assert r.status_code == 400

    def test_missing_context_payload_has_no_side_effects(self, client):
        assert client.post("/context/update", json={"subject_id": "alice"}).status_code == 422
        assert client.post("/suggestions/generate", json={"subject_id": "alice"}).status_code == 422

        assert client.get("/context/activity/alice").json()["activities"] == []
        assert client.get("/suggestions/history/alice").json()["suggestions"] == []
        assert client.get("/context/current/alice").status_code == 404
        assert client.get("/jobs").json()["total"] == 0

    def test_unknown_kind_accepted(self, client):
        r = client.post("/context/update", json={"subject_id": "alice", "context_data": {"type": "clipboard"}})
        assert r.status_code == 200

    def test_no_current_context(self, client):
        assert client.get("/context/current/nobody").status_code == 404

    def test_search_requires_query(self, client):
        assert client.get("/context/search").status_code == 400


class TestSuggestionRoutes:

    def test_generate_kubectl_rule(self, client):
        data = generate(client)
        assert data["cached"] is False
        rule = next(s for s in data["suggestions"] if s["type"] == "rule-based")
        assert rule["relevance_score"] == pytest.approx(0.9)
        assert "kubectl" in rule["matched_keywords"]
        assert data["context_vector"]["kubectl"] == 3

    def test_generate_is_cached(self, client):
        first = generate(client)
        second = generate(client)
        assert second["cached"] is True
        assert second["suggestions"] == first["suggestions"]

    def test_documentation_joins_ranking(self, client):
        client.post("/documentation", json={
            "id": "doc-k8s", "title": "kubectl pod debugging", "content": "kubectl describe pod",
            "source": "runbooks", "keywords": ["kubectl", "pod"], "tags": ["kubectl"]
        })
        response = client.post("/suggestions/generate", json={
            "subject_id": "alice", "context_data": KUBECTL_CONTEXT, "include_unfiltered": True
        })
        candidates = response.json()["all_suggestions"]
        assert "doc-k8s" in [s["documentation_id"] for s in candidates]

    def test_feedback_flow(self, client):
        suggestion_id = generate(client)["suggestions"][0]["id"]

        r = client.post(f"/suggestions/{suggestion_id}/feedback", json={"feedback": "helpful", "subject_id": "alice"})
        assert r.status_code == 200
        assert r.json() == {"success": True}

        history = client.get("/suggestions/history/alice").json()["suggestions"]
        assert history[0]["feedback"] == "helpful"

        analytics = client.get("/suggestions/analytics").json()
        assert analytics["overview"]["helpful_count"] == 1

    def test_invalid_feedback_rejected(self, client):
        suggestion_id = generate(client)["suggestions"][0]["id"]
        r = client.post(f"/suggestions/{suggestion_id}/feedback", json={"feedback": "great"})
        assert r.status_code == 422
        history = client.get("/suggestions/history/alice").json()["suggestions"]
        assert history[0]["feedback"] is None

    def test_feedback_unknown_suggestion(self, client):
        r = client.post("/suggestions/missing/feedback", json={"feedback": "irrelevant"})
        assert r.status_code == 404

    def test_realtime(self, client):
        assert client.get("/suggestions/realtime/alice").json()["suggestions"] == []
        client.post("/context/update", json={"subject_id": "alice", "context_data": KUBECTL_CONTEXT})
        data = client.get("/suggestions/realtime/alice").json()
        assert data["context"]["commands"] == ["kubectl get pods"]
        assert data["suggestions"]


class TestDocumentationRoutes:

    def test_crud_and_search(self, client):
        r = client.post("/documentation", json={
            "title": "Redis persistence", "content": "AOF and RDB snapshots for redis",
            "source": "redis-docs", "tags": ["redis"], "category": "database"
        })
        assert r.status_code == 201
        doc_id = r.json()["id"]

        assert client.get(f"/documentation/{doc_id}").json()["title"] == "Redis persistence"

        results = client.get("/documentation/search/redis", params={"tags": "redis"}).json()
        assert [d["id"] for d in results["results"]] == [doc_id]

        assert client.delete(f"/documentation/{doc_id}").status_code == 200
        assert client.get(f"/documentation/{doc_id}").status_code == 404
        assert client.delete(f"/documentation/{doc_id}").status_code == 404

    def test_validation(self, client):
        r = client.post("/documentation", json={"title": "", "content": "x", "source": "y"})
        assert r.status_code == 422

    def test_list_and_meta(self, client):
        client.post("/documentation", json={"id": "k8s", "title": "Pod restarts", "content": "CrashLoopBackOff",
                                            "source": "runbooks", "category": "kubernetes", "priority": 9})
        client.post("/documentation", json={"id": "pg", "title": "Vacuum", "content": "autovacuum tuning",
                                            "source": "runbooks", "category": "database"})
        client.post("/documentation", json={"id": "misc", "title": "Shell tips", "content": "bash history",
                                            "source": "wiki"})

        listing = client.get("/documentation").json()
        assert [d["id"] for d in listing["documentation"]][0] == "k8s"
        assert listing["total"] == 3
        assert [d["id"] for d in client.get("/documentation", params={"source": "wiki"}).json()["documentation"]] == ["misc"]
        assert [d["id"] for d in client.get("/documentation", params={"search": "autovacuum"}).json()["documentation"]] == ["pg"]

        categories = client.get("/documentation/meta/categories").json()
        assert {c["category"]: c["count"] for c in categories} == {"kubernetes": 1, "database": 1}
        sources = client.get("/documentation/meta/sources").json()
        assert sources[0] == {"source": "runbooks", "count": 2}

    def test_partial_update(self, client):
        client.post("/documentation", json={"id": "pg", "title": "Vacuum", "content": "autovacuum tuning",
                                            "source": "runbooks", "keywords": ["postgres"]})

        r = client.put("/documentation/pg", json={"content": "bloat and wraparound", "priority": 8})
        assert r.status_code == 200
        doc = r.json()
        assert doc["title"] == "Vacuum"
        assert doc["priority"] == 8

        hits = client.get("/documentation/search/wraparound").json()["results"]
        assert [d["id"] for d in hits] == ["pg"]

    def test_update_errors(self, client):
        assert client.put("/documentation/missing", json={"title": "x"}).status_code == 404
        client.post("/documentation", json={"id": "pg", "title": "Vacuum", "content": "x", "source": "y"})
        assert client.put("/documentation/pg", json={}).status_code == 400
        assert client.put("/documentation/pg", json={"title": ""}).status_code == 422


class TestJobsRoutes:

    def test_context_update_queues_generation(self, client):
        client.post("/context/update", json={"subject_id": "alice", "context_data": KUBECTL_CONTEXT})
        jobs = client.get("/jobs").json()
        assert jobs["total"] == 1
        job_id = jobs["jobs"][0]["id"]
        assert client.get(f"/jobs/{job_id}").json()["type"] == "generate_suggestions"

    def test_invalid_status(self, client):
        assert client.get("/jobs", params={"status": "exploded"}).status_code == 400
        assert client.get("/jobs/nope").status_code == 404


class TestWebSocket:

    def test_context_update_over_websocket(self, client):
        with client.websocket_connect("/ws?subject_id=alice") as origin, \
                client.websocket_connect("/ws?subject_id=alice") as peer:
            assert origin.receive_json()["type"] == "connected"
            assert peer.receive_json()["type"] == "connected"

            origin.send_json({"type": "context-update", "data": KUBECTL_CONTEXT})
            assert origin.receive_json()["type"] == "context-accepted"

            message = peer.receive_json()
            assert message["type"] == "new-context"
            assert message["data"]["commands"] == ["kubectl get pods"]
            assert message["subject_id"] == "alice"

    def test_unknown_message_type(self, client):
        with client.websocket_connect("/ws?subject_id=alice") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"
            ws.send_json({"type": "dance"})
            assert ws.receive_json()["type"] == "error"
