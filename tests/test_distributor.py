"""Tests for the context distributor."""

import pytest
import pytest_asyncio

from config.settings import Settings
from indexer.oracle import SearchHit
from pipelines.ranker import RelevanceRanker
from server.caching import fingerprint
from server.distributor import ContextDistributor, period_days
from server.jobs import JobManager
from server.realtime import ConnectionHub, NEW_CONTEXT, SUGGESTIONS_UPDATE
from services.shared.errors import InvalidContextError, InvalidFeedbackError, SuggestionNotFoundError
from services.shared.models import ContextEvent

from tests.conftest import FakeOracle, drain, fake_websocket, sent_types


@pytest_asyncio.fixture
async def distributor(store, suggestion_cache):
    oracle = FakeOracle([SearchHit(id="doc-k8s", score=100.0, title="kubectl pod debugging",
                                   content="kubectl describe pod", keywords=["kubectl", "pod"],
                                   tags=["kubectl"], category="troubleshooting")])
    ranker = RelevanceRanker(oracle)
    jobs = JobManager(max_queue_size=10, workers=1)
    instance = ContextDistributor(store, suggestion_cache, ranker, ConnectionHub(), jobs, Settings())
    yield instance
    await instance.hub.close_all()
    if jobs.running:
        await jobs.shutdown()


class TestSubmit:

    @pytest.mark.asyncio
    async def test_records_and_caches_context(self, distributor, kubectl_event):
        activity_id = await distributor.submit("alice", kubectl_event)

        activities = await distributor.activity("alice")
        assert [a["id"] for a in activities] == [activity_id]
        current = await distributor.current_context("alice")
        assert current["commands"] == ["kubectl get pods"]

        results = await distributor.search_context("kubectl", subject_id="alice")
        assert [r["id"] for r in results] == [activity_id]

    @pytest.mark.asyncio
    async def test_subject_falls_back_to_event(self, distributor, kubectl_event):
        await distributor.submit(None, kubectl_event)
        assert await distributor.current_context("alice") is not None

    @pytest.mark.asyncio
    async def test_missing_subject_rejected(self, distributor):
        with pytest.raises(InvalidContextError):
            await distributor.submit(None, ContextEvent(type="log_update"))
        assert await distributor.activity("alice") == []

    @pytest.mark.asyncio
    async def test_publishes_and_pushes_suggestions(self, distributor, kubectl_event):
        origin, peer = fake_websocket(), fake_websocket()
        origin_id = distributor.hub.register(origin, "alice")
        distributor.hub.register(peer, "alice")
        await distributor.jobs.start()

        await distributor.submit("alice", kubectl_event, origin_session=origin_id)
        await distributor.jobs.join()
        await drain()

        assert sent_types(peer) == [NEW_CONTEXT, SUGGESTIONS_UPDATE]
        assert sent_types(origin) == [SUGGESTIONS_UPDATE]
        pushed = origin.send_json.await_args.args[0]["data"]
        assert any(s["rule_id"] == "rule-k8s-troubleshooting" for s in pushed)

    @pytest.mark.asyncio
    async def test_submit_survives_stopped_queue(self, distributor, kubectl_event):
        assert not distributor.jobs.running
        assert await distributor.submit("alice", kubectl_event) > 0


class TestGenerateSuggestions:

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, distributor, kubectl_event):
        first = await distributor.generate_suggestions("alice", kubectl_event)
        assert first["cached"] is False
        assert {"suggestions", "keywords", "context_vector", "timestamp"} <= set(first)

        second = await distributor.generate_suggestions("alice", kubectl_event)
        assert second["cached"] is True
        assert second["suggestions"] == first["suggestions"]
        assert second["keywords"] == first["keywords"]

    @pytest.mark.asyncio
    async def test_cache_ignores_occurrence_time(self, distributor):
        event = ContextEvent(type="command_execution", commands=["kubectl logs api"], timestamp=1)
        later = ContextEvent(type="command_execution", commands=["kubectl logs api"], timestamp=2)
        await distributor.generate_suggestions("alice", event)
        assert (await distributor.generate_suggestions("alice", later))["cached"] is True

    @pytest.mark.asyncio
    async def test_suggestions_are_persisted(self, distributor, kubectl_event):
        result = await distributor.generate_suggestions("alice", kubectl_event)
        assert result["suggestions"]
        for item in result["suggestions"]:
            row = await distributor.store.get_suggestion(item["id"])
            assert row is not None
            assert row["subject_id"] == "alice"
            assert 0.0 <= item["relevance_score"] <= 1.0

    @pytest.mark.asyncio
    async def test_unfiltered_bypasses_cache(self, distributor, kubectl_event):
        await distributor.generate_suggestions("alice", kubectl_event)
        result = await distributor.generate_suggestions("alice", kubectl_event, include_unfiltered=True)
        assert result["cached"] is False
        assert len(result["all_suggestions"]) >= len(result["suggestions"])

    @pytest.mark.asyncio
    async def test_unfiltered_result_is_not_cached(self, distributor, kubectl_event):
        result = await distributor.generate_suggestions("alice", kubectl_event, include_unfiltered=True)
        assert result["cached"] is False
        assert await distributor.cache.get("alice", fingerprint(kubectl_event)) is None

        again = await distributor.generate_suggestions("alice", kubectl_event)
        assert again["cached"] is False
        assert "all_suggestions" not in again


class TestFeedback:

    @pytest.mark.asyncio
    async def test_valid_feedback(self, distributor, kubectl_event):
        result = await distributor.generate_suggestions("alice", kubectl_event)
        suggestion_id = result["suggestions"][0]["id"]

        record = await distributor.feedback(suggestion_id, "helpful", "alice")
        assert record["feedback"] == "helpful"

        row = await distributor.store.get_suggestion(suggestion_id)
        assert row["feedback"] == "helpful"
        assert row["status"] == "reviewed"
        assert (await distributor.cache.get_feedback(suggestion_id))["subject_id"] == "alice"

    @pytest.mark.asyncio
    async def test_invalid_verdict_changes_nothing(self, distributor, kubectl_event):
        result = await distributor.generate_suggestions("alice", kubectl_event)
        suggestion_id = result["suggestions"][0]["id"]

        with pytest.raises(InvalidFeedbackError):
            await distributor.feedback(suggestion_id, "amazing", "alice")

        row = await distributor.store.get_suggestion(suggestion_id)
        assert row["feedback"] is None
        assert row["status"] == "pending"
        assert await distributor.cache.get_feedback(suggestion_id) is None

    @pytest.mark.asyncio
    async def test_unknown_suggestion(self, distributor):
        with pytest.raises(SuggestionNotFoundError):
            await distributor.feedback("does-not-exist", "irrelevant")

    @pytest.mark.asyncio
    async def test_feedback_keeps_cached_suggestions(self, distributor, kubectl_event):
        result = await distributor.generate_suggestions("alice", kubectl_event)
        await distributor.feedback(result["suggestions"][0]["id"], "not_helpful", "alice")
        again = await distributor.generate_suggestions("alice", kubectl_event)
        assert again["cached"] is True

    @pytest.mark.asyncio
    async def test_analytics(self, distributor, kubectl_event):
        result = await distributor.generate_suggestions("alice", kubectl_event)
        await distributor.feedback(result["suggestions"][0]["id"], "helpful", "alice")
        analytics = await distributor.analytics(7)
        assert analytics["overview"]["helpful_count"] == 1


class TestRealtimeSuggestions:

    @pytest.mark.asyncio
    async def test_without_live_context(self, distributor):
        result = await distributor.realtime_suggestions("nobody")
        assert result["suggestions"] == []

    @pytest.mark.asyncio
    async def test_ranks_live_context(self, distributor, kubectl_event):
        await distributor.submit("alice", kubectl_event)
        result = await distributor.realtime_suggestions("alice")
        assert result["context"]["commands"] == ["kubectl get pods"]
        assert any(s["rule_id"] == "rule-k8s-troubleshooting" for s in result["suggestions"])


@pytest.mark.parametrize("period,days", [("1d", 1), ("30d", 30), ("90d", 90), ("bogus", 7), (None, 7)])
def test_period_days(period, days):
    assert period_days(period) == days
