"""Tests for real-time fan-out and the background work queue."""

import asyncio

import pytest

from config.settings import PublishScope
from server.jobs import JobManager, JobStatus
from server.realtime import ConnectionHub, NEW_CONTEXT, SUGGESTIONS_UPDATE
from services.shared.errors import QueueFullError

from tests.conftest import drain, fake_websocket, sent_types


class BlockingSocket:
    """WebSocket whose sends never complete."""

    def __init__(self):
        self.released = asyncio.Event()

    async def send_json(self, message):
        await self.released.wait()

    async def close(self):
        self.released.set()


class TestConnectionHub:

    @pytest.mark.asyncio
    async def test_context_goes_to_other_sessions_of_subject(self):
        hub = ConnectionHub(PublishScope.SUBJECT)
        origin, peer, stranger = fake_websocket(), fake_websocket(), fake_websocket()
        origin_id = hub.register(origin, "alice")
        hub.register(peer, "alice")
        hub.register(stranger, "bob")

        assert hub.publish_context({"type": "log_update"}, "alice", origin_session=origin_id) == 1
        await drain()

        assert sent_types(peer) == [NEW_CONTEXT]
        assert sent_types(origin) == []
        assert sent_types(stranger) == []
        message = peer.send_json.await_args.args[0]
        assert message["data"] == {"type": "log_update"}
        assert message["subject_id"] == "alice"
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_broadcast_scope(self):
        hub = ConnectionHub(PublishScope.BROADCAST)
        origin, stranger = fake_websocket(), fake_websocket()
        origin_id = hub.register(origin, "alice")
        hub.register(stranger, "bob")

        hub.publish_context({"type": "log_update"}, "alice", origin_session=origin_id)
        await drain()

        assert sent_types(stranger) == [NEW_CONTEXT]
        assert sent_types(origin) == []
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_suggestions_reach_every_subject_session(self):
        hub = ConnectionHub()
        first, second = fake_websocket(), fake_websocket()
        hub.register(first, "alice")
        hub.register(second, "alice")

        assert hub.publish_suggestions("alice", [{"id": "s-1"}]) == 2
        await drain()

        assert sent_types(first) == [SUGGESTIONS_UPDATE]
        assert sent_types(second) == [SUGGESTIONS_UPDATE]
        assert first.send_json.await_args.args[0]["data"] == [{"id": "s-1"}]
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_full_outbox_drops_without_blocking(self):
        hub = ConnectionHub(outbox_size=1)
        slow = BlockingSocket()
        hub.register(slow, "alice")

        assert hub.publish_suggestions("alice", [{"id": "s-1"}]) == 1
        assert hub.publish_suggestions("alice", [{"id": "s-2"}]) == 0
        slow.released.set()
        await hub.close_all()

    @pytest.mark.asyncio
    async def test_broken_session_is_unregistered(self):
        hub = ConnectionHub()
        broken = fake_websocket()
        broken.send_json.side_effect = RuntimeError("socket closed")
        hub.register(broken, "alice")

        hub.publish_suggestions("alice", [])
        await drain()

        assert hub.session_count == 0
        assert hub.sessions_for("alice") == []

    @pytest.mark.asyncio
    async def test_unregister_is_idempotent(self):
        hub = ConnectionHub()
        session_id = hub.register(fake_websocket(), "alice")
        await hub.unregister(session_id)
        await hub.unregister(session_id)
        assert hub.session_count == 0
        assert not hub.send(session_id, {"type": "pong"})


class TestJobManager:

    @pytest.mark.asyncio
    async def test_job_runs_to_completion(self):
        manager = JobManager(max_queue_size=5, workers=1)

        async def handler(parameters):
            return {"echo": parameters["value"]}

        manager.register_handler("echo", handler)
        await manager.start()
        try:
            job_id = manager.enqueue_job("echo", {"value": 42})
            await manager.join()
            job = manager.get_job_status(job_id)
            assert job.status == JobStatus.DONE
            assert job.result == {"echo": 42}
            assert job.to_dict()["status"] == "done"
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failed_job_is_recorded(self):
        manager = JobManager(workers=1)

        async def handler(parameters):
            raise RuntimeError("boom")

        manager.register_handler("explode", handler)
        await manager.start()
        try:
            job_id = manager.enqueue_job("explode")
            await manager.join()
            job = manager.get_job_status(job_id)
            assert job.status == JobStatus.FAILED
            assert job.error == "boom"
            assert manager.list_jobs(JobStatus.FAILED) == [job]
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_queue_full(self):
        manager = JobManager(max_queue_size=1, workers=1)

        async def handler(parameters):
            return None

        manager.register_handler("noop", handler)
        await manager.start()
        try:
            manager.enqueue_job("noop")
            with pytest.raises(QueueFullError):
                manager.enqueue_job("noop")
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_enqueue_requires_start_and_handler(self):
        manager = JobManager()
        with pytest.raises(RuntimeError):
            manager.enqueue_job("noop")

        await manager.start()
        try:
            with pytest.raises(ValueError):
                manager.enqueue_job("unregistered")
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_schedule_interval(self):
        manager = JobManager()
        await manager.start()
        try:
            manager.schedule_interval(lambda: None, 300, job_id="cache_sweep")
            assert manager.scheduler.get_job("cache_sweep") is not None
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        manager = JobManager(max_queue_size=10, workers=1, history_size=3)

        async def handler(parameters):
            return None

        manager.register_handler("noop", handler)
        await manager.start()
        try:
            ids = [manager.enqueue_job("noop") for _ in range(5)]
            await manager.join()
            assert [job.id for job in manager.list_jobs()] == list(reversed(ids[-3:]))
            assert manager.get_job_status(ids[0]) is None
        finally:
            await manager.shutdown()
