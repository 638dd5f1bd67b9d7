"""HTTP and WebSocket API for contextdocs.

Run with ``uvicorn server.api:app``.
"""

from fastapi import FastAPI, HTTPException, Depends, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
from typing import List, Optional
from contextlib import asynccontextmanager
import datetime
import logging

from config.settings import Settings
from indexer.sqlite_adapter import SQLiteAdapter
from observability.logging import setup_logging
from observability.prometheus_metrics import get_metrics_summary, setup_prometheus_metrics
from pipelines.ranker import RelevanceRanker
from server.caching import CacheManager, SuggestionCache
from server.distributor import ContextDistributor
from server.jobs import JobManager, JobStatus
from server.realtime import ConnectionHub
from services.shared.errors import (
    InvalidContextError,
    InvalidFeedbackError,
    StoreError,
    SuggestionNotFoundError,
)
from services.shared.models import ContextEvent, DocumentationEntry, DocumentationUpdate, FeedbackVerdict

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


class ContextUpdateRequest(BaseModel):
    subject_id: Optional[str] = None
    context_data: ContextEvent


class GenerateRequest(BaseModel):
    context_data: ContextEvent
    subject_id: Optional[str] = None
    include_unfiltered: bool = False


class FeedbackRequest(BaseModel):
    feedback: FeedbackVerdict
    subject_id: Optional[str] = None


async def build_distributor(settings: Settings) -> ContextDistributor:
    """Wire the store, cache, ranker, hub and work queue from settings."""
    store = SQLiteAdapter(settings.sqlite_path)
    await store.initialize()

    manager = CacheManager(settings.redis_url, settings.max_memory_cache_size)
    await manager.initialize()
    cache = SuggestionCache(
        manager,
        suggestion_ttl=settings.suggestion_cache_ttl,
        live_context_ttl=settings.live_context_ttl,
        feedback_ttl=settings.feedback_ttl
    )

    ranker = RelevanceRanker(
        store,
        threshold=settings.suggestion_threshold,
        max_results=settings.max_suggestions,
        oracle_timeout=settings.oracle_timeout,
        max_hits=settings.oracle_max_hits
    )
    hub = ConnectionHub(settings.publish_scope, settings.subscriber_queue_size)
    jobs = JobManager(settings.job_queue_size, settings.job_workers)
    return ContextDistributor(store, cache, ranker, hub, jobs, settings)


async def get_distributor(request: Request) -> ContextDistributor:
    """Dependency to get the context distributor."""
    distributor = getattr(request.app.state, "distributor", None)
    if distributor is None:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return distributor


def create_app(settings: Optional[Settings] = None,
               distributor: Optional[ContextDistributor] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    owns_distributor = distributor is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build components (unless injected), run the work queue, clean up on exit."""
        if owns_distributor:
            setup_logging(
                level=settings.log_level,
                log_file=settings.log_file or None,
                use_json=settings.log_json
            )
            try:
                app.state.distributor = await build_distributor(settings)
            except Exception as e:
                logging.error(f"Failed to initialize application: {e}")
                raise

        current = app.state.distributor
        if not current.jobs.running:
            await current.jobs.start()
        current.jobs.schedule_interval(
            current.cache.manager.cleanup_expired,
            settings.cache_sweep_interval,
            job_id="cache_sweep"
        )
        logging.info("contextdocs API started")

        yield

        try:
            await current.hub.close_all()
            await current.jobs.shutdown()
        except Exception as e:
            logging.error(f"Error during shutdown: {e}")
        if owns_distributor:
            await current.cache.manager.close()
            await current.store.close()
            logging.info("Database connections closed")

    app = FastAPI(title="contextdocs API", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.distributor = distributor

    setup_prometheus_metrics(app)

    # Health

    @app.get("/health")
    def health():
        return {"ok": True, "time": datetime.datetime.utcnow().isoformat() + "Z"}

    @app.get("/health/detailed")
    async def detailed_health_check(distributor: ContextDistributor = Depends(get_distributor)):
        """Component status plus headline counters."""
        health_status = {
            "status": "healthy",
            "timestamp": datetime.datetime.utcnow().isoformat() + "Z",
            "version": VERSION,
            "components": {}
        }

        try:
            stats = await distributor.store.get_database_stats()
            health_status["components"]["database"] = {"status": "healthy", **stats}
        except StoreError as e:
            health_status["components"]["database"] = {"status": "unhealthy", "error": str(e)}
            health_status["status"] = "degraded"

        health_status["components"]["cache"] = {"status": "healthy", **distributor.cache.manager.stats()}
        health_status["components"]["jobs"] = {
            "status": "healthy" if distributor.jobs.running else "stopped"
        }
        health_status["components"]["realtime"] = {
            "status": "healthy",
            "sessions": distributor.hub.session_count
        }
        health_status["metrics"] = get_metrics_summary()
        return health_status

    # Context

    @app.post("/context/update")
    async def update_context(req: ContextUpdateRequest,
                             distributor: ContextDistributor = Depends(get_distributor)):
        try:
            activity_id = await distributor.submit(req.subject_id, req.context_data)
        except InvalidContextError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StoreError as e:
            logging.error(f"Context update error: {e}")
            raise HTTPException(status_code=500, detail="Failed to update context")
        return {"success": True, "activity_id": activity_id}

    @app.get("/context/current/{subject_id}")
    async def current_context(subject_id: str, distributor: ContextDistributor = Depends(get_distributor)):
        context = await distributor.current_context(subject_id)
        if context is None:
            raise HTTPException(status_code=404, detail="No current context found")
        return {"context": context, "timestamp": datetime.datetime.utcnow().isoformat() + "Z"}

    @app.get("/context/activity/{subject_id}")
    async def context_activity(subject_id: str, limit: int = 100, offset: int = 0,
                               type: Optional[str] = None,
                               distributor: ContextDistributor = Depends(get_distributor)):
        try:
            activities = await distributor.activity(subject_id, limit=limit, offset=offset, activity_type=type)
        except StoreError as e:
            logging.error(f"Activity history error: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch activity history")
        return {"activities": activities, "total": len(activities), "limit": limit, "offset": offset}

    @app.get("/context/search")
    async def search_context(query: Optional[str] = None, subject_id: Optional[str] = None,
                             type: Optional[str] = None, limit: int = 50,
                             distributor: ContextDistributor = Depends(get_distributor)):
        try:
            results = await distributor.search_context(query or "", subject_id=subject_id,
                                                       activity_type=type, limit=limit)
        except InvalidContextError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StoreError as e:
            logging.error(f"Context search error: {e}")
            raise HTTPException(status_code=500, detail="Context search failed")
        return {"results": results, "total": len(results)}

    @app.get("/context/analytics/{subject_id}")
    async def context_analytics(subject_id: str, period: str = "7d",
                                distributor: ContextDistributor = Depends(get_distributor)):
        try:
            analytics = await distributor.activity_analytics(subject_id, period)
        except StoreError as e:
            logging.error(f"Context analytics error: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch analytics")
        return {**analytics, "period": period}

    # Suggestions

    @app.post("/suggestions/generate")
    async def generate_suggestions(req: GenerateRequest,
                                   distributor: ContextDistributor = Depends(get_distributor)):
        try:
            return await distributor.generate_suggestions(
                req.subject_id, req.context_data, include_unfiltered=req.include_unfiltered
            )
        except InvalidContextError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StoreError as e:
            logging.error(f"Suggestion generation error: {e}")
            raise HTTPException(status_code=500, detail="Failed to generate suggestions")

    @app.post("/suggestions/{suggestion_id}/feedback")
    async def suggestion_feedback(suggestion_id: str, req: FeedbackRequest,
                                  distributor: ContextDistributor = Depends(get_distributor)):
        try:
            await distributor.feedback(suggestion_id, req.feedback, req.subject_id)
        except InvalidFeedbackError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SuggestionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StoreError as e:
            logging.error(f"Feedback error: {e}")
            raise HTTPException(status_code=500, detail="Failed to record feedback")
        return {"success": True}

    @app.get("/suggestions/history/{subject_id}")
    async def suggestion_history(subject_id: str, limit: int = 50, offset: int = 0,
                                 distributor: ContextDistributor = Depends(get_distributor)):
        try:
            suggestions = await distributor.history(subject_id, limit=limit, offset=offset)
        except StoreError as e:
            logging.error(f"Suggestion history error: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch suggestion history")
        return {"suggestions": suggestions, "total": len(suggestions), "limit": limit, "offset": offset}

    @app.get("/suggestions/analytics")
    async def suggestion_analytics(days: int = 7, distributor: ContextDistributor = Depends(get_distributor)):
        try:
            return await distributor.analytics(days)
        except StoreError as e:
            logging.error(f"Suggestion analytics error: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch analytics")

    @app.get("/suggestions/realtime/{subject_id}")
    async def realtime_suggestions(subject_id: str, distributor: ContextDistributor = Depends(get_distributor)):
        return await distributor.realtime_suggestions(subject_id)

    # Documentation corpus

    @app.get("/documentation")
    async def list_documentation(limit: int = 50, offset: int = 0, category: Optional[str] = None,
                                 source: Optional[str] = None, search: Optional[str] = None,
                                 distributor: ContextDistributor = Depends(get_distributor)):
        try:
            docs = await distributor.store.list_documentation(limit=limit, offset=offset, category=category,
                                                              source=source, search=search)
        except StoreError as e:
            logging.error(f"Documentation fetch error: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch documentation")
        return {"documentation": docs, "total": len(docs)}

    @app.get("/documentation/meta/categories")
    async def documentation_categories(distributor: ContextDistributor = Depends(get_distributor)):
        try:
            return await distributor.store.documentation_categories()
        except StoreError as e:
            logging.error(f"Categories fetch error: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch categories")

    @app.get("/documentation/meta/sources")
    async def documentation_sources(distributor: ContextDistributor = Depends(get_distributor)):
        try:
            return await distributor.store.documentation_sources()
        except StoreError as e:
            logging.error(f"Sources fetch error: {e}")
            raise HTTPException(status_code=500, detail="Failed to fetch sources")

    @app.post("/documentation", status_code=201)
    async def add_documentation(entry: DocumentationEntry,
                                distributor: ContextDistributor = Depends(get_distributor)):
        try:
            return await distributor.store.upsert_documentation(entry)
        except StoreError as e:
            logging.error(f"Documentation store error: {e}")
            raise HTTPException(status_code=500, detail="Failed to store documentation")

    @app.get("/documentation/search/{query}")
    async def search_documentation(query: str, limit: int = 20, category: Optional[str] = None,
                                   tags: Optional[str] = None,
                                   distributor: ContextDistributor = Depends(get_distributor)):
        tag_list: Optional[List[str]] = [t.strip() for t in tags.split(",") if t.strip()] if tags else None
        try:
            results = await distributor.store.search_documentation(query, limit=limit,
                                                                   category=category, tags=tag_list)
        except StoreError as e:
            logging.error(f"Documentation search error: {e}")
            raise HTTPException(status_code=500, detail="Documentation search failed")
        return {"results": results, "total": len(results)}

    @app.get("/documentation/{doc_id}")
    async def get_documentation(doc_id: str, distributor: ContextDistributor = Depends(get_distributor)):
        doc = await distributor.store.get_documentation(doc_id)
        if doc is None:
            raise HTTPException(status_code=404, detail="Documentation not found")
        return doc

    @app.put("/documentation/{doc_id}")
    async def update_documentation(doc_id: str, update: DocumentationUpdate,
                                   distributor: ContextDistributor = Depends(get_distributor)):
        changes = update.changes()
        if not changes:
            raise HTTPException(status_code=400, detail="No fields to update")
        try:
            doc = await distributor.store.update_documentation(doc_id, changes)
        except StoreError as e:
            logging.error(f"Documentation update error: {e}")
            raise HTTPException(status_code=500, detail="Failed to update documentation")
        if doc is None:
            raise HTTPException(status_code=404, detail="Documentation not found")
        return doc

    @app.delete("/documentation/{doc_id}")
    async def delete_documentation(doc_id: str, distributor: ContextDistributor = Depends(get_distributor)):
        if not await distributor.store.delete_documentation(doc_id):
            raise HTTPException(status_code=404, detail="Documentation not found")
        return {"success": True}

    # Jobs

    @app.get("/jobs/{job_id}")
    async def get_job_status(job_id: str, distributor: ContextDistributor = Depends(get_distributor)):
        job_record = distributor.jobs.get_job_status(job_id)
        if not job_record:
            raise HTTPException(status_code=404, detail="Job not found")
        return job_record.to_dict()

    @app.get("/jobs")
    async def list_jobs(status: Optional[str] = None, limit: int = 100,
                        distributor: ContextDistributor = Depends(get_distributor)):
        job_status = None
        if status:
            try:
                job_status = JobStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        jobs = distributor.jobs.list_jobs(job_status, limit)
        return {"jobs": [job.to_dict() for job in jobs], "total": len(jobs)}

    # Real-time channel

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, subject_id: Optional[str] = None):
        distributor = app.state.distributor
        await websocket.accept()
        if distributor is None:
            await websocket.close(code=1011)
            return

        hub = distributor.hub
        session_id = hub.register(websocket, subject_id)
        hub.send(session_id, {"type": "connected", "session_id": session_id, "subject_id": subject_id})
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError:
                    hub.send(session_id, {"type": "error", "error": "Invalid JSON"})
                    continue
                if not isinstance(message, dict):
                    hub.send(session_id, {"type": "error", "error": "Expected a JSON object"})
                    continue
                if message.get("type") == "ping":
                    hub.send(session_id, {"type": "pong"})
                    continue
                if message.get("type") != "context-update":
                    hub.send(session_id, {"type": "error", "error": f"Unknown message type: {message.get('type')}"})
                    continue
                try:
                    event = ContextEvent.model_validate(message.get("data") or {})
                    activity_id = await distributor.submit(subject_id, event, origin_session=session_id)
                    hub.send(session_id, {"type": "context-accepted", "activity_id": activity_id})
                except (ValidationError, InvalidContextError) as e:
                    hub.send(session_id, {"type": "error", "error": str(e)})
                except StoreError as e:
                    logger.error(f"WebSocket context update failed: {e}")
                    hub.send(session_id, {"type": "error", "error": "Failed to update context"})
        except WebSocketDisconnect:
            logger.debug(f"WebSocket {session_id} disconnected")
        finally:
            await hub.unregister(session_id)

    return app


app = create_app()
