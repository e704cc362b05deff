from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from crawl_orchestrator.errors import InvalidTransition, InvalidUrlFormat, JobNotFound
from crawl_orchestrator.ingest.fetch import create_session
from crawl_orchestrator.monitoring.logging_utils import get_event_logger
from crawl_orchestrator.orchestration.facade import OrchestrationFacade
from crawl_orchestrator.runtime import build_orchestrator
from crawl_orchestrator.store import create_redis_client


app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
log_event = get_event_logger("api")


class CrawlRequest(BaseModel):
    url: str = Field(min_length=1)
    max_depth: int | None = Field(default=None, ge=0)
    allowed_domains: list[str] | None = None
    owner_id: str | None = None
    priority: int = 0


@app.on_event("startup")
async def startup() -> None:
    redis_client = create_redis_client()
    session = create_session()
    app.state.redis_client = redis_client
    app.state.session = session
    app.state.orchestrator = build_orchestrator(redis_client, session)
    log_event("api_start")


@app.on_event("shutdown")
async def shutdown() -> None:
    session = getattr(app.state, "session", None)
    if session is not None:
        await session.close()
    redis_client = getattr(app.state, "redis_client", None)
    if redis_client is not None:
        await redis_client.aclose()


def _facade() -> OrchestrationFacade:
    return app.state.orchestrator.facade


@app.get("/health")
async def health() -> dict:
    return await _facade().health()


@app.post("/crawl")
async def start_crawl(request: CrawlRequest) -> dict:
    try:
        job_id = await _facade().start_crawl(
            request.url,
            request.max_depth,
            request.allowed_domains,
            owner_id=request.owner_id,
            priority=request.priority,
        )
    except InvalidUrlFormat as exc:
        raise HTTPException(status_code=400, detail=exc.code) from exc
    return {"job_id": job_id, "status": "pending"}


@app.get("/crawl/{job_id}")
async def crawl_status(job_id: str) -> dict:
    try:
        return await _facade().get_status(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.code) from exc


@app.post("/queue/stop/{job_id}")
async def stop_crawl(job_id: str) -> dict:
    try:
        job = await _facade().stop_crawl(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.code) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=exc.detail) from exc
    return job.to_dict()


@app.post("/queue/clear")
async def clear_queue() -> dict:
    return {"removed": await _facade().clear_queue()}


@app.post("/queue/reset")
async def reset_queue() -> dict:
    return await _facade().reset_all()


@app.get("/queue/stats")
async def queue_stats() -> dict:
    return await _facade().queue_stats()


@app.websocket("/ws")
async def snapshots(websocket: WebSocket) -> None:
    await websocket.accept()
    orchestrator = app.state.orchestrator
    subscription = orchestrator.broadcaster.subscribe()
    try:
        await websocket.send_json(await orchestrator.notifier.snapshot())
        while True:
            await websocket.send_json(await subscription.get())
    except WebSocketDisconnect:
        log_event("ws_close")
    finally:
        orchestrator.broadcaster.unsubscribe(subscription)
