"""
FastAPI Arena Service - read-only view of the arena plus a manual trigger.

The cadence loops run inside the service process, started from the lifespan
hook unless SCHEDULER_ENABLED=false.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import TradingConfig, load_config
from .engine import CycleOrchestrator, CycleScheduler, build_orchestrator
from .errors import AgentNotFound
from .schemas import CycleResult

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [ARENA] %(levelname)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("arena_trader")

_cfg: Optional[TradingConfig] = None
_orchestrator: Optional[CycleOrchestrator] = None
_scheduler: Optional[CycleScheduler] = None


def get_orchestrator() -> CycleOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Arena service not initialized")
    return _orchestrator


def get_scheduler() -> CycleScheduler:
    if _scheduler is None:
        raise HTTPException(status_code=503, detail="Arena service not initialized")
    return _scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cfg, _orchestrator, _scheduler
    logger.info("Starting Arena Trading Service...")
    _cfg = load_config()
    logging.getLogger().setLevel(_cfg.log_level)
    _orchestrator = build_orchestrator(_cfg)
    _scheduler = CycleScheduler(_cfg, _orchestrator)
    logger.info(f"Trading mode: {_cfg.get_mode_description()}")
    logger.info(f"Roster: {', '.join(_cfg.agent_ids)}")

    if _cfg.scheduler_enabled:
        logger.info("[Scheduler] Starting cadence loops")
        _scheduler.start()

    yield

    if _scheduler:
        await _scheduler.stop()
    logger.info("Arena service shutdown complete")


app = FastAPI(
    title="Arena Trading Service",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class TriggerResponse(BaseModel):
    status: str
    agent_id: Optional[str] = None
    results: List[CycleResult] = []


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Request logging middleware."""
    start_time = datetime.now(timezone.utc)
    response = await call_next(request)
    duration = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
    logger.info(f"{request.method} {request.url.path} - {response.status_code} ({duration:.1f}ms)")
    return response


@app.get("/health")
async def health_check():
    scheduler = _scheduler
    return {
        "status": "healthy",
        "service": "arena_trader",
        "scheduler_running": bool(scheduler and scheduler.running),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/traders")
async def get_traders():
    orchestrator = get_orchestrator()
    traders = []
    for agent in orchestrator.get_agents():
        data = agent.model_dump(mode="json")
        data["win_rate"] = agent.win_rate
        data["open_positions"] = len(orchestrator.get_positions(agent.id))
        traders.append(data)
    return traders


@app.get("/api/positions")
async def get_positions(agent_id: Optional[str] = None):
    orchestrator = get_orchestrator()
    return [p.model_dump(mode="json") for p in orchestrator.get_positions(agent_id)]


@app.get("/api/trades")
async def get_trades(agent_id: Optional[str] = None, limit: int = Query(default=50, ge=1, le=500)):
    orchestrator = get_orchestrator()
    return [t.model_dump(mode="json") for t in orchestrator.get_trades(agent_id, limit=limit)]


@app.get("/api/market")
async def get_market():
    orchestrator = get_orchestrator()
    return [q.model_dump(mode="json") for q in orchestrator.get_market()]


@app.get("/api/snapshots/{agent_id}")
async def get_snapshots(agent_id: str, limit: int = Query(default=100, ge=1, le=5000)):
    orchestrator = get_orchestrator()
    try:
        snapshots = orchestrator.get_snapshots(agent_id, limit=limit)
    except AgentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [s.model_dump(mode="json") for s in snapshots]


@app.post("/api/trigger-cycle", response_model=TriggerResponse)
async def trigger_cycle(agent_id: Optional[str] = None, wait: bool = False):
    """Start a decision round now. With `wait=true` the response carries the cycle results."""
    scheduler = get_scheduler()
    try:
        task = scheduler.trigger_cycle(agent_id)
    except AgentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not wait:
        return TriggerResponse(status="triggered", agent_id=agent_id)
    results = await task
    return TriggerResponse(status="completed", agent_id=agent_id, results=results)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("ARENA_SERVICE_PORT", "8001"))
    uvicorn.run(app, host="0.0.0.0", port=port)
