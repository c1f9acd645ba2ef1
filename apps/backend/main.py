from fastapi import FastAPI, Query, HTTPException, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from typing import Optional
from contextlib import asynccontextmanager
import os
import logging
import traceback

from app.profiles import PostgresProfileSource
from app.ranking import RankingService
from core.config import get_settings
from core.context import ScrapeContext
from pipeline.ghost import GhostJobScorer
from pipeline.liveness import LivenessChecker, LivenessService
from pipeline.notify import LoggingNotifier
from pipeline.store import JobStore

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the store-backed services; skipped when no database is configured."""
    settings = get_settings()
    app.state.ranking_service = None
    app.state.liveness_service = None
    liveness_ctx = None

    if settings.database_url:
        store = JobStore(settings.database_url)
        if os.getenv("JOBSCOUT_AUTO_MIGRATE", "true").lower() == "true":
            store.ensure_schema()
        notifier = LoggingNotifier()
        app.state.ranking_service = RankingService(
            store,
            PostgresProfileSource(settings.database_url),
            config=settings.ranking,
        )
        liveness_ctx = ScrapeContext(settings.scraper)
        checker = LivenessChecker(liveness_ctx.http, settings.liveness, store, notifier)
        app.state.liveness_service = LivenessService(
            store,
            checker,
            ghost_scorer=GhostJobScorer(settings.ghost),
            config=settings.liveness,
            notifier=notifier,
        )
        logger.info("[jobscout] Services ready")
    else:
        logger.warning("[jobscout] No DATABASE_URL configured, ranking and liveness endpoints disabled")

    yield

    if liveness_ctx is not None:
        await liveness_ctx.close()


app = FastAPI(title="JobScout API", version="0.1.0", lifespan=lifespan)


@app.middleware("http")
async def error_masking_middleware(request: Request, call_next):
    """Mask detailed errors in production; show full errors in dev."""
    try:
        return await call_next(request)
    except HTTPException:
        raise
    except Exception as e:
        is_dev = os.getenv("JOBSCOUT_ENV", "").lower() == "dev"
        logger.error(f"Unhandled error: {str(e)}")
        if is_dev:
            return JSONResponse(
                status_code=500,
                content={"status": "error", "error": str(e), "traceback": traceback.format_exc()},
            )
        return JSONResponse(status_code=500, content={"status": "error", "error": "Internal server error"})


app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in os.getenv("CORS_ORIGINS", "http://localhost:5000").split(",") if o],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


def get_ranking_service(request: Request) -> RankingService:
    service = getattr(request.app.state, "ranking_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ranking is not configured")
    return service


def get_liveness_service(request: Request) -> LivenessService:
    service = getattr(request.app.state, "liveness_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Liveness sweep is not configured")
    return service


@app.get("/api/healthz")
async def healthz(request: Request):
    return {
        "status": "ok",
        "database": bool(get_settings().database_url),
        "ranking": getattr(request.app.state, "ranking_service", None) is not None,
    }


@app.get("/api/candidates/{candidate_id}/matches")
def candidate_matches(
    candidate_id: str,
    limit: int = Query(20, ge=1, le=100),
    location: Optional[str] = Query(None),
    work_type: Optional[str] = Query(None),
    service: RankingService = Depends(get_ranking_service),
):
    filters = {"location": location, "work_type": work_type}
    results = service.get_matches(candidate_id, filters, limit=limit)
    if results is None:
        raise HTTPException(status_code=404, detail=f"Unknown candidate: {candidate_id}")
    return {
        "status": "ok",
        "data": {
            "candidate_id": candidate_id,
            "total": len(results),
            "items": [r.to_dict() for r in results],
        },
    }


@app.post("/api/liveness/sweep")
async def liveness_sweep(service: LivenessService = Depends(get_liveness_service)):
    summary = await service.run_sweep()
    return {"status": "skipped" if summary.get("skipped") else "ok", "data": summary}
