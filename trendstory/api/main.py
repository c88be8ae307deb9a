import time
import logging
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from apscheduler.schedulers.background import BackgroundScheduler
from contextlib import asynccontextmanager
from typing import Optional

from trendstory.config import get_settings
from trendstory.errors import NotFound
from trendstory.feeds import build_feeds
from trendstory.storage.repository import StoryStore
from trendstory.synthesizer import StorySynthesizer, build_generator
from trendstory.tracker.normalizer import Normalizer
from trendstory.tracker.refresher import StoryRefresher
from trendstory.api.query import QueryService
from trendstory.utils.logging import setup_logging
from trendstory.utils.tz_utils import utc_now

settings = get_settings()
setup_logging(settings.log_level, settings.environment)
logger = logging.getLogger(__name__)

store = StoryStore(grace_seconds=settings.grace)
feeds = build_feeds(settings)
normalizer = Normalizer.from_feeds(
    feeds,
    max_signal_age_seconds=settings.max_signal_age,
    near_duplicate_threshold=settings.near_duplicate_threshold,
)
synthesizer = StorySynthesizer(build_generator(settings), ttl_seconds=settings.ttl)
refresher = StoryRefresher(
    feeds, normalizer, synthesizer, store,
    interval_seconds=settings.refresh_interval_seconds,
    cycle_timeout_seconds=settings.cycle_timeout_seconds,
    backoff_base_seconds=settings.backoff_base_seconds,
    backoff_max_seconds=settings.backoff_max_seconds,
    jitter_seconds=settings.jitter_seconds,
    max_idle_cycles=settings.max_idle_cycles,
    synthesis_workers=settings.synthesis_workers,
    snapshot_path=settings.snapshot_path,
)
query = QueryService(store, normalizer)

# Scheduler com configurações para evitar empilhamento de jobs
scheduler = BackgroundScheduler(
    timezone="UTC",
    job_defaults={
        "coalesce": True,          # junta execuções atrasadas
        "max_instances": 1,        # não roda dois ciclos ao mesmo tempo
        "misfire_grace_time": 30,  # 30s de tolerância
    },
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.snapshot_path:
        store.load_snapshot(settings.snapshot_path)
    refresher.schedule(scheduler)
    scheduler.start()
    # Primeira execução imediata para aquecer o cache (cold start com store vazio)
    scheduler.add_job(refresher.tick, id="warmup", replace_existing=True)
    logger.info("trend-story-api started (feeds=%s, generator=%s, interval=%ss, ttl=%ss, grace=%ss)",
                ",".join(f.name for f in feeds), synthesizer.generator.name,
                settings.refresh_interval_seconds, settings.ttl, settings.grace)
    yield
    scheduler.shutdown(wait=False)


#%% APP

app = FastAPI(title="trend-story-api", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["content-type"],
)
# Compressão gzip para reduzir payloads de /stories e /latest
app.add_middleware(GZipMiddleware, minimum_size=512)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse({"error": "Not Found", "code": 404, "key": exc.key}, status_code=404)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail, "code": exc.status_code}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "Invalid request parameters", "code": 422, "details": jsonable_encoder(exc.errors())},
        status_code=422,
    )


@app.get("/health")
def health():
    now = utc_now()
    last_success = refresher.last_success_at
    age = int((now - last_success).total_seconds()) if last_success else None
    if last_success is None:
        status = "starting"
    elif age > settings.ttl:
        # nenhum ciclo completo dentro do TTL: conteúdo servido está velho
        status = "stale"
    else:
        status = "ok"
    last_cycle = refresher.last_cycle
    return {
        "status": status,
        "ts": int(time.time()),
        "state": refresher.state.value,
        "last_success_at": last_success.isoformat() if last_success else None,
        "last_success_age_seconds": age,
        "backoff_failures": refresher.failures,
        "stories": len(store),
        "last_cycle": last_cycle.model_dump(mode="json") if last_cycle else None,
        "counters": refresher.counters(),
    }


@app.get("/ready")
def ready():
    if refresher.last_success_at is None:
        raise HTTPException(503, "No refresh cycle completed yet")
    return {"status": "ready"}


@app.get("/stories")
def list_stories(
    within_minutes: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=500),
):
    items = query.list_stories(within_minutes=within_minutes, limit=limit)
    return {"status": "success", "data": [s.model_dump(mode="json") for s in items]}


@app.get("/stories/by-topic")
def story_by_topic(topic: str = Query(..., min_length=1)):
    return {"status": "success", "data": query.get_story_by_topic(topic).model_dump(mode="json")}


@app.get("/stories/{story_id}")
def story_by_id(story_id: str):
    return {"status": "success", "data": query.get_story(story_id).model_dump(mode="json")}


@app.get("/latest")
def latest():
    result = query.latest()
    return {
        "latest_date": result["latest_date"],
        "records": [s.model_dump(mode="json") for s in result["records"]],
    }


# POST
@app.post("/refresh")
def force_refresh():
    cycle = refresher.tick()
    if cycle is None:
        raise HTTPException(409, "Refresh already in progress")
    return {
        "status": "success" if cycle.completed else "error",
        "cycle": cycle.model_dump(mode="json"),
    }


def run():
    import uvicorn
    uvicorn.run("trendstory.api.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
