import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.openapi.utils import get_openapi
from fastapi.responses import FileResponse, JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.cors import CORSMiddleware

from . import config
from .analytics import TIMEFRAMES, achievements, analyze_skill, build_progress_analytics
from .audio import AudioStore
from .config import get_logger, log_event
from .errors import ClientInputError, PersistenceFailure
from .metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL
from .middleware.request_id import RequestIdMiddleware
from .models import GameType
from .providers.factory import get_scoring_client
from .retention import RetentionSweeper
from .service import EvaluationService
from .store import get_session_store

logger = get_logger("oratora.api")


def build_service() -> EvaluationService:
    return EvaluationService(
        get_scoring_client(),
        audio_store=AudioStore(config.AUDIO_STORAGE_DIR),
        session_store=get_session_store(),
        max_queue_length=config.EVAL_QUEUE_MAX_LENGTH,
        max_prompts=config.RAPID_FIRE_MAX_PROMPTS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = build_service()
    sweeper = RetentionSweeper(
        service.registry,
        service.audio,
        retention_seconds=config.SESSION_RETENTION_HOURS * 3600,
        interval_seconds=config.SESSION_SWEEP_INTERVAL_SECONDS,
    )
    app.state.evaluation = service  # type: ignore[attr-defined]
    app.state.sweeper = sweeper  # type: ignore[attr-defined]
    sweeper.start()
    log_event(
        logger,
        "startup",
        scoringProvider=type(service.scoring).__name__,
        scoringModel=getattr(service.scoring, "model", None),
        sessionStore=type(service.store).__name__,
        retentionHours=config.SESSION_RETENTION_HOURS,
        queueMaxLength=config.EVAL_QUEUE_MAX_LENGTH,
    )
    try:
        yield
    finally:
        await sweeper.stop()
        await service.shutdown()


app = FastAPI(
    title="Oratora API",
    description="Speech-practice games: queued AI evaluation of recorded audio and progress analytics.",
    version="0.1.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
    allow_credentials=False,
)
app.add_middleware(RequestIdMiddleware)

# Register lifespan context to replace deprecated on_event hooks
app.router.lifespan_context = lifespan


# HTTP metrics middleware
@app.middleware("http")
async def _http_metrics_middleware(request: Request, call_next):
    t0 = time.perf_counter()
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 500)
        return response
    except Exception:
        status_code = 500
        raise
    finally:
        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        path = getattr(route, "path", None) or request.url.path
        try:
            status_class = f"{status_code // 100}xx"
            HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=status_class).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)
        except Exception:
            pass


@app.exception_handler(ClientInputError)
async def _client_input_error(request: Request, exc: ClientInputError):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(PersistenceFailure)
async def _persistence_error(request: Request, exc: PersistenceFailure):
    return JSONResponse({"detail": "Session store unavailable."}, status_code=502)


def _service(request: Request) -> EvaluationService:
    return request.app.state.evaluation


def _request_id(request: Request) -> Optional[str]:
    return getattr(getattr(request, "state", object()), "request_id", None) or request.headers.get("x-request-id")


# ---- form parsing ----

def _parse_int(raw: Optional[str], name: str, required: bool = True) -> Optional[int]:
    if raw is None or str(raw).strip() == "":
        if required:
            raise ClientInputError(f"{name} is required.")
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ClientInputError(f"{name} must be an integer.")


def _parse_float(raw: Optional[str], name: str) -> Optional[float]:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return float(str(raw).strip())
    except ValueError:
        raise ClientInputError(f"{name} must be a number.")


def _parse_bool(raw: Optional[str]) -> bool:
    return str(raw or "").strip().lower() in ("1", "true", "yes", "on")


def _parse_list(raw: Optional[str], name: str) -> List[str]:
    """Accept a JSON array or a comma separated string."""
    if raw is None or not str(raw).strip():
        return []
    text = str(raw).strip()
    if text.startswith("["):
        try:
            val = json.loads(text)
        except ValueError:
            raise ClientInputError(f"{name} must be a JSON array.")
        if not isinstance(val, list):
            raise ClientInputError(f"{name} must be a JSON array.")
        return [str(v) for v in val]
    return [p.strip() for p in text.split(",") if p.strip()]


async def _read_audio(audio: Optional[UploadFile]) -> bytes:
    if audio is None:
        raise ClientInputError("Audio file is required.")
    data = await audio.read()
    if not data:
        raise ClientInputError("Audio file is required.")
    return data


def _body(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ClientInputError("JSON object body is required.")
    return payload


# ---- meta ----

@app.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/metrics", tags=["meta"], include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/service-metrics", tags=["meta"], description="Lightweight service metrics for observability.")
async def service_metrics(request: Request):
    service = _service(request)
    return {
        "queueLength": len(service.queue),
        "isProcessing": service.queue.is_processing,
        "drainState": service.queue.state.value,
        "processed": service.queue.processed,
        "sessionCount": len(service.registry),
    }


# ---- rapid-fire ----

@app.post(
    "/api/v1/games/rapid-fire/evaluate",
    tags=["rapid-fire"],
    description="Queue one rapid-fire prompt recording for evaluation; returns the queue position immediately.",
)
async def rapid_fire_evaluate(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    sessionId: Optional[str] = Form(None),
    promptIndex: Optional[str] = Form(None),
    totalPrompts: Optional[str] = Form(None),
    prompt: Optional[str] = Form(None),
    difficulty: Optional[str] = Form(None),
    seconds: Optional[str] = Form(None),
    responseTime: Optional[str] = Form(None),
    totalTime: Optional[str] = Form(None),
    userId: Optional[str] = Form(None),
):
    data = await _read_audio(audio)
    return _service(request).submit_rapid_fire(
        sessionId or "",
        data,
        prompt_index=_parse_int(promptIndex, "promptIndex"),
        total_prompts=_parse_int(totalPrompts, "totalPrompts"),
        prompt=prompt or "",
        difficulty=difficulty,
        seconds=_parse_float(seconds, "seconds"),
        response_time=_parse_float(responseTime, "responseTime"),
        total_time=_parse_float(totalTime, "totalTime"),
        mime_type=(audio.content_type if audio else None) or "audio/wav",
        user_id=userId or None,
        request_id=_request_id(request),
    )


@app.get("/api/v1/games/rapid-fire/session/{sessionId}", tags=["rapid-fire"], description="Poll a rapid-fire session.")
async def rapid_fire_session(sessionId: str, request: Request):
    return _service(request).status(sessionId, GameType.RAPID_FIRE)


# ---- conductor ----

@app.post("/api/v1/games/conductor/start", tags=["conductor"], description="Start (or resume) a conductor session.")
async def conductor_start(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    body = _body(payload)
    return _service(request).start_conductor(
        str(body.get("sessionId") or ""),
        topic=str(body.get("topic") or ""),
        duration=body.get("duration"),
        user_id=body.get("userId") or None,
    )


@app.post("/api/v1/games/conductor/energy-change", tags=["conductor"], description="Record an energy level change.")
async def conductor_energy_change(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    body = _body(payload)
    return _service(request).record_energy_change(
        str(body.get("sessionId") or ""),
        body.get("energyLevel"),
        body.get("timestamp"),
    )


@app.post("/api/v1/games/conductor/breath-moment", tags=["conductor"], description="Record a breath moment.")
async def conductor_breath_moment(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    body = _body(payload)
    return _service(request).record_breath_moment(str(body.get("sessionId") or ""), body.get("timestamp"))


@app.post(
    "/api/v1/games/conductor/end",
    tags=["conductor"],
    description="End a conductor session and queue its recording for evaluation.",
)
async def conductor_end(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    sessionId: Optional[str] = Form(None),
):
    data = await _read_audio(audio)
    return _service(request).end_conductor(
        sessionId or "",
        data,
        mime_type=(audio.content_type if audio else None) or "audio/webm",
        request_id=_request_id(request),
    )


@app.get("/api/v1/games/conductor/session/{sessionId}", tags=["conductor"], description="Poll a conductor session.")
async def conductor_session(sessionId: str, request: Request):
    return _service(request).status(sessionId, GameType.CONDUCTOR)


# ---- triple-step ----

@app.post(
    "/api/v1/games/triple-step/evaluate",
    tags=["triple-step"],
    description="Queue a triple-step recording for evaluation; returns the queue position immediately.",
)
async def triple_step_evaluate(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    sessionId: Optional[str] = Form(None),
    topic: Optional[str] = Form(None),
    wordList: Optional[str] = Form(None),
    integratedWords: Optional[str] = Form(None),
    missedWords: Optional[str] = Form(None),
    transcription: Optional[str] = Form(None),
    totalTime: Optional[str] = Form(None),
    actualTime: Optional[str] = Form(None),
    completedEarly: Optional[str] = Form(None),
    userId: Optional[str] = Form(None),
):
    data = await _read_audio(audio)
    return _service(request).submit_triple_step(
        sessionId or "",
        data,
        topic=topic or "",
        word_list=_parse_list(wordList, "wordList"),
        integrated_words=_parse_list(integratedWords, "integratedWords"),
        missed_words=_parse_list(missedWords, "missedWords"),
        transcription=transcription or "",
        total_time=_parse_float(totalTime, "totalTime"),
        actual_time=_parse_float(actualTime, "actualTime"),
        completed_early=_parse_bool(completedEarly),
        mime_type=(audio.content_type if audio else None) or "audio/webm",
        user_id=userId or None,
        request_id=_request_id(request),
    )


@app.get("/api/v1/games/triple-step/session/{sessionId}", tags=["triple-step"], description="Poll a triple-step session.")
async def triple_step_session(sessionId: str, request: Request):
    return _service(request).status(sessionId, GameType.TRIPLE_STEP)


# ---- game-agnostic reads ----

@app.get("/api/v1/session/{sessionId}", tags=["sessions"], description="Poll any session by id.")
async def session_status(sessionId: str, request: Request):
    return _service(request).status(sessionId)


def _audio_response(request: Request, sessionId: str, promptIndex: Optional[int] = None):
    service = _service(request)
    name = service.audio_name(sessionId, promptIndex)
    path = service.audio.open_path(name) if service.audio is not None else None
    if path is None:
        return JSONResponse({"detail": "Audio file not found."}, status_code=404)
    media_type = "audio/wav" if path.suffix == ".wav" else "audio/webm"
    return FileResponse(path, media_type=media_type, filename=path.name)


@app.get("/api/v1/audio/{sessionId}/{promptIndex}", tags=["sessions"], description="Stored rapid-fire prompt audio.")
async def audio_for_prompt(sessionId: str, promptIndex: int, request: Request):
    return _audio_response(request, sessionId, promptIndex)


@app.get("/api/v1/audio/{sessionId}", tags=["sessions"], description="Stored audio for single-recording games.")
async def audio_for_session(sessionId: str, request: Request):
    return _audio_response(request, sessionId)


@app.get("/api/v1/debug/state", tags=["meta"], description="Registry and queue dump. Diagnostic only.")
async def debug_state(request: Request):
    return _service(request).debug_state()


# ---- analytics ----

@app.get("/api/v1/analytics/{userId}", tags=["analytics"], description="Progress analytics over the user's history.")
async def analytics_progress(userId: str, request: Request, timeframe: str = Query("30d")):
    if timeframe != "all" and timeframe not in TIMEFRAMES:
        raise ClientInputError("timeframe must be one of 7d, 30d, 90d, all.")
    records = await _service(request).user_history(userId)
    return {"success": True, "analytics": build_progress_analytics(records, timeframe), "timeframe": timeframe}


@app.get("/api/v1/analytics/{userId}/skills", tags=["analytics"], description="Score series and trend for one skill.")
async def analytics_skill(
    userId: str,
    request: Request,
    skill: Optional[str] = Query(None),
    gameType: Optional[str] = Query(None),
):
    if not skill:
        raise ClientInputError("skill is required.")
    records = await _service(request).user_history(userId)
    return {"success": True, "skillData": analyze_skill(records, skill, gameType or None)}


@app.get("/api/v1/analytics/{userId}/achievements", tags=["analytics"], description="Achievement progress.")
async def analytics_achievements(userId: str, request: Request):
    records = await _service(request).user_history(userId)
    return {"success": True, "achievements": achievements(records)}


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema["tags"] = [
        {"name": "meta", "description": "Service metadata and liveness"},
        {"name": "rapid-fire", "description": "Rapid-fire analogies: one evaluation per prompt"},
        {"name": "conductor", "description": "Conductor: live energy cues, one evaluation per session"},
        {"name": "triple-step", "description": "Triple step: word integration, one evaluation per session"},
        {"name": "sessions", "description": "Game-agnostic session status and stored audio"},
        {"name": "analytics", "description": "Progress analytics over persisted history"},
    ]
    openapi_schema["servers"] = [
        {"url": "http://localhost:8000", "description": "Local dev"}
    ]
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi  # type: ignore[assignment]
