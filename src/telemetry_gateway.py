"""
Telemetry Gateway - FastAPI Application
Receives frontend logs and game events and persists them as daily JSONL files.
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

import games
from logging_controller import ClientInfo, ControllerResult, LoggingConfig, LoggingController, ResultKind
from partitioner import parse_timestamp
from utils import RequestContextMiddleware, configure_logging, error_response, utc_now_iso

logger = structlog.get_logger()

VERSION = "1.0.0"


class Settings(BaseSettings):
    """Application settings from environment."""
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 3001
    gateway_log_level: str = "INFO"

    logs_dir: str = "logs/frontend"
    max_buffer_size: int = 100
    flush_interval_ms: int = 5000
    flush_on_shutdown: bool = True

    allowed_origins: str = "http://localhost:3000"  # comma-separated
    trust_proxy: bool = True

    class Config:
        env_file = "config/.env"
        env_file_encoding = "utf-8"


LEVEL_PATTERN = "^(ERROR|WARN|INFO|DEBUG|TRACE)$"


class LogEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    level: str = Field(..., pattern=LEVEL_PATTERN)
    objectName: str
    message: str
    data: Optional[Dict[str, Any]] = None
    methodName: Optional[str] = None
    stackTrace: Optional[str] = None
    performance: Optional[Dict[str, Any]] = None


class BatchLogRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    logs: List[LogEntry]
    sessionId: str
    timestamp: datetime
    version: str


class GameEventRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    eventName: str
    eventData: Dict[str, Any]
    playerId: Optional[str] = None
    timestamp: Optional[str] = None  # kept verbatim, checked as ISO-8601
    gameState: Optional[Dict[str, Any]] = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_iso(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and parse_timestamp(value) is None:
            raise ValueError("timestamp must be an ISO-8601 date-time")
        return value


class PlayRequest(BaseModel):
    playerId: Optional[str] = None
    bet: Optional[float] = None


# Global state
settings = Settings()
configure_logging(settings.gateway_log_level)
controller: Optional[LoggingController] = None
started_at = time.monotonic()


def build_controller() -> LoggingController:
    return LoggingController(
        LoggingConfig(
            logs_dir=settings.logs_dir,
            max_buffer_size=settings.max_buffer_size,
            flush_interval_ms=settings.flush_interval_ms,
            flush_on_shutdown=settings.flush_on_shutdown,
        )
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global controller

    # Startup
    logger.info("gateway_startup", version=VERSION)
    controller = build_controller()
    await controller.init()
    controller.start()
    logger.info("gateway_ready", logs_dir=settings.logs_dir)

    yield

    # Shutdown
    logger.info("gateway_shutdown")
    await controller.stop()


app = FastAPI(
    title="Telemetry Gateway",
    description="Frontend log and game event ingestion",
    version=VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)

app.add_middleware(RequestContextMiddleware)


STATUS_CODES = {
    ResultKind.PROCESSED: 200,
    ResultKind.INVALID: 400,
    ResultKind.NOT_INITIALIZED: 503,
    ResultKind.FAILED: 500,
}


def client_info(request: Request) -> ClientInfo:
    """Network origin of the request, honouring X-Forwarded-For behind a proxy."""
    ip = request.client.host if request.client else None
    if settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
    return ClientInfo(ip=ip, user_agent=request.headers.get("user-agent"))


def respond(result: ControllerResult) -> JSONResponse:
    return JSONResponse(status_code=STATUS_CODES[result.kind], content=result.to_response())


def controller_unavailable() -> JSONResponse:
    return error_response(503, "LoggingController not yet initialized")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
    return error_response(
        400,
        "Invalid request body",
        "validation_error",
        {"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("request_failed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return error_response(500, "Internal server error", str(exc))


# Logging endpoints

@app.post("/api/logs/log")
async def receive_log(entry: LogEntry, request: Request):
    """Receive a single log entry from the frontend."""
    if controller is None:
        return controller_unavailable()
    result = await controller.ingest_one(entry.model_dump(mode="json", exclude_unset=True), client_info(request))
    return respond(result)


@app.post("/api/logs/batch")
async def receive_batch(batch: BatchLogRequest, request: Request):
    """Receive a batch of log entries from the frontend."""
    if controller is None:
        return controller_unavailable()
    result = await controller.ingest_batch(batch.model_dump(mode="json", exclude_unset=True), client_info(request))
    return respond(result)


@app.post("/api/logs/game-event")
async def receive_game_event(event: GameEventRequest, request: Request):
    """Receive a game event; written immediately, not buffered."""
    if controller is None:
        return controller_unavailable()
    result = await controller.ingest_game_event(
        event.model_dump(mode="json", exclude_unset=True), client_info(request)
    )
    return respond(result)


@app.get("/api/logs/stats")
async def log_stats():
    if controller is None:
        return controller_unavailable()
    return respond(await controller.get_stats())


@app.post("/api/logs/flush")
async def manual_flush():
    if controller is None:
        return controller_unavailable()
    return respond(await controller.trigger_manual_flush())


@app.delete("/api/logs/buffer")
async def clear_buffer():
    if controller is None:
        return controller_unavailable()
    return respond(await controller.clear_buffer())


@app.get("/api/logs/status")
async def log_status():
    if controller is None:
        return controller_unavailable()
    return respond(await controller.get_status())


@app.get("/api/logs/health")
async def logging_health():
    """Health check for the logging service."""
    return {
        "status": "healthy" if controller and controller.is_initialized else "degraded",
        "timestamp": utc_now_iso(),
        "service": "logging-service",
        "bufferStatus": {
            "size": len(controller.buffer) if controller else 0,
            "isProcessing": controller.executor.in_progress if controller else False,
            "isInitialized": controller.is_initialized if controller else False,
        },
    }


# Game catalog

@app.get("/api/games")
async def list_games():
    return {"success": True, "games": games.list_games()}


@app.get("/api/games/{game_id}")
async def game_details(game_id: str):
    game = games.get_game(game_id)
    if game is None:
        return error_response(404, "Game not found")
    return {"success": True, "game": game}


@app.post("/api/games/{game_id}/play")
async def play_game(game_id: str, play: PlayRequest):
    return {
        "success": True,
        "gameSession": {
            "sessionId": games.new_session_id(),
            "gameId": game_id,
            "playerId": play.playerId,
            "status": "active",
            "startTime": utc_now_iso(),
        },
    }


# Health

@app.get("/api/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": utc_now_iso(),
        "uptime": round(time.monotonic() - started_at, 3),
    }


@app.get("/api/health/ready")
async def ready():
    return {"status": "ready", "timestamp": utc_now_iso()}


@app.get("/api/health/live")
async def live():
    return {"status": "alive", "timestamp": utc_now_iso()}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Telemetry Gateway",
        "version": VERSION,
        "status": "running",
        "timestamp": utc_now_iso(),
        "endpoints": {
            "docs": "/docs",
            "health": "/api/health",
            "logs": "/api/logs",
            "games": "/api/games"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "telemetry_gateway:app",
        host=settings.gateway_host,
        port=settings.gateway_port,
        log_level=settings.gateway_log_level.lower(),
        reload=False
    )
