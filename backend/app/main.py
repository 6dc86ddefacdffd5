"""Voltwise - Main FastAPI Application."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis import asyncio as aioredis

logger = logging.getLogger(__name__)

from app.config import get_settings
from app.database import init_db
from app.services.app_settings import ensure_cache as ensure_settings_cache
from app.services.auth import decode_access_token
from app.services.automation_scheduler import AutomationScheduler, session_factories
from app.services.realtime import close_broadcaster, decode_message, get_broadcaster
from app.routers import (
    auth,
    automation,
    devices,
    health,
)

config = get_settings()


# ---------------------------------------------------------------------------
# WebSocket connection manager
# ---------------------------------------------------------------------------
class ConnectionManager:
    """Manages WebSocket connections per home for real-time device updates."""

    def __init__(self) -> None:
        self._connections: Dict[int, List[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, home_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(home_id, []).append(websocket)
        logger.info("WebSocket client joined home %s; total=%d", home_id, self.count(home_id))

    async def disconnect(self, home_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            remaining = [c for c in self._connections.get(home_id, []) if c is not websocket]
            if remaining:
                self._connections[home_id] = remaining
            else:
                self._connections.pop(home_id, None)
        logger.info("WebSocket client left home %s; total=%d", home_id, self.count(home_id))

    def count(self, home_id: int) -> int:
        return len(self._connections.get(home_id, []))

    async def send_to_home(self, home_id: int, message: str) -> None:
        async with self._lock:
            dead: List[WebSocket] = []
            for ws in self._connections.get(home_id, []):
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            if dead:
                self._connections[home_id] = [
                    c for c in self._connections.get(home_id, []) if c not in dead
                ]


connection_manager = ConnectionManager()


async def _redis_pubsub_listener() -> None:
    """Subscribe to the real-time channel and relay each message to its home's sockets."""
    while True:
        try:
            redis = aioredis.from_url(config.redis_url, decode_responses=True)
            pubsub = redis.pubsub()
            await pubsub.subscribe(config.realtime_channel)
            logger.info("Redis pub/sub listener subscribed to '%s'", config.realtime_channel)
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                decoded = decode_message(message["data"])
                if decoded is None:
                    continue
                await connection_manager.send_to_home(
                    decoded["home_id"],
                    json.dumps({"event": decoded.get("event"), "payload": decoded.get("payload")}),
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Redis pub/sub listener error: %s; reconnecting in 5s", exc)
            await asyncio.sleep(5)


def _build_scheduler() -> AutomationScheduler:
    engine_factory, home_directory_factory = session_factories(
        broadcaster=get_broadcaster(),
        device_write_timeout=config.automation_device_write_timeout_seconds,
    )
    return AutomationScheduler(
        engine_factory,
        home_directory_factory,
        tick_seconds=config.automation_tick_seconds,
        max_catchup_minutes=config.automation_max_catchup_minutes,
    )


# Paths that do NOT require authentication
AUTH_EXEMPT_PATHS = {
    "/",
    "/health",
    "/ws/home",  # auth handled via query-param token check in the endpoint
    "/api/auth/login",
    "/api/auth/register",
}
AUTH_EXEMPT_PREFIXES = (
    "/docs",
    "/redoc",
    "/openapi",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    await init_db()
    await ensure_settings_cache()
    listener_task = asyncio.create_task(
        _redis_pubsub_listener(), name="redis_pubsub_listener"
    )

    scheduler = None
    if config.automation_scheduler == "asyncio":
        scheduler = _build_scheduler()
        scheduler.start()
    app.state.automation_scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    listener_task.cancel()
    try:
        await listener_task
    except asyncio.CancelledError:
        pass
    await close_broadcaster()


app = FastAPI(
    title=config.app_name,
    description="Home Energy Management - Automation Engine",
    version=config.app_version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def require_authentication(request: Request, call_next):
    """Enforce JWT authentication on all API routes except exempt paths."""
    path = request.url.path.rstrip("/")

    # Skip auth for exempt paths
    if path in AUTH_EXEMPT_PATHS or path.startswith(AUTH_EXEMPT_PREFIXES):
        return await call_next(request)

    # Skip auth for non-API paths (health, root, static)
    if not path.startswith("/api"):
        return await call_next(request)

    # Extract and validate token
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Authentication required"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    if decode_access_token(auth_header[7:]) is None:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Invalid or expired token"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    return await call_next(request)


@app.websocket("/ws/home")
async def websocket_home(
    websocket: WebSocket,
    token: str = Query(..., description="JWT auth token"),
) -> None:
    """Real-time device updates for the caller's home. Authenticate via ?token=<jwt>."""
    payload = decode_access_token(token)
    if payload is None:
        await websocket.close(code=4001, reason="Invalid or expired token")
        return

    home_id = payload.get("home_id")
    if home_id is None:
        await websocket.close(code=4003, reason="No home assigned")
        return

    await connection_manager.connect(home_id, websocket)
    try:
        while True:
            # Keep the connection alive; data is pushed via send_to_home()
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await connection_manager.disconnect(home_id, websocket)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(devices.router, prefix="/api/devices", tags=["Devices"])
app.include_router(automation.router, prefix="/api/automation", tags=["Automation"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": config.app_name,
        "version": config.app_version,
        "description": "Home Energy Management - Automation Engine",
    }
