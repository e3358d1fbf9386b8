# api/server.py
# ============================================================================
# FATFOOD BACKEND — FASTAPI SERVER
# ============================================================================
# Order and payment API with CORS, health checks, error envelopes and a
# realtime notification socket
# ============================================================================

import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api import orders, payments
from api.container import Container, build_container
from api.identity import resolve_actor
from config import configure_logging, server_config
from database import Database, close_database, init_database
from errors import ServiceError
from storage.memory import InMemoryStore
from storage.postgres import PostgresStore

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"
START_TIME = datetime.now(timezone.utc)


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    storage: str


# ============================================================================
# LIFESPAN MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    configure_logging()
    logger.info("server_starting", version=VERSION, env=server_config.ENV)

    if getattr(app.state, "container", None) is not None:
        # Pre-built (tests)
        yield
        return

    if Database.is_configured():
        await init_database()
        store = PostgresStore()
        app.state.storage = "postgres"
    else:
        logger.warning("database_not_configured", fallback="memory")
        store = InMemoryStore()
        app.state.storage = "memory"

    http = httpx.AsyncClient(timeout=15.0)
    app.state.container = build_container(store, http)

    yield

    logger.info("server_shutting_down")
    await http.aclose()
    if Database.is_configured():
        await close_database()


# ============================================================================
# FASTAPI APP
# ============================================================================

def create_app(container: Optional[Container] = None) -> FastAPI:
    app = FastAPI(
        title="FatFood Backend",
        description="Orders and payment reconciliation for VNPAY, PayPal, Stripe, VietQR and COD",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.storage = "memory" if container is not None else "unknown"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header"""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("service_error", path=request.url.path, code=exc.code, status=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, error=str(exc))
        content = {"success": False, "message": "Internal server error", "code": "INTERNAL_ERROR"}
        if server_config.DEBUG:
            content["detail"] = {"error": str(exc), "trace": traceback.format_exc().splitlines()[-10:]}
        return JSONResponse(status_code=500, content=content)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=(datetime.now(timezone.utc) - START_TIME).total_seconds(),
            storage=app.state.storage,
        )

    @app.websocket("/ws")
    async def notifications_websocket(websocket: WebSocket):
        """Per-user (and staff) order/payment notifications"""
        try:
            actor = resolve_actor(websocket)
        except ServiceError:
            await websocket.close(code=4401)
            return

        notifier = websocket.app.state.container.notifier
        await notifier.connect(websocket, actor.user_id, actor.role)
        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            notifier.disconnect(websocket)
        except Exception as e:
            logger.error("websocket_error", user_id=actor.user_id, error=str(e))
            notifier.disconnect(websocket)

    app.include_router(orders.router)
    app.include_router(payments.router)
    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=server_config.HOST,
        port=server_config.PORT,
        reload=server_config.DEBUG,
        log_level="info",
    )
