"""
FastAPI server for the progress relay.

Routes:
    GET  /progress/{workflow_id}     Open an SSE progress stream
    POST /api/register-execution     Bind an execution id to a workflow id
    POST /api/progress               Engine progress callback
    GET  /api/connections            Active streams and counters
    GET  /health                     Liveness and active stream count
    POST /login                      Fixed-list credential check
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from workflow_relay.auth import LoginRequest, User, check_credentials, load_users
from workflow_relay.config import Config

from .events import InvalidRequest, ProgressUpdate, RegisterExecutionRequest, now_iso
from .relay import ProgressRelay
from .stream import event_stream

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def create_app(
    relay: ProgressRelay,
    config: Optional[Config] = None,
    users: Optional[list[User]] = None,
) -> FastAPI:
    """Create the FastAPI application around an existing relay."""
    config = config or Config()
    if users is None:
        users = load_users()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Progress relay ready ({len(users)} login users configured)")
        yield
        relay.shutdown()
        logger.info("Progress relay stopped")

    app = FastAPI(title="Workflow Progress Relay", lifespan=lifespan)
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/progress/{workflow_id}")
    async def progress_stream(workflow_id: str):
        """Open the progress stream for a client-chosen workflow id."""
        try:
            subscription = relay.open(workflow_id)
        except InvalidRequest as e:
            raise HTTPException(status_code=400, detail=str(e))

        return StreamingResponse(
            event_stream(
                relay,
                subscription,
                timeout=config.stream.timeout_seconds,
                keepalive=config.stream.keepalive_seconds,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/api/register-execution")
    async def register_execution(request: RegisterExecutionRequest):
        try:
            relay.register_execution(request.execution_id, request.workflow_id)
        except InvalidRequest as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True}

    @app.post("/api/progress")
    async def ingest_progress(update: ProgressUpdate):
        """
        Progress callback from the automation engine.

        Always 200 once an identifier is present: a missing subscriber is
        reported in the body, and the sender should not retry.
        """
        try:
            result = relay.ingest(update)
        except InvalidRequest as e:
            raise HTTPException(status_code=400, detail=str(e))
        return result.model_dump(by_alias=True)

    @app.get("/api/connections")
    async def connections():
        workflow_ids = relay.active_workflow_ids()
        return {
            "count": len(workflow_ids),
            "workflowIds": workflow_ids,
            "stats": relay.stats.as_dict(),
        }

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "activeConnections": relay.active_count,
            "timestamp": now_iso(),
        }

    @app.post("/login")
    async def login(request: LoginRequest):
        if check_credentials(users, request.email, request.password):
            return {"success": True, "message": "Login successful", "email": request.email}
        return JSONResponse(
            status_code=401,
            content={"success": False, "message": "Invalid email or password"},
        )

    static_dir = config.server.static_dir
    if static_dir and Path(static_dir).is_dir():
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")
    elif static_dir:
        logger.warning(f"Static directory {static_dir} not found; UI will not be served")

    return app


class _RelayUvicornServer(uvicorn.Server):
    """Closes progress streams as soon as an exit signal arrives.

    uvicorn waits for open connections before running lifespan shutdown,
    and progress streams would otherwise hold it open until they time out.
    """

    def __init__(self, config: uvicorn.Config, relay: ProgressRelay):
        super().__init__(config)
        self._relay = relay

    def handle_exit(self, sig, frame):
        self._relay.shutdown()
        super().handle_exit(sig, frame)


class RelayServer:
    """
    Runs the relay app under uvicorn.

    Usage:
        server = RelayServer(relay, config)
        await server.serve()   # blocks until a shutdown signal
    """

    def __init__(self, relay: ProgressRelay, config: Config):
        self.relay = relay
        self.config = config
        self._app = create_app(relay, config)
        self._server: Optional[uvicorn.Server] = None

    @property
    def app(self) -> FastAPI:
        return self._app

    async def serve(self):
        uv_config = uvicorn.Config(
            self._app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level="info",
        )
        self._server = _RelayUvicornServer(uv_config, self.relay)
        await self._server.serve()

    def stop(self):
        """Ask uvicorn to exit; open streams get a shutdown notice first."""
        self.relay.shutdown()
        if self._server:
            self._server.should_exit = True
