"""
Local Control API

Design Decision: How a UI observes the session
==============================================

Options Considered:
1. UI imports the session objects and reads them directly
   - Couples every UI to the internals
2. Local REST API over the session controller
   - Any UI (browser page, script, desktop shell) can drive it
   - Status is a plain JSON document
3. Local websocket pushing every state change
   - Real-time, but every client needs a websocket library

Decision: FastAPI REST + one Server-Sent Events stream
- Plain GETs for status, room lookup and ICE servers
- POST /share and POST /receive start a session
- GET /session/events streams status changes as SSE

API Design:
- JSON responses
- 503 when no session exists, 404 when a room or artifact is missing
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response, StreamingResponse
from pydantic import BaseModel

from .. import __version__
from ..errors import ProtocolError, RoomNotFoundError, TransferError, TransportError
from ..rtc.ice import fetch_ice_servers
from ..transfer.receiver import safe_file_name

logger = logging.getLogger(__name__)

# Global reference to the session controller (set when app is created)
_controller = None


# === Pydantic Models ===

class ShareRequest(BaseModel):
    """Request to share a file."""
    file_path: str
    password: Optional[str] = None


class ReceiveRequest(BaseModel):
    """Request to receive a file from a room."""
    room_id: str
    password: Optional[str] = None
    output_dir: Optional[str] = None


class SessionStatusResponse(BaseModel):
    """Session status response."""
    role: str
    status: str
    error: Optional[str] = None
    room_id: Optional[str] = None
    share_url: Optional[str] = None
    room_has_password: Optional[bool] = None
    peer_state: str
    file_name: Optional[str] = None
    file_size: int = 0
    bytes_transferred: int = 0
    percent: int = 0


class RoomInfo(BaseModel):
    """Room lookup result."""
    room_id: str
    exists: bool
    has_password: bool


class IceServerInfo(BaseModel):
    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None


def content_disposition(file_name: str) -> str:
    """Attachment header for a name chosen by the remote peer."""
    name = safe_file_name(file_name)
    quoted = quote(name)
    if quoted != name:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{name}"'


# === API Creation ===

def create_app(controller=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        controller: SessionController instance to control

    Returns:
        FastAPI application
    """
    global _controller
    _controller = controller

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("API server starting...")
        yield
        if _controller is not None:
            await _controller.close()
        logger.info("API server stopping...")

    app = FastAPI(
        title="filecoffee API",
        description="Local control API for peer-to-peer file transfer sessions",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_controller():
        if not _controller:
            raise HTTPException(status_code=503, detail="Controller not initialized")
        return _controller

    def require_session():
        controller = require_controller()
        if controller.context is None:
            raise HTTPException(status_code=503, detail="No active session")
        return controller.context

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        context = _controller.context if _controller else None
        return {
            "name": "filecoffee",
            "version": __version__,
            "session": context.status.value if context else None,
        }

    @app.get("/status", response_model=SessionStatusResponse, tags=["Session"])
    async def get_status():
        """Get the current session's status."""
        context = require_session()
        return SessionStatusResponse(**context.to_dict())

    @app.get("/stats", tags=["Session"])
    async def get_stats():
        """Get detailed controller statistics."""
        return require_controller().get_stats()

    # === Session Operations ===

    @app.post("/share", response_model=SessionStatusResponse, tags=["Session"])
    async def share_file(request: ShareRequest):
        """Create a room and send a local file to whoever joins."""
        controller = require_controller()

        file_path = Path(request.file_path)
        if not file_path.is_absolute():
            file_path = file_path.resolve()

        logger.info(f"Share request for: {file_path}")

        if not file_path.exists():
            raise HTTPException(status_code=404, detail=f"File not found: {file_path}")

        try:
            context = await controller.share(file_path, request.password)
        except TransferError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return SessionStatusResponse(**context.to_dict())

    @app.post("/receive", response_model=SessionStatusResponse, tags=["Session"])
    async def receive_file(request: ReceiveRequest):
        """Join a room and receive its file."""
        controller = require_controller()
        room_id = request.room_id.strip()

        try:
            await controller.check_room(room_id)
        except RoomNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (TransportError, ProtocolError) as e:
            raise HTTPException(status_code=502, detail=str(e))

        output_dir = Path(request.output_dir) if request.output_dir else None
        context = await controller.receive(room_id, request.password, output_dir, check=False)
        return SessionStatusResponse(**context.to_dict())

    @app.delete("/session", tags=["Session"])
    async def close_session():
        """Tear down the current session."""
        controller = require_controller()
        had_session = controller.context is not None
        await controller.close()
        return {"success": had_session}

    @app.get("/session/events", tags=["Session"])
    async def session_events():
        """
        Stream session status with Server-Sent Events.

        One event per change; the stream ends once the session finishes.
        """
        context = require_session()
        updates = asyncio.Queue()

        def on_change(ctx):
            updates.put_nowait(ctx.to_dict())

        async def event_generator():
            context.add_listener(on_change)
            try:
                yield f"data: {json.dumps(context.to_dict())}\n\n"
                while not context.is_finished:
                    try:
                        event_data = await asyncio.wait_for(updates.get(), timeout=0.5)
                        yield f"data: {json.dumps(event_data)}\n\n"
                    except asyncio.TimeoutError:
                        yield ": heartbeat\n\n"

                # Drain remaining events
                while not updates.empty():
                    yield f"data: {json.dumps(updates.get_nowait())}\n\n"
            finally:
                context.listeners.remove(on_change)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )

    @app.get("/download", tags=["Session"])
    async def download_artifact():
        """Get the received file."""
        context = require_session()
        received = context.received
        if received is None:
            raise HTTPException(status_code=404, detail="No file received yet")

        if received.saved_path is not None:
            return FileResponse(received.saved_path, media_type=received.mime_type,
                                filename=received.saved_path.name)
        return Response(
            content=received.data,
            media_type=received.mime_type,
            headers={"Content-Disposition": content_disposition(received.name)},
        )

    # === Relay Lookups ===

    @app.get("/rooms/{room_id}", response_model=RoomInfo, tags=["Relay"])
    async def get_room(room_id: str):
        """Check whether a room exists and needs a password."""
        controller = require_controller()
        try:
            status = await controller.check_room(room_id)
        except RoomNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (TransportError, ProtocolError) as e:
            raise HTTPException(status_code=502, detail=str(e))

        return RoomInfo(room_id=status.room_id, exists=status.exists, has_password=status.has_password)

    @app.get("/ice-servers", tags=["Relay"])
    async def get_ice_servers():
        """ICE servers the next connection would use."""
        config = require_controller().config
        servers = await fetch_ice_servers(
            config.api_base_url,
            timeout=config.ice_fetch_timeout,
            fallback_url=config.fallback_stun_url,
        )
        return {
            "iceServers": [
                IceServerInfo(
                    urls=[s.urls] if isinstance(s.urls, str) else s.urls,
                    username=s.username,
                    credential=s.credential,
                ).model_dump(exclude_none=True)
                for s in servers
            ]
        }

    return app


async def run_api_server(controller, host: str = "127.0.0.1", port: int = 8080):
    """
    Run the API server.

    Args:
        controller: SessionController instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(controller)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
