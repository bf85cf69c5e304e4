import json
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from cara.api.routes import router
from cara.config import settings
from cara.database import create_tables, engine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# WebSocket manager
# ---------------------------------------------------------------------------

class WebSocketManager:
    """Tracks active WebSocket connections keyed by analysis_id."""

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = defaultdict(list)

    async def connect(self, analysis_id: str, websocket: WebSocket) -> None:
        self._connections[analysis_id].append(websocket)
        await websocket.accept()

    def disconnect(self, analysis_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(analysis_id)
        if not connections or websocket not in connections:
            return
        connections.remove(websocket)
        if not connections:
            del self._connections[analysis_id]

    async def broadcast(self, analysis_id: str, message: Any) -> None:
        payload = json.dumps(message)
        dead = []
        for ws in list(self._connections.get(analysis_id, [])):
            try:
                await ws.send_text(payload)
            except Exception as exc:
                logger.info("Dropping WebSocket for %s: %s", analysis_id, exc)
                dead.append(ws)
        for ws in dead:
            self.disconnect(analysis_id, ws)


ws_manager = WebSocketManager()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    logger.info("Database tables created / verified.")
    yield
    await engine.dispose()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(title="Cara Career Transition API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Attach WebSocket manager to app state so routes can access it
app.state.ws_manager = ws_manager

app.include_router(router)


@app.get("/health")
async def health():
    return {"status": "ok"}
