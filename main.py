from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from database import create_tables, get_settings
from api import lobbies, websocket
from core.broadcaster import SessionBroadcaster
from core.registry import LobbyRegistry
from schemas import HealthResponse
from services.mirror_service import MirrorService
from services.rate_limit_service import RateLimitService

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: mirror tables, then the registry and broadcaster every handler shares
    create_tables()
    app.state.registry = LobbyRegistry(default_campaign=settings.default_campaign)
    app.state.mirror = MirrorService.from_settings()
    app.state.broadcaster = SessionBroadcaster(
        app.state.registry,
        settings=settings,
        mirror=app.state.mirror,
        rate_limiter=RateLimitService(),
    )
    yield
    # Shutdown: flush pending mirror writes
    app.state.mirror.shutdown()


app = FastAPI(
    title="Tabletop Lobby Server",
    description="Real-time lobbies for tabletop sessions: chat, dice, map, initiative and campaigns",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(lobbies.router)
app.include_router(websocket.router)


@app.get("/")
def root():
    return {"message": "Tabletop Lobby Server", "status": "ok"}


@app.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(
        status="healthy",
        lobbies=len(app.state.registry.names()),
        mirror=app.state.mirror.enabled,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
