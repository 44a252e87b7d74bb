# main.py - Signaling server entry point

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import os
from dotenv import load_dotenv
import logging
import uvicorn

# Load environment variables
load_dotenv()

# Import route modules
from routes.room_management import router as room_router
from routes.participant_management import router as participant_router
from signaling import SignalingRelay, router as signaling_router
from config.signaling_config import (
    get_allowed_origins,
    get_log_level,
    get_port,
    is_production,
    validate_environment,
)
from connection_directory import ConnectionDirectory
from room_manager import RoomRegistry

logging.basicConfig(
    level=get_log_level(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle app startup and shutdown"""
    # Startup
    logger.info("Starting up mesh chat signaling server")
    try:
        validate_environment()
        logger.info("Environment validation passed")
    except Exception as e:
        logger.error(f"Environment validation failed: {e}")
        raise

    app.state.registry = RoomRegistry()
    app.state.directory = ConnectionDirectory()
    app.state.relay = SignalingRelay(app.state.registry, app.state.directory)

    yield

    # Shutdown
    logger.info("Shutting down mesh chat signaling server")
    try:
        await app.state.relay.close()
        logger.info("Signaling connections closed")
    except Exception as e:
        logger.warning(f"Error closing signaling connections: {e}")

app = FastAPI(
    title="Mesh Chat Signaling API",
    description="Room bookkeeping and WebRTC signaling relay for peer-to-peer chat",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if is_production() else "/docs",
    redoc_url=None if is_production() else "/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(room_router, prefix="/api", tags=["Room Management"])
app.include_router(participant_router, prefix="/api", tags=["Participant Management"])
app.include_router(signaling_router, tags=["Signaling"])

@app.get("/")
async def root():
    return {
        "message": "Mesh Chat Signaling API",
        "status": "running",
        "version": "1.0.0",
        "environment": os.getenv("RAILWAY_ENVIRONMENT", "development"),
        "endpoints": {
            "signaling": "/ws",
            "create_room": "/api/rooms",
            "list_rooms": "/api/rooms",
            "room_info": "/api/room/{room_id}",
            "participants": "/api/room/{room_id}/participants",
            "ice_servers": "/api/ice-servers",
            "health": "/health"
        }
    }

@app.get("/health")
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "rooms": len(app.state.registry),
        "connections": len(app.state.relay.connections),
    }

@app.exception_handler(500)
async def internal_server_error_handler(request, exc):
    logger.error(f"Internal server error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred"
        }
    )

@app.exception_handler(404)
async def not_found_handler(request, exc):
    detail = getattr(exc, "detail", None)
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not found",
            "message": detail if detail and detail != "Not Found" else "The requested endpoint does not exist",
            "available_endpoints": [
                "/ws",
                "/api/rooms",
                "/api/room/{room_id}",
                "/api/room/{room_id}/participants",
                "/api/ice-servers",
                "/health"
            ]
        }
    )

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=get_port(),
        reload=False,
        log_level=get_log_level().lower(),
        access_log=True,
    )
