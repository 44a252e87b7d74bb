import os
import logging
from typing import Dict, List

DEFAULT_PORT = 5000
DEFAULT_SIGNALING_URL = f"ws://localhost:{DEFAULT_PORT}/ws"

# Public Google STUN servers
DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]

ICE_SCHEMES = ("stun:", "stuns:", "turn:", "turns:")


def validate_environment():
    """Validate the optional environment variables that are set"""
    port = os.getenv("PORT")
    if port is not None:
        try:
            if not 0 < int(port) < 65536:
                raise ValueError(port)
        except ValueError:
            raise RuntimeError(f"Invalid PORT value: {port}")

    bad_urls = [url for url in get_ice_servers() if not url.startswith(ICE_SCHEMES)]
    if bad_urls:
        raise RuntimeError(f"Invalid ICE server URLs: {', '.join(bad_urls)}")

    level = os.getenv("LOG_LEVEL")
    if level and not isinstance(logging.getLevelName(level.upper()), int):
        raise RuntimeError(f"Invalid LOG_LEVEL value: {level}")


def get_port() -> int:
    return int(os.getenv("PORT", DEFAULT_PORT))


def get_log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


def get_allowed_origins() -> List[str]:
    """Get allowed origins based on environment"""
    default_origins = [
        "http://localhost:3000",
        "http://localhost:5173",  # Vite dev server
    ]

    env_origins = os.getenv("ALLOWED_ORIGINS", "").split(",")
    env_origins = [origin.strip() for origin in env_origins if origin.strip()]

    # If production origins are set, use them; otherwise use defaults
    return env_origins or default_origins


def get_ice_servers() -> List[str]:
    env_servers = os.getenv("ICE_SERVERS", "").split(",")
    env_servers = [url.strip() for url in env_servers if url.strip()]
    return env_servers or list(DEFAULT_ICE_SERVERS)


def get_ice_server_config() -> List[Dict[str, str]]:
    """ICE servers in the shape browsers and aiortc both accept"""
    return [{"urls": url} for url in get_ice_servers()]


def get_signaling_url() -> str:
    return os.getenv("SIGNALING_URL", DEFAULT_SIGNALING_URL)


def is_production() -> bool:
    return os.getenv("RAILWAY_ENVIRONMENT") == "production"


def get_api_url() -> str:
    return os.getenv("API_URL", f"http://localhost:{DEFAULT_PORT}").rstrip("/")
