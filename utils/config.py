"""Configuration settings for the identity verification engine."""
import os
from pathlib import Path

# Base directories
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "data"

# Database
# Postgres in production (postgresql+asyncpg://...), SQLite for local runs and tests.
DATABASE_URL = os.environ.get(
    "DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR / 'verification.db'}"
)

# API Security (API Key Authentication)
# Comma-separated list of valid API keys. If empty, auth is disabled.
API_KEYS = [k.strip() for k in os.environ.get("API_KEYS", "").split(",") if k.strip()]
# Subset of keys allowed on /admin routes. If empty, any valid key is accepted.
ADMIN_API_KEYS = [k.strip() for k in os.environ.get("ADMIN_API_KEYS", "").split(",") if k.strip()]

# Set to "none" on servers without a camera (browser-captured frames only)
CAMERA_BACKEND = os.environ.get("CAMERA_BACKEND", "opencv").lower()

# Logging configuration
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_JSON_FORMAT = os.environ.get("LOG_JSON_FORMAT", "true").lower() == "true"


# =============================================================================
# REGISTRY (external national identity registry)
# =============================================================================

REGISTRY_BASE_URL = os.environ.get("REGISTRY_BASE_URL", "").rstrip("/")
REGISTRY_API_KEY = os.environ.get("REGISTRY_API_KEY", "")
REGISTRY_SECRET_KEY = os.environ.get("REGISTRY_SECRET_KEY", "")

# "direct": this process holds the registry credentials and calls it itself.
# "server": calls go through a backend proxy that holds the credentials.
REGISTRY_TRANSPORT = os.environ.get("REGISTRY_TRANSPORT", "direct").lower()
REGISTRY_SERVER_URL = os.environ.get("REGISTRY_SERVER_URL", "").rstrip("/")
REGISTRY_SERVER_API_KEY = os.environ.get("REGISTRY_SERVER_API_KEY", "")

# Socket timeout for one registry HTTP call (seconds)
REGISTRY_TIMEOUT_SECONDS = float(os.environ.get("REGISTRY_TIMEOUT_SECONDS", "30"))

# Bearer tokens are refreshed this many seconds before they expire
REGISTRY_TOKEN_REFRESH_MARGIN_SECONDS = 60

# Scale of registry scores: "fraction" (0-1), "percent" (0-100), or "auto"
# (values above 1 are read as percentages; a percent-scale 1 then reads as 1.0)
REGISTRY_SCORE_SCALE = os.environ.get("REGISTRY_SCORE_SCALE", "auto").lower()


# =============================================================================
# MATCHING & QUOTA
# =============================================================================

# Shared by attribute and face matching. A score equal to the threshold is a match.
MATCH_THRESHOLD = float(os.environ.get("MATCH_THRESHOLD", "0.7"))

# Registry calls per caller per UTC day (resets at 00:00 UTC)
DAILY_QUOTA_LIMIT = int(os.environ.get("DAILY_QUOTA_LIMIT", "100"))

# Below this many remaining calls the UI shows a warning
LOW_QUOTA_WARNING_THRESHOLD = int(os.environ.get("LOW_QUOTA_WARNING_THRESHOLD", "10"))

# Registry national identity numbers are 11 characters
IDENTITY_NUMBER_MIN_LENGTH = int(os.environ.get("IDENTITY_NUMBER_MIN_LENGTH", "11"))


# =============================================================================
# CAPTURE & FACE IMAGE SETTINGS
# =============================================================================

CAMERA_FRONT_INDEX = int(os.environ.get("CAMERA_FRONT_INDEX", "0"))
CAMERA_BACK_INDEX = int(os.environ.get("CAMERA_BACK_INDEX", "1"))
CAPTURE_WIDTH = int(os.environ.get("CAPTURE_WIDTH", "1280"))
CAPTURE_HEIGHT = int(os.environ.get("CAPTURE_HEIGHT", "720"))
CAPTURE_JPEG_QUALITY = 90

# Frames older than this are treated as stale and rejected before submission
FRAME_MAX_AGE_SECONDS = int(os.environ.get("FRAME_MAX_AGE_SECONDS", "300"))

# Registry-bound face images are downscaled and re-encoded
FACE_IMAGE_MAX_SIDE = int(os.environ.get("FACE_IMAGE_MAX_SIDE", "800"))
FACE_IMAGE_JPEG_QUALITY = int(os.environ.get("FACE_IMAGE_JPEG_QUALITY", "85"))

SUPPORTED_FRAME_FORMATS = ["jpeg", "png"]
