from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv()

BASE_DIR = Path(__file__).parent

# Data directory (gitignored)
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/checkins.db")

# Geofence
DEFAULT_GEOFENCE_RADIUS_METERS = 750


def _positive_int(name: str, default: int) -> int:
    """Read a positive integer env var, falling back to `default` on junk."""
    raw = os.getenv(name, "")
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


# Same radius is used whether the GPS fix came from the photo or the device.
GEOFENCE_RADIUS_METERS: int = _positive_int("GEOFENCE_RADIUS_METERS", DEFAULT_GEOFENCE_RADIUS_METERS)

# Visit recording: attempts on transient store failures (each restarts at the duplicate check)
VISIT_RECORD_ATTEMPTS: int = _positive_int("VISIT_RECORD_ATTEMPTS", 3)

# Station catalogue feed (JSON list or GeoJSON FeatureCollection)
STATIONS_FEED_URL: str = os.getenv("STATIONS_FEED_URL", "")
STATIONS_REFRESH_HOURS: int = int(os.getenv("STATIONS_REFRESH_HOURS", "24"))

# API
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))
INGEST_API_KEY: str = os.getenv("INGEST_API_KEY", "")
CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
