import os
import logging
from dataclasses import dataclass
from typing import Optional


LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Fixed policy, not read from the environment
MAX_UPLOAD_BYTES = 5 * 1024 * 1024
POSITIVE_THRESHOLD = 0.9
IMAGE_PREFIX = "images/"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration sourced from environment variables."""

    model_url: Optional[str] = None
    storage_bucket: Optional[str] = None
    project_id: Optional[str] = None
    credentials_path: Optional[str] = None
    firestore_collection: str = "predictions"
    port: int = 9000
    normalize_input: bool = False
    cleanup_orphaned_blobs: bool = False
    fetch_timeout: float = 30.0
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        model_url=os.getenv("MODEL_URL") or None,
        storage_bucket=os.getenv("GCLOUD_STORAGE_BUCKET") or None,
        project_id=os.getenv("GCLOUD_PROJECT") or None,
        credentials_path=os.getenv("GOOGLE_APPLICATION_CREDENTIALS") or None,
        firestore_collection=os.getenv("FIRESTORE_COLLECTION", "predictions"),
        port=int(os.getenv("PORT", 9000)),
        normalize_input=_env_bool("MODEL_NORMALIZE"),
        cleanup_orphaned_blobs=_env_bool("CLEANUP_ORPHANED_BLOBS"),
        fetch_timeout=float(os.getenv("FETCH_TIMEOUT", 30)),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
