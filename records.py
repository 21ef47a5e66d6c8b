import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import firestore
from pydantic import BaseModel, ConfigDict, Field

from errors import PersistenceError

logger = logging.getLogger(__name__)

_CLIENT_ERRORS = (
    google_exceptions.GoogleAPIError,
    auth_exceptions.GoogleAuthError,
    OSError,
)


class PredictionResult(str, Enum):
    POSITIVE = "Positive"
    NEGATIVE = "Negative"


def utc_timestamp(now: datetime = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PredictionRecord(BaseModel):
    """Predictions collection schema
    Collection name: "predictions"
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, use_enum_values=True)

    id: str = Field(..., description="Caller-supplied prediction id")
    image_url: str = Field(..., alias="imageUrl", description="Public URL of the stored image")
    result: PredictionResult = Field(..., description="Classification verdict")
    explanation: str = Field(..., description="Static description of the condition")
    suggestion: str = Field(..., description="Advice derived from the verdict")
    confidence_score: float = Field(..., alias="confidenceScore", ge=0, le=1,
                                    description="Model score for the positive class")
    created_at: str = Field(default_factory=utc_timestamp, alias="createdAt",
                            description="ISO timestamp when prediction was made")

    def to_document(self) -> Dict:
        return self.model_dump(by_alias=True)


class RecordStoreClient:
    def __init__(self, collection: str = "predictions", project_id: Optional[str] = None,
                 credentials_path: Optional[str] = None, client=None):
        self.collection_name = collection
        self.project_id = project_id
        self.credentials_path = credentials_path
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                if self.credentials_path:
                    self._client = firestore.Client.from_service_account_json(
                        self.credentials_path, project=self.project_id)
                else:
                    self._client = firestore.Client(project=self.project_id)
            except _CLIENT_ERRORS as e:
                logger.error(f"Error creating Firestore client: {e}")
                raise PersistenceError(f"Firestore unavailable: {e}") from e
        return self._client

    def put(self, record_id: str, record: PredictionRecord):
        """Upsert the record under ``record_id``, replacing any existing document."""
        document = self.client.collection(self.collection_name).document(str(record_id))
        try:
            document.set(record.to_document())
        except _CLIENT_ERRORS as e:
            logger.error(f"Error storing prediction {record_id}: {e}")
            raise PersistenceError(f"Could not store prediction: {e}") from e
        logger.info(f"Stored prediction {record_id} in {self.collection_name}")

    def get(self, record_id: str) -> Optional[Dict]:
        document = self.client.collection(self.collection_name).document(str(record_id))
        try:
            snapshot = document.get()
        except _CLIENT_ERRORS as e:
            logger.error(f"Error reading prediction {record_id}: {e}")
            raise PersistenceError(f"Could not read prediction: {e}") from e
        return snapshot.to_dict() if snapshot.exists else None
