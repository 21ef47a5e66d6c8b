import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

from config import IMAGE_PREFIX, MAX_UPLOAD_BYTES, POSITIVE_THRESHOLD
from errors import PersistenceError, StorageError, ValidationError
from model import ModelProvider
from records import PredictionRecord, PredictionResult, RecordStoreClient, utc_timestamp
from storage import BlobStoreClient

logger = logging.getLogger(__name__)

EXPLANATION = "Brain tumor is a condition where there is abnormal tissue growth inside the brain."
POSITIVE_SUGGESTION = "Consult with the nearest doctor immediately to determine the level of disease risk."
NEGATIVE_SUGGESTION = "You are healthy!"


@dataclass
class UploadedImage:
    filename: Optional[str]
    content_type: Optional[str]
    data: bytes


def validate_upload(image: Optional[UploadedImage]) -> UploadedImage:
    """Reject missing, non-image and oversized uploads."""
    if image is None:
        raise ValidationError("No file uploaded.")
    if not (image.content_type or "").startswith("image/"):
        raise ValidationError("File must be an image.")
    if len(image.data) > MAX_UPLOAD_BYTES:
        raise ValidationError(f"File too large. Maximum size is {MAX_UPLOAD_BYTES // (1024 * 1024)}MB.")
    return image


def classify(score: float):
    """Map a confidence score to (result, suggestion)."""
    if score >= POSITIVE_THRESHOLD:
        return PredictionResult.POSITIVE, POSITIVE_SUGGESTION
    return PredictionResult.NEGATIVE, NEGATIVE_SUGGESTION


def destination_key(prediction_id: str, filename: Optional[str]) -> str:
    name = PurePosixPath((filename or "").replace("\\", "/")).name
    if not name:
        return f"{IMAGE_PREFIX}{prediction_id}"
    return f"{IMAGE_PREFIX}{prediction_id}/{name}"


class PredictionPipeline:
    """Validate -> ensure model -> upload -> score -> persist, strictly in order.

    There is no transaction across the blob and record stores. If the record
    write fails the uploaded image stays in the bucket unless
    ``cleanup_orphaned_blobs`` is set, in which case it is deleted before the
    original error propagates.
    """

    def __init__(self, model_provider: ModelProvider, blob_store: BlobStoreClient,
                 record_store: RecordStoreClient, cleanup_orphaned_blobs: bool = False):
        self.model_provider = model_provider
        self.blob_store = blob_store
        self.record_store = record_store
        self.cleanup_orphaned_blobs = cleanup_orphaned_blobs

    async def run(self, prediction_id: str, image: Optional[UploadedImage]) -> PredictionRecord:
        start_time = time.time()
        image = validate_upload(image)

        await self.model_provider.ensure_loaded()

        destination = destination_key(prediction_id, image.filename)
        image_url = await asyncio.to_thread(
            self.blob_store.upload, image.data, destination, image.content_type)

        stored_bytes = await asyncio.to_thread(self.blob_store.fetch, image_url)
        score = await self.model_provider.score(stored_bytes)

        result, suggestion = classify(score)
        record = PredictionRecord(
            id=prediction_id,
            image_url=image_url,
            result=result,
            explanation=EXPLANATION,
            suggestion=suggestion,
            confidence_score=score,
            created_at=utc_timestamp(),
        )

        try:
            await asyncio.to_thread(self.record_store.put, prediction_id, record)
        except PersistenceError:
            if self.cleanup_orphaned_blobs:
                await self._remove_orphan(destination)
            else:
                logger.warning(f"Image {destination} is orphaned: prediction {prediction_id} was not stored")
            raise

        logger.info(f"Prediction {prediction_id}: {record.result} ({score:.4f}) "
                    f"in {time.time() - start_time:.3f}s")
        return record

    async def _remove_orphan(self, destination: str):
        try:
            await asyncio.to_thread(self.blob_store.delete, destination)
        except StorageError as e:
            logger.error(f"Could not remove orphaned image {destination}: {e.detail}")
