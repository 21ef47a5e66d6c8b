"""
Google Cloud Storage client for uploaded images.

Objects are written under a single bucket and addressed by their public
``https://storage.googleapis.com/<bucket>/<key>`` URL. The bucket's public
read policy is infra-managed.
"""
import logging
from typing import Optional

import requests
from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage as gcs_storage

from errors import StorageError

logger = logging.getLogger(__name__)

PUBLIC_URL_BASE = "https://storage.googleapis.com"

_CLIENT_ERRORS = (
    google_exceptions.GoogleAPIError,
    auth_exceptions.GoogleAuthError,
    requests.RequestException,
    OSError,
)


def public_url(bucket_name: str, destination: str) -> str:
    return f"{PUBLIC_URL_BASE}/{bucket_name}/{destination}"


class BlobStoreClient:
    def __init__(self, bucket_name: Optional[str], project_id: Optional[str] = None,
                 credentials_path: Optional[str] = None, client=None,
                 fetch_timeout: float = 30.0):
        self.bucket_name = bucket_name
        self.project_id = project_id
        self.credentials_path = credentials_path
        self.fetch_timeout = fetch_timeout
        self._client = client
        self._bucket = None

    @property
    def bucket(self):
        """Bucket handle, created on first use so startup never needs credentials."""
        if self._bucket is None:
            if not self.bucket_name:
                raise StorageError("GCLOUD_STORAGE_BUCKET is not configured")
            if self._client is None:
                try:
                    if self.credentials_path:
                        self._client = gcs_storage.Client.from_service_account_json(
                            self.credentials_path, project=self.project_id)
                    else:
                        self._client = gcs_storage.Client(project=self.project_id)
                except _CLIENT_ERRORS as e:
                    logger.error(f"Error creating Cloud Storage client: {e}")
                    raise StorageError(f"Cloud Storage unavailable: {e}") from e
            self._bucket = self._client.bucket(self.bucket_name)
        return self._bucket

    def upload(self, data: bytes, destination: str, content_type: Optional[str] = None) -> str:
        """Store ``data`` at ``destination`` and return its public URL."""
        blob = self.bucket.blob(destination)
        try:
            blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        except _CLIENT_ERRORS as e:
            logger.error(f"Error uploading file to Cloud Storage: {e}")
            raise StorageError(f"Upload failed: {e}") from e
        url = public_url(self.bucket_name, destination)
        logger.info(f"Uploaded {len(data)} bytes to {url}")
        return url

    def fetch(self, url: str) -> bytes:
        try:
            response = requests.get(url, timeout=self.fetch_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Error fetching {url}: {e}")
            raise StorageError(f"Could not fetch uploaded image: {e}") from e
        return response.content

    def delete(self, destination: str):
        blob = self.bucket.blob(destination)
        try:
            blob.delete()
        except _CLIENT_ERRORS as e:
            logger.error(f"Error deleting {destination} from Cloud Storage: {e}")
            raise StorageError(f"Delete failed: {e}") from e
        logger.info(f"Deleted {destination} from bucket {self.bucket_name}")
