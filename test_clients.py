import unittest
from datetime import datetime, timezone
from unittest import mock

import pydantic
import requests
from google.api_core import exceptions as google_exceptions

from errors import PersistenceError, StorageError
from records import PredictionRecord, RecordStoreClient, utc_timestamp
from storage import BlobStoreClient, public_url


def sample_record(**overrides):
    values = dict(
        id="abc123",
        imageUrl="https://storage.googleapis.com/test-bucket/images/scan.jpg",
        result="Negative",
        explanation="Brain tumor is a condition where there is abnormal tissue growth inside the brain.",
        suggestion="You are healthy!",
        confidenceScore=0.12,
        createdAt="2024-05-01T12:30:45.123Z",
    )
    values.update(overrides)
    return PredictionRecord(**values)


class TestBlobStoreClient(unittest.TestCase):

    def setUp(self):
        self.gcs = mock.MagicMock()
        self.blob = self.gcs.bucket.return_value.blob.return_value
        self.store = BlobStoreClient("test-bucket", client=self.gcs, fetch_timeout=5)

    def test_public_url(self):
        self.assertEqual(public_url("b", "images/x.png"), "https://storage.googleapis.com/b/images/x.png")

    def test_upload(self):
        url = self.store.upload(b"jpeg-bytes", "images/scan.jpg", "image/jpeg")

        self.assertEqual(url, "https://storage.googleapis.com/test-bucket/images/scan.jpg")
        self.gcs.bucket.assert_called_once_with("test-bucket")
        self.gcs.bucket.return_value.blob.assert_called_once_with("images/scan.jpg")
        self.blob.upload_from_string.assert_called_once_with(b"jpeg-bytes", content_type="image/jpeg")

    def test_upload_permission_denied(self):
        self.blob.upload_from_string.side_effect = google_exceptions.Forbidden("no access")
        with self.assertRaises(StorageError) as ctx:
            self.store.upload(b"x", "images/scan.jpg", "image/jpeg")
        self.assertIsInstance(ctx.exception.__cause__, google_exceptions.Forbidden)

    def test_upload_quota_exceeded(self):
        self.blob.upload_from_string.side_effect = google_exceptions.TooManyRequests("quota")
        with self.assertRaises(StorageError):
            self.store.upload(b"x", "images/scan.jpg")

    def test_upload_connection_error(self):
        self.blob.upload_from_string.side_effect = requests.ConnectionError("reset")
        with self.assertRaises(StorageError):
            self.store.upload(b"x", "images/scan.jpg")

    def test_bucket_not_configured(self):
        store = BlobStoreClient(None, client=self.gcs)
        with self.assertRaises(StorageError):
            store.upload(b"x", "images/scan.jpg")
        self.gcs.bucket.assert_not_called()

    def test_fetch(self):
        response = mock.Mock(content=b"stored")
        response.raise_for_status.return_value = None
        with mock.patch("storage.requests.get", return_value=response) as get:
            data = self.store.fetch("https://storage.googleapis.com/test-bucket/images/scan.jpg")

        self.assertEqual(data, b"stored")
        get.assert_called_once_with("https://storage.googleapis.com/test-bucket/images/scan.jpg", timeout=5)

    def test_fetch_not_found(self):
        response = mock.Mock()
        response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")
        with mock.patch("storage.requests.get", return_value=response):
            with self.assertRaises(StorageError):
                self.store.fetch("https://storage.googleapis.com/test-bucket/images/missing.jpg")

    def test_delete(self):
        self.store.delete("images/scan.jpg")
        self.blob.delete.assert_called_once_with()

    def test_delete_failure(self):
        self.blob.delete.side_effect = google_exceptions.NotFound("gone")
        with self.assertRaises(StorageError):
            self.store.delete("images/scan.jpg")


class TestRecordStoreClient(unittest.TestCase):

    def setUp(self):
        self.firestore = mock.MagicMock()
        self.document = self.firestore.collection.return_value.document.return_value
        self.store = RecordStoreClient("predictions", client=self.firestore)

    def test_put_writes_camel_case_document(self):
        record = sample_record()
        self.store.put("abc123", record)

        self.firestore.collection.assert_called_once_with("predictions")
        self.firestore.collection.return_value.document.assert_called_once_with("abc123")
        self.document.set.assert_called_once_with({
            "id": "abc123",
            "imageUrl": "https://storage.googleapis.com/test-bucket/images/scan.jpg",
            "result": "Negative",
            "explanation": record.explanation,
            "suggestion": "You are healthy!",
            "confidenceScore": 0.12,
            "createdAt": "2024-05-01T12:30:45.123Z",
        })

    def test_put_unavailable(self):
        self.document.set.side_effect = google_exceptions.ServiceUnavailable("down")
        with self.assertRaises(PersistenceError):
            self.store.put("abc123", sample_record())

    def test_get(self):
        snapshot = self.document.get.return_value
        snapshot.exists = True
        snapshot.to_dict.return_value = {"id": "abc123"}
        self.assertEqual(self.store.get("abc123"), {"id": "abc123"})

        snapshot.exists = False
        self.assertIsNone(self.store.get("abc123"))


class TestPredictionRecord(unittest.TestCase):

    def test_accepts_field_names(self):
        record = PredictionRecord(id="1", image_url="u", result="Positive", explanation="e",
                                  suggestion="s", confidence_score=0.95)
        self.assertEqual(record.to_document()["imageUrl"], "u")
        self.assertEqual(record.to_document()["result"], "Positive")

    def test_score_bounds(self):
        with self.assertRaises(pydantic.ValidationError):
            sample_record(confidenceScore=1.2)
        with self.assertRaises(pydantic.ValidationError):
            sample_record(confidenceScore=-0.1)

    def test_result_enum(self):
        with self.assertRaises(pydantic.ValidationError):
            sample_record(result="Maybe")

    def test_immutable(self):
        record = sample_record()
        with self.assertRaises(pydantic.ValidationError):
            record.result = "Positive"

    def test_timestamp_format(self):
        moment = datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
        self.assertEqual(utc_timestamp(moment), "2024-05-01T12:30:45.123Z")
        self.assertTrue(utc_timestamp().endswith("Z"))


if __name__ == "__main__":
    unittest.main()
