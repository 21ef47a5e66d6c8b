"""In-memory stand-ins for the external services, shared by the test modules."""
import io
import threading
import time

import numpy as np
import onnx
from onnx import TensorProto, helper
from PIL import Image

from errors import ModelLoadError, PersistenceError, StorageError
from model import DEFAULT_INPUT_SIZE, ModelProvider
from storage import public_url

TEST_BUCKET = "test-bucket"


def jpeg_bytes(size=(96, 96), seed=0, quality=95) -> bytes:
    """Noise JPEG, roughly 10KB at the default size."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, (size[1], size[0], 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def build_onnx_model(path, channels_last=False, size=224):
    """Write a tiny classifier: sigmoid of the mean pixel value."""
    if channels_last:
        input_shape = ["batch", size, size, 3]
        nodes = [helper.make_node("Transpose", ["input_image"], ["nchw"], perm=[0, 3, 1, 2])]
        pooled_input = "nchw"
    else:
        input_shape = ["batch", 3, size, size]
        nodes = []
        pooled_input = "input_image"
    nodes += [
        helper.make_node("GlobalAveragePool", [pooled_input], ["pooled"]),
        helper.make_node("Flatten", ["pooled"], ["flat"], axis=1),
        helper.make_node("ReduceMean", ["flat"], ["mean"], axes=[1], keepdims=1),
        helper.make_node("Sigmoid", ["mean"], ["score"]),
    ]
    graph = helper.make_graph(
        nodes,
        "mean_pixel_classifier",
        [helper.make_tensor_value_info("input_image", TensorProto.FLOAT, input_shape)],
        [helper.make_tensor_value_info("score", TensorProto.FLOAT, ["batch", 1])],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 7
    onnx.checker.check_model(model)
    onnx.save(model, str(path))
    return path


class FakeModel:
    input_size = DEFAULT_INPUT_SIZE
    channels_first = True

    def __init__(self, score=0.5):
        self.score = score

    def predict(self, input_array):
        return np.array([[self.score]], dtype=np.float32)


class CountingFactory:
    """Model factory that counts calls and can be slowed down or made to fail."""

    def __init__(self, score=0.5, delay=0.0, fail=False):
        self.score = score
        self.delay = delay
        self.fail = fail
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, source):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ModelLoadError(f"Model source unreachable: {source}")
        return FakeModel(self.score)


def make_provider(score=0.5, delay=0.0, fail=False):
    factory = CountingFactory(score=score, delay=delay, fail=fail)
    return ModelProvider("https://models.example.com/model.onnx", model_factory=factory), factory


class FakeBlobStore:
    def __init__(self, bucket_name=TEST_BUCKET, fail_upload=False, fail_delete=False):
        self.bucket_name = bucket_name
        self.fail_upload = fail_upload
        self.fail_delete = fail_delete
        self.objects = {}
        self.calls = []

    def upload(self, data, destination, content_type=None):
        self.calls.append(("upload", destination))
        if self.fail_upload:
            raise StorageError("Upload failed: 403 quota exceeded")
        self.objects[destination] = data
        return public_url(self.bucket_name, destination)

    def fetch(self, url):
        self.calls.append(("fetch", url))
        prefix = public_url(self.bucket_name, "")
        try:
            return self.objects[url[len(prefix):]]
        except KeyError:
            raise StorageError(f"Could not fetch uploaded image: 404 {url}")

    def delete(self, destination):
        self.calls.append(("delete", destination))
        if self.fail_delete:
            raise StorageError("Delete failed: 403")
        self.objects.pop(destination, None)


class FakeRecordStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.records = {}
        self.calls = []

    def put(self, record_id, record):
        self.calls.append(("put", record_id))
        if self.fail:
            raise PersistenceError("Could not store prediction: 503 unavailable")
        self.records[str(record_id)] = record.to_document()

    def get(self, record_id):
        return self.records.get(str(record_id))
