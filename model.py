import asyncio
import io
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np
import onnx
import onnxruntime
import requests
from PIL import Image

from errors import InferenceError, ModelLoadError

logger = logging.getLogger(__name__)

DEFAULT_INPUT_SIZE = (224, 224)


class ImagePreprocessor:
    """Turns raw upload bytes into the tensor a binary classifier expects."""

    def __init__(self, target_size: Tuple[int, int] = DEFAULT_INPUT_SIZE,
                 normalize: bool = False, channels_first: bool = True):
        # ImageNet normalization constants
        self.mean = np.array([0.485, 0.456, 0.406], dtype=np.float32)
        self.std = np.array([0.229, 0.224, 0.225], dtype=np.float32)
        self.target_size = target_size
        self.normalize = normalize
        self.channels_first = channels_first

    def load_image(self, image_input: Union[bytes, Image.Image]) -> Image.Image:
        """Decode raw bytes; PIL images pass through."""
        if isinstance(image_input, Image.Image):
            return image_input
        if isinstance(image_input, (bytes, bytearray)):
            if not image_input:
                raise InferenceError("Empty image payload")
            try:
                image = Image.open(io.BytesIO(image_input))
                image.load()
            except (OSError, ValueError, Image.DecompressionBombError) as e:
                logger.error(f"Error decoding image: {e}")
                raise InferenceError(f"Malformed image data: {e}") from e
            return image
        raise InferenceError(f"Unsupported image input type: {type(image_input)}")

    def convert_to_rgb(self, image: Image.Image) -> Image.Image:
        if image.mode != 'RGB':
            logger.debug(f"Converting image from {image.mode} to RGB")
            image = image.convert('RGB')
        return image

    def resize_image(self, image: Image.Image, size: Tuple[int, int] = None) -> Image.Image:
        """Resize image using bilinear interpolation."""
        if size is None:
            size = self.target_size
        return image.resize(size, Image.BILINEAR)

    def normalize_image(self, image_array: np.ndarray) -> np.ndarray:
        """Apply ImageNet normalization to an HWC array in [0, 1]."""
        normalized = (image_array - self.mean) / self.std
        return normalized.astype(np.float32)

    def preprocess(self, image_input: Union[bytes, Image.Image]) -> np.ndarray:
        """
        Complete preprocessing pipeline.

        Args:
            image_input: Raw image bytes or a PIL image

        Returns:
            Float32 array with shape (1, 3, H, W) or (1, H, W, 3)
        """
        image = self.load_image(image_input)
        try:
            image = self.convert_to_rgb(image)
            image = self.resize_image(image)
        except (OSError, ValueError) as e:
            logger.error(f"Error preparing image: {e}")
            raise InferenceError(f"Unsupported image data: {e}") from e

        # HWC, scaled to [0, 1]
        image_array = np.asarray(image, dtype=np.float32) / 255.0

        if self.normalize:
            image_array = self.normalize_image(image_array)

        if self.channels_first:
            image_array = np.transpose(image_array, (2, 0, 1))

        return np.expand_dims(image_array, axis=0).astype(np.float32)


class ONNXModel:
    """Handles ONNX model loading and inference."""

    def __init__(self, source: str, fetch_timeout: float = 30.0):
        self.source = source
        self.fetch_timeout = fetch_timeout
        self.session = None
        self.input_name = None
        self.output_name = None
        self.input_shape = None
        self.output_shape = None
        self.channels_first = True
        self.input_size = DEFAULT_INPUT_SIZE
        self._load_model()

    def _read_source(self) -> bytes:
        if self.source.startswith(("http://", "https://")):
            logger.info(f"Downloading ONNX model from: {self.source}")
            try:
                response = requests.get(self.source, timeout=self.fetch_timeout)
                response.raise_for_status()
            except requests.RequestException as e:
                raise ModelLoadError(f"Model source unreachable: {e}") from e
            return response.content

        path = Path(self.source)
        if not path.exists():
            raise ModelLoadError(f"ONNX model not found: {self.source}")
        logger.info(f"Loading ONNX model from: {self.source}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise ModelLoadError(f"Could not read model file: {e}") from e

    def _load_model(self):
        """Fetch, validate and open an inference session."""
        model_bytes = self._read_source()
        try:
            onnx.checker.check_model(onnx.load_model_from_string(model_bytes))

            providers = ['CPUExecutionProvider']
            if onnxruntime.get_device() == 'GPU':
                providers.insert(0, 'CUDAExecutionProvider')

            self.session = onnxruntime.InferenceSession(model_bytes, providers=providers)
        except Exception as e:
            logger.error(f"Error loading ONNX model: {e}")
            raise ModelLoadError(f"Malformed model: {e}") from e

        model_input = self.session.get_inputs()[0]
        model_output = self.session.get_outputs()[0]
        self.input_name = model_input.name
        self.output_name = model_output.name
        self.input_shape = model_input.shape
        self.output_shape = model_output.shape
        self.channels_first, self.input_size = self._input_layout(self.input_shape)

        logger.info("Model loaded successfully")
        logger.info(f"Input: {self.input_name} {self.input_shape}")
        logger.info(f"Output: {self.output_name} {self.output_shape}")

    @staticmethod
    def _input_layout(shape) -> Tuple[bool, Tuple[int, int]]:
        """Work out (channels_first, (width, height)) from a 4D input shape."""
        if shape is None or len(shape) != 4:
            return True, DEFAULT_INPUT_SIZE
        dims = [d if isinstance(d, int) and d > 0 else None for d in shape]
        if dims[3] == 3 and dims[1] != 3:
            height, width = dims[1], dims[2]
            channels_first = False
        else:
            height, width = dims[2], dims[3]
            channels_first = True
        if height is None or width is None:
            return channels_first, DEFAULT_INPUT_SIZE
        return channels_first, (width, height)

    def predict(self, input_array: np.ndarray) -> np.ndarray:
        """Run inference on a preprocessed batch."""
        if self.session is None:
            raise InferenceError("Model not loaded")
        start_time = time.time()
        try:
            outputs = self.session.run([self.output_name], {self.input_name: input_array})
        except Exception as e:
            logger.error(f"Error during inference: {e}")
            raise InferenceError(f"Inference failed: {e}") from e
        logger.debug(f"Inference completed in {time.time() - start_time:.3f}s")
        return outputs[0]

    def get_model_info(self) -> Dict:
        return {
            'source': self.source,
            'input_name': self.input_name,
            'output_name': self.output_name,
            'input_shape': self.input_shape,
            'output_shape': self.output_shape,
            'channels_first': self.channels_first,
            'providers': self.session.get_providers() if self.session else None
        }


def interpret_output(output: np.ndarray) -> float:
    """Reduce raw model output to a positive-class score in [0, 1].

    A two-column row that is non-negative and sums to 1 already holds
    (negative, positive) probabilities; any other two-column row is treated
    as logits. A single value inside [0, 1] is already a probability;
    anything else is a logit.
    """
    values = np.asarray(output, dtype=np.float64)
    if values.size == 0:
        raise InferenceError("Model returned an empty output")

    if values.ndim >= 2 and values.shape[-1] == 2:
        row = values.reshape(-1, 2)[0]
        if np.all(row >= 0.0) and np.isclose(row.sum(), 1.0, atol=1e-4):
            score = row[1]
        else:
            exps = np.exp(row - np.max(row))
            score = exps[1] / np.sum(exps)
    else:
        score = values.reshape(-1)[0]
        if not 0.0 <= score <= 1.0:
            score = 1.0 / (1.0 + np.exp(-np.clip(score, -500, 500)))

    if not np.isfinite(score):
        raise InferenceError("Model returned a non-finite score")
    return float(min(max(score, 0.0), 1.0))


class ModelProvider:
    """Owns the classifier's lifecycle: single-flight lazy load, then scoring.

    Concurrent ``ensure_loaded`` calls made while a load is in progress all
    await the same attempt and see the same outcome. A failed attempt is not
    cached; the next call starts a fresh one.
    """

    def __init__(self, source: Optional[str], normalize: bool = False,
                 model_factory: Callable[[str], ONNXModel] = None,
                 fetch_timeout: float = 30.0):
        self.source = source
        self.normalize = normalize
        self.fetch_timeout = fetch_timeout
        self.model_factory = model_factory or self._default_factory
        self.load_count = 0
        self._model = None
        self._preprocessor = None
        self._inflight: Optional[asyncio.Future] = None

    def _default_factory(self, source: str) -> ONNXModel:
        return ONNXModel(source, fetch_timeout=self.fetch_timeout)

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    async def ensure_loaded(self):
        if self._model is not None:
            return self._model
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._load())
        # Shield so one cancelled request does not abort the shared load
        return await asyncio.shield(self._inflight)

    async def reload(self):
        """Drop the current model and load it again from the source."""
        self._model = None
        self._preprocessor = None
        return await self.ensure_loaded()

    async def _load(self):
        try:
            self.load_count += 1
            model = await asyncio.to_thread(self._create_model)
            self._preprocessor = ImagePreprocessor(
                target_size=model.input_size,
                normalize=self.normalize,
                channels_first=model.channels_first,
            )
            self._model = model
            return model
        finally:
            self._inflight = None

    def _create_model(self):
        if not self.source:
            raise ModelLoadError("MODEL_URL is not configured")
        start_time = time.time()
        try:
            model = self.model_factory(self.source)
        except ModelLoadError as e:
            logger.error(f"Error loading the model: {e.detail}")
            raise
        except Exception as e:
            logger.error(f"Error loading the model: {e}")
            raise ModelLoadError(str(e)) from e
        logger.info(f"Model ready in {time.time() - start_time:.3f}s")
        return model

    async def score(self, image_bytes: bytes) -> float:
        """Confidence in [0, 1] that the image belongs to the positive class."""
        model = await self.ensure_loaded()
        return await asyncio.to_thread(self._score, model, self._preprocessor, image_bytes)

    @staticmethod
    def _score(model, preprocessor: ImagePreprocessor, image_bytes: bytes) -> float:
        input_array = preprocessor.preprocess(image_bytes)
        return interpret_output(model.predict(input_array))

    def get_model_info(self) -> Dict:
        info = {'loaded': self.is_loaded, 'load_count': self.load_count, 'source': self.source}
        if self._model is not None and hasattr(self._model, 'get_model_info'):
            info['model_info'] = self._model.get_model_info()
        return info
