import argparse
import logging
import os
import sys
from pathlib import Path

import numpy as np
import onnx
import onnxruntime
import torch
import torch.onnx

from config import LOG_FORMAT

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

INPUT_NAME = 'input_image'
OUTPUT_NAME = 'score'


class ScoringModel(torch.nn.Module):
    """Wraps a classifier so the exported graph takes [0, 1] pixels and emits a probability."""

    def __init__(self, base_model, normalize: bool = False, apply_sigmoid: bool = True):
        super().__init__()
        self.base_model = base_model
        self.normalize = normalize
        self.apply_sigmoid = apply_sigmoid
        self.register_buffer('mean', torch.tensor([0.485, 0.456, 0.406]).view(1, 3, 1, 1))
        self.register_buffer('std', torch.tensor([0.229, 0.224, 0.225]).view(1, 3, 1, 1))

    def forward(self, x):
        if self.normalize:
            x = (x - self.mean) / self.std
        logits = self.base_model(x).reshape(x.shape[0], -1)[:, :1]
        if self.apply_sigmoid:
            return torch.sigmoid(logits)
        return logits


class ONNXConverter:
    """Exports a TorchScript binary classifier into the ONNX serving format."""

    def __init__(self, model_weights_path="models/classifier.pt", output_path="models/model.onnx",
                 normalize=False, apply_sigmoid=True, input_size=224):
        self.model_weights_path = model_weights_path
        self.output_path = output_path
        self.normalize = normalize
        self.apply_sigmoid = apply_sigmoid
        self.input_size = input_size
        self.model = None

    def load_pytorch_model(self, model=None):
        """Load the TorchScript module, or adopt an already built one."""
        if model is not None:
            self.model = model.eval()
            return True
        if not os.path.exists(self.model_weights_path):
            logger.error(f"Model weights not found at {self.model_weights_path}")
            return False
        try:
            self.model = torch.jit.load(self.model_weights_path, map_location='cpu')
            self.model.eval()
        except (RuntimeError, ValueError) as e:
            logger.error(f"Error loading PyTorch model: {e}")
            return False
        logger.info("PyTorch model loaded successfully")
        return True

    def _scoring_model(self):
        model = ScoringModel(self.model, normalize=self.normalize, apply_sigmoid=self.apply_sigmoid)
        model.eval()
        return model

    def _dummy_input(self):
        return torch.rand(1, 3, self.input_size, self.input_size)

    def convert_to_onnx(self):
        """Convert PyTorch model to ONNX format."""
        logger.info("Converting PyTorch model to ONNX...")
        Path(self.output_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            torch.onnx.export(
                self._scoring_model(),
                self._dummy_input(),
                self.output_path,
                export_params=True,
                opset_version=13,
                do_constant_folding=True,
                input_names=[INPUT_NAME],
                output_names=[OUTPUT_NAME],
                dynamic_axes={INPUT_NAME: {0: 'batch_size'}, OUTPUT_NAME: {0: 'batch_size'}},
                verbose=False,
                dynamo=False
            )
        except Exception as e:
            logger.error(f"Error during ONNX conversion: {e}")
            return False
        logger.info(f"ONNX model saved to: {self.output_path}")
        return True

    def validate_onnx_model(self):
        """Check the graph and run one inference through ONNX Runtime."""
        logger.info("Validating ONNX model...")
        try:
            onnx.checker.check_model(onnx.load(self.output_path))
            ort_session = onnxruntime.InferenceSession(self.output_path, providers=['CPUExecutionProvider'])
            input_info = ort_session.get_inputs()[0]
            output_info = ort_session.get_outputs()[0]
            logger.info(f"Input name: {input_info.name}, shape: {input_info.shape}, type: {input_info.type}")
            logger.info(f"Output name: {output_info.name}, shape: {output_info.shape}, type: {output_info.type}")

            dummy_input = self._dummy_input().numpy()
            score = ort_session.run(None, {input_info.name: dummy_input})[0]
        except Exception as e:
            logger.error(f"Error validating ONNX model: {e}")
            return False

        if score.shape != (1, 1):
            logger.error(f"Expected output shape (1, 1), got {score.shape}")
            return False
        if self.apply_sigmoid and not (0.0 <= float(score[0, 0]) <= 1.0):
            logger.error(f"Score {float(score[0, 0])} is outside [0, 1]")
            return False
        logger.info("ONNX model validation successful")
        return True

    def compare_outputs(self, tolerance=1e-3):
        """Compare PyTorch and ONNX model outputs."""
        logger.info("Comparing PyTorch and ONNX outputs...")
        test_input = self._dummy_input()
        with torch.no_grad():
            pytorch_output = self._scoring_model()(test_input).numpy()

        ort_session = onnxruntime.InferenceSession(self.output_path, providers=['CPUExecutionProvider'])
        onnx_output = ort_session.run(None, {INPUT_NAME: test_input.numpy()})[0]

        max_diff = float(np.max(np.abs(pytorch_output - onnx_output)))
        logger.info(f"Max difference: {max_diff:.6f}")
        if max_diff >= tolerance:
            logger.warning("Significant difference detected between models")
        return max_diff < tolerance


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Export a binary classifier to ONNX")
    parser.add_argument("--weights", default="models/classifier.pt", help="TorchScript model path")
    parser.add_argument("--output", default="models/model.onnx", help="ONNX output path")
    parser.add_argument("--normalize", action="store_true", help="Bake ImageNet normalization into the graph")
    parser.add_argument("--no-sigmoid", action="store_true", help="Model already ends in a sigmoid")
    parser.add_argument("--input-size", type=int, default=224)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    converter = ONNXConverter(args.weights, args.output, normalize=args.normalize,
                              apply_sigmoid=not args.no_sigmoid, input_size=args.input_size)

    if not converter.load_pytorch_model():
        logger.error("Failed to load PyTorch model")
        return 1
    if not converter.convert_to_onnx():
        logger.error("Failed to convert to ONNX")
        return 1
    if not converter.validate_onnx_model():
        logger.error("ONNX model validation failed")
        return 1
    if not converter.compare_outputs():
        logger.warning("Output comparison showed significant differences")

    logger.info(f"ONNX model saved at: {converter.output_path}")
    logger.info(f"Model size: {os.path.getsize(converter.output_path) / (1024*1024):.2f} MB")
    return 0


if __name__ == "__main__":
    sys.exit(main())
