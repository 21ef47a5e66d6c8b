import importlib.util
import tempfile
import unittest
from pathlib import Path

import numpy as np

from model import ONNXModel, interpret_output

HAS_TORCH = importlib.util.find_spec("torch") is not None


def tiny_classifier():
    import torch

    torch.manual_seed(0)
    return torch.nn.Sequential(
        torch.nn.Conv2d(3, 4, kernel_size=3, stride=2),
        torch.nn.ReLU(),
        torch.nn.AdaptiveAvgPool2d(1),
        torch.nn.Flatten(),
        torch.nn.Linear(4, 1),
    )


@unittest.skipUnless(HAS_TORCH, "PyTorch not installed (pip install .[convert])")
class TestONNXConversion(unittest.TestCase):
    """Test ONNX conversion functionality."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.output_path = str(Path(self.tmp.name) / "model.onnx")

    def test_converter_initialization(self):
        from convert_to_onnx import ONNXConverter

        converter = ONNXConverter()
        self.assertIsNotNone(converter.model_weights_path)
        self.assertIsNotNone(converter.output_path)
        self.assertTrue(converter.apply_sigmoid)

    def test_missing_weights(self):
        from convert_to_onnx import ONNXConverter

        converter = ONNXConverter(model_weights_path=str(Path(self.tmp.name) / "missing.pt"))
        self.assertFalse(converter.load_pytorch_model())

    def test_load_torchscript(self):
        import torch
        from convert_to_onnx import ONNXConverter

        weights = str(Path(self.tmp.name) / "classifier.pt")
        torch.jit.script(tiny_classifier()).save(weights)

        converter = ONNXConverter(model_weights_path=weights, output_path=self.output_path)
        self.assertTrue(converter.load_pytorch_model())

    def test_conversion_process(self):
        from convert_to_onnx import ONNXConverter

        converter = ONNXConverter(output_path=self.output_path, normalize=True)
        self.assertTrue(converter.load_pytorch_model(model=tiny_classifier()))
        self.assertTrue(converter.convert_to_onnx())
        self.assertTrue(converter.validate_onnx_model())
        self.assertTrue(converter.compare_outputs())

        # The exported graph satisfies the serving contract
        model = ONNXModel(self.output_path)
        self.assertTrue(model.channels_first)
        self.assertEqual(model.input_size, (224, 224))
        output = model.predict(np.random.rand(1, 3, 224, 224).astype(np.float32))
        score = interpret_output(output)
        self.assertGreaterEqual(score, 0.0)
        self.assertLessEqual(score, 1.0)

    def test_main_exit_code(self):
        from convert_to_onnx import main

        self.assertEqual(main(["--weights", str(Path(self.tmp.name) / "missing.pt"),
                               "--output", self.output_path]), 1)


if __name__ == "__main__":
    unittest.main()
