"""Mel-CNN export to ONNX for runtimes without torch.

The exported graph takes a `log_mel` tensor of shape
(batch, 1, n_mels, n_frames) and yields one `probability` per batch item,
so `MelCNNClassifier` can load it through onnxruntime.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import numpy as np

from snapsense.classifier import CNNMeta, MelCNNClassifier

logger = logging.getLogger("snapsense.export")

INPUT_NAME = "log_mel"
OUTPUT_NAME = "probability"


class ModelExporter:
    """Export a torch-backed MelCNNClassifier to ONNX."""

    def __init__(self, classifier: MelCNNClassifier):
        """
        Args:
            classifier: A MelCNNClassifier running on the torch backend.
        """
        if classifier.backend != "torch" or classifier._module is None:
            raise ValueError("Classifier has no torch module to export")
        self.classifier = classifier
        self.meta: CNNMeta = classifier.meta

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        return (1, 1, self.meta.n_mels, self.meta.n_frames)

    def to_onnx(
        self,
        output_path: str | Path,
        opset_version: int = 17,
    ) -> Path:
        """Export the network to ONNX and check the graph.

        Args:
            output_path: Destination .onnx file.
            opset_version: ONNX opset version.

        Returns:
            Path to the exported file. The CNN metadata is written next to
            it as `<name>.json` with a `weights` entry pointing at the graph.
        """
        import torch

        output_path = Path(output_path).with_suffix(".onnx")
        output_path.parent.mkdir(parents=True, exist_ok=True)

        model = self.classifier._module
        model.eval()
        dummy_input = torch.zeros(self.input_shape, dtype=torch.float32)

        torch.onnx.export(
            model,
            dummy_input,
            str(output_path),
            export_params=True,
            opset_version=opset_version,
            do_constant_folding=True,
            dynamo=False,
            input_names=[INPUT_NAME],
            output_names=[OUTPUT_NAME],
            dynamic_axes={
                INPUT_NAME: {0: "batch_size"},
                OUTPUT_NAME: {0: "batch_size"},
            },
        )

        import onnx
        onnx.checker.check_model(onnx.load(str(output_path)))

        self._save_meta(output_path.with_suffix(".json"), output_path.name)

        logger.info("ONNX model exported to %s (%.1f KB)", output_path, output_path.stat().st_size / 1024)
        return output_path

    def validate_onnx(self, onnx_path: str | Path, seed: Optional[int] = 0) -> dict:
        """Run torch and onnxruntime on the same random input and compare.

        Returns dict with validation results.
        """
        import onnxruntime as ort
        import torch

        rng = np.random.default_rng(seed)
        test_input = rng.standard_normal(self.input_shape).astype(np.float32)

        model = self.classifier._module
        with torch.no_grad():
            torch_out = model(torch.from_numpy(test_input)).numpy()

        session = ort.InferenceSession(str(onnx_path))
        onnx_out = session.run(None, {INPUT_NAME: test_input})[0]

        max_diff = float(np.max(np.abs(torch_out - onnx_out)))
        return {
            "valid": max_diff < 1e-4,
            "max_difference": max_diff,
            "pytorch_output": torch_out.reshape(-1).tolist(),
            "onnx_output": onnx_out.reshape(-1).tolist(),
        }

    def _save_meta(self, path: Path, weights_name: str):
        meta = self.meta
        with open(path, "w") as f:
            json.dump({
                "mean": meta.mean,
                "std": meta.std,
                "n_mels": meta.n_mels,
                "hop": meta.hop,
                "sr": meta.sample_rate,
                "excerpt_sec": meta.excerpt_seconds,
                "n_fft": meta.n_fft,
                "weights": weights_name,
            }, f, indent=2)
