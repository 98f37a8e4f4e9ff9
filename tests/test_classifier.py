"""Tests for the classifier backends and the tagged loader."""

import json
import math

import numpy as np
import pytest
import yaml

from snapsense.classifier import (
    CNNMeta,
    ClassifierConfigError,
    ClassifierKind,
    LogisticClassifier,
    LogisticModel,
    MelCNNClassifier,
    RBFClassifier,
    RBFModel,
    load_classifier,
    sigmoid,
)
from snapsense.config import ClassifierSpec, ConfigurationError
from snapsense.spectral import SpectralFeatures

try:
    import torch
    _HAS_TORCH = True
except ImportError:
    _HAS_TORCH = False

try:
    import onnx
    import onnxruntime
    _HAS_ONNX = True
except ImportError:
    _HAS_ONNX = False


CNN_META = {"mean": -50.0, "std": 15.0, "n_mels": 64, "hop": 256, "sr": 16000, "excerpt_sec": 0.64}


class TestSigmoid:
    def test_midpoint(self):
        assert sigmoid(0.0) == 0.5

    def test_extremes_do_not_overflow(self):
        assert sigmoid(1000.0) == pytest.approx(1.0)
        assert sigmoid(-1000.0) == pytest.approx(0.0)


class TestRBFModel:
    def test_parses_record(self, rbf_record):
        model = RBFModel.from_dict(rbf_record)
        assert model.n_sv == 2
        assert model.feature_dim == 21
        assert model.support_vectors.shape == (2, 21)

    def test_accepts_snake_case(self, rbf_record):
        record = dict(rbf_record)
        record["sv_flat"] = record.pop("svFlat")
        record["dual_coef"] = record.pop("dualCoef")
        assert RBFModel.from_dict(record).n_sv == 2

    def test_accepts_feature_dim_alias(self, rbf_record):
        record = dict(rbf_record)
        record["featureDim"] = record.pop("featDim")
        assert RBFModel.from_dict(record).feature_dim == 21

    @pytest.mark.parametrize("field,value", [
        ("svFlat", [0.0] * 41),
        ("dualCoef", [1.0]),
        ("scale", [1.0] * 20),
        ("nSV", 3),
        ("gamma", 0.0),
    ])
    def test_inconsistent_record(self, rbf_record, field, value):
        record = dict(rbf_record)
        record[field] = value
        with pytest.raises(ClassifierConfigError):
            RBFModel.from_dict(record)

    def test_zero_scale(self, rbf_record):
        record = dict(rbf_record)
        record["scale"] = [0.0] + record["scale"][1:]
        with pytest.raises(ClassifierConfigError, match="zeros"):
            RBFModel.from_dict(record)

    def test_missing_field(self, rbf_record):
        record = dict(rbf_record)
        del record["intercept"]
        with pytest.raises(ClassifierConfigError, match="intercept"):
            RBFModel.from_dict(record)

    def test_config_error_is_configuration_error(self):
        assert issubclass(ClassifierConfigError, ConfigurationError)


class TestRBFClassifier:
    def test_kernel_term_at_support_vector(self, rbf_record):
        clf = RBFClassifier(RBFModel.from_dict(rbf_record))
        m = clf.model
        x = m.mean + m.scale * m.support_vectors[0]
        terms = clf.kernel_terms(clf.standardize(x))
        assert terms[0] == pytest.approx(m.dual_coef[0])

    def test_score_single_support_vector(self):
        record = {
            "mean": [0.0, 0.0], "scale": [1.0, 1.0], "svFlat": [1.0, 2.0],
            "dualCoef": [2.0], "nSV": 1, "featDim": 2, "intercept": -1.0, "gamma": 0.5,
        }
        clf = RBFClassifier(RBFModel.from_dict(record))
        assert clf.score(np.array([1.0, 2.0])) == pytest.approx(sigmoid(1.0))
        # |x - sv|^2 = 2 -> kernel exp(-1)
        assert clf.score(np.array([0.0, 1.0])) == pytest.approx(sigmoid(2.0 * math.exp(-1.0) - 1.0))

    def test_score_in_unit_interval(self, rbf_record):
        clf = RBFClassifier(RBFModel.from_dict(rbf_record))
        rng = np.random.default_rng(0)
        for _ in range(20):
            assert 0.0 <= clf.score(rng.standard_normal(21) * 10) <= 1.0

    def test_wrong_feature_length(self, rbf_record):
        clf = RBFClassifier(RBFModel.from_dict(rbf_record))
        with pytest.raises(ValueError, match="Expected 21 features"):
            clf.score(np.zeros(20))

    def test_closed_classifier(self, rbf_record):
        clf = RBFClassifier(RBFModel.from_dict(rbf_record))
        clf.close()
        clf.close()
        assert clf.closed
        with pytest.raises(RuntimeError):
            clf.score(np.zeros(21))

    def test_context_manager(self, rbf_record):
        with RBFClassifier(RBFModel.from_dict(rbf_record)) as clf:
            assert not clf.closed
        assert clf.closed


class TestLogisticClassifier:
    def test_neutral_score(self, logistic_record):
        clf = LogisticClassifier(LogisticModel.from_dict(logistic_record))
        assert clf.score(np.zeros(4)) == 0.5

    def test_near_zero_scale_treated_as_one(self):
        model = LogisticModel.from_dict({
            "mean": [1.0, 0.0, 0.0, 0.0], "scale": [0.0, 1.0, 1.0, 1.0],
            "weight": [1.0, 0.0, 0.0, 0.0], "bias": 0.0,
        })
        clf = LogisticClassifier(model)
        assert clf.score(np.array([3.0, 0.0, 0.0, 0.0])) == pytest.approx(sigmoid(2.0))

    def test_wrong_record_length(self, logistic_record):
        record = dict(logistic_record, weight=[1.0, 2.0])
        with pytest.raises(ClassifierConfigError, match="weight"):
            LogisticModel.from_dict(record)

    def test_features_from_spectral(self):
        f = SpectralFeatures(
            low_band_energy=1.0, high_band_vector=np.zeros(3), high_band_energy=100.0,
            spectral_centroid=60.0, high_band_rms=0.3, time_rms=0.05, spectral_flatness=0.4,
            windowed_rms=0.03,
        )
        x = LogisticClassifier.features_from(f)
        np.testing.assert_allclose(x, [0.03, 2.0, 60.0, 0.4], rtol=1e-5)


class TestCNNMeta:
    def test_frames(self):
        meta = CNNMeta.from_dict(CNN_META)
        assert meta.n_frames == 40
        assert meta.mel_settings().excerpt_samples == 10240

    def test_bad_fft_size(self):
        with pytest.raises(ClassifierConfigError):
            CNNMeta.from_dict(dict(CNN_META, n_fft=1000))

    def test_missing_weights(self):
        with pytest.raises(ClassifierConfigError, match="weights"):
            MelCNNClassifier(CNNMeta.from_dict(CNN_META))


class TestLoadClassifier:
    def test_unknown_kind(self):
        with pytest.raises(ClassifierConfigError, match="Unknown classifier kind"):
            load_classifier(ClassifierSpec("svm", params={"a": 1}))

    def test_no_model_data(self):
        with pytest.raises(ClassifierConfigError, match="no model data"):
            load_classifier(ClassifierSpec("rbf"))

    def test_inline_rbf(self, rbf_record):
        clf = load_classifier(ClassifierSpec("rbf", params=rbf_record))
        assert clf.kind is ClassifierKind.RBF

    def test_logistic_from_json(self, tmp_path, logistic_record):
        path = tmp_path / "click.json"
        path.write_text(json.dumps(logistic_record))
        clf = load_classifier(ClassifierSpec("logistic", model=str(path)))
        assert clf.kind is ClassifierKind.LOGISTIC

    def test_rbf_from_yaml(self, tmp_path, rbf_record):
        path = tmp_path / "snap.yml"
        path.write_text(yaml.safe_dump(rbf_record))
        clf = load_classifier(ClassifierSpec("rbf", model=str(path)))
        assert clf.feature_dim == 21

    def test_missing_model_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_classifier(ClassifierSpec("rbf", model=str(tmp_path / "missing.json")))

    def test_kind_selects_backend_not_fields(self, rbf_record):
        # an RBF record tagged logistic is a logistic record with wrong fields
        with pytest.raises(ClassifierConfigError):
            load_classifier(ClassifierSpec("logistic", params=rbf_record))


@pytest.mark.skipif(not _HAS_TORCH, reason="torch not installed")
class TestMelCNN:
    def _module(self):
        from snapsense.classifier import build_mel_cnn
        torch.manual_seed(0)
        return build_mel_cnn()

    def test_all_zero_log_mel_scores_in_range(self):
        meta = CNNMeta.from_dict(CNN_META)
        clf = MelCNNClassifier(meta, module=self._module())
        assert clf.backend == "torch"
        p = clf.score(np.zeros(meta.n_mels * meta.n_frames, dtype=np.float32))
        assert 0.0 <= p <= 1.0

    def test_load_state_dict(self, tmp_path):
        module = self._module()
        torch.save(module.state_dict(), tmp_path / "cnn.pt")
        meta_path = tmp_path / "cnn.json"
        meta_path.write_text(json.dumps(dict(CNN_META, weights="cnn.pt")))

        clf = load_classifier(ClassifierSpec("cnn", model=str(meta_path)))
        x = np.random.default_rng(0).standard_normal(64 * 40).astype(np.float32)
        reference = MelCNNClassifier(CNNMeta.from_dict(CNN_META), module=module)
        assert clf.score(x) == pytest.approx(reference.score(x), abs=1e-6)

    def test_load_training_checkpoint(self, tmp_path):
        torch.save({"model_state": self._module().state_dict(), "epoch": 3}, tmp_path / "ckpt.pt")
        clf = MelCNNClassifier(CNNMeta.from_dict(CNN_META), weights=tmp_path / "ckpt.pt")
        assert 0.0 <= clf.score(np.zeros(64 * 40)) <= 1.0

    def test_mismatched_weights(self, tmp_path):
        torch.save({"bogus.weight": torch.zeros(3)}, tmp_path / "bad.pt")
        with pytest.raises(ClassifierConfigError, match="do not fit"):
            MelCNNClassifier(CNNMeta.from_dict(CNN_META), weights=tmp_path / "bad.pt")

    def test_wrong_input_size(self):
        clf = MelCNNClassifier(CNNMeta.from_dict(CNN_META), module=self._module())
        with pytest.raises(ValueError):
            clf.score(np.zeros(100))


@pytest.mark.skipif(not (_HAS_TORCH and _HAS_ONNX), reason="torch/onnx not installed")
class TestOnnxBackend:
    def test_export_and_load(self, tmp_path):
        from snapsense.classifier import build_mel_cnn
        from snapsense.export import ModelExporter

        torch.manual_seed(1)
        meta = CNNMeta.from_dict(CNN_META)
        torch_clf = MelCNNClassifier(meta, module=build_mel_cnn())
        exporter = ModelExporter(torch_clf)
        path = exporter.to_onnx(tmp_path / "cnn")
        assert path.suffix == ".onnx"
        assert exporter.validate_onnx(path)["valid"]

        onnx_clf = load_classifier(ClassifierSpec("cnn", model=str(path.with_suffix(".json"))))
        assert onnx_clf.backend == "onnx"
        x = np.random.default_rng(2).standard_normal(64 * 40).astype(np.float32)
        assert onnx_clf.score(x) == pytest.approx(torch_clf.score(x), abs=1e-4)

    def test_exporter_needs_torch_module(self, tmp_path):
        from snapsense.classifier import build_mel_cnn
        from snapsense.export import ModelExporter

        path = ModelExporter(MelCNNClassifier(CNNMeta.from_dict(CNN_META), module=build_mel_cnn())).to_onnx(
            tmp_path / "cnn"
        )
        onnx_clf = MelCNNClassifier(CNNMeta.from_dict(CNN_META), weights=path)
        with pytest.raises(ValueError, match="no torch module"):
            ModelExporter(onnx_clf)
