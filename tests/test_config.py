"""Tests for engine configuration loading and validation."""

import json

import pytest
import yaml

from snapsense.config import (
    ClassifierSpec,
    ConfigurationError,
    DetectorConfig,
    EngineConfig,
    FeatureSource,
    read_structured,
)
from snapsense.gate import RatioMode


def detector(**overrides):
    data = {
        "name": "click",
        "feature": "spectral",
        "classifier": {"kind": "logistic", "model": "click.json"},
    }
    data.update(overrides)
    return data


class TestReadStructured:
    def test_json_and_yaml(self, tmp_path):
        (tmp_path / "a.json").write_text(json.dumps({"x": 1}))
        (tmp_path / "b.yml").write_text("x: 2\n")
        assert read_structured(tmp_path / "a.json") == {"x": 1}
        assert read_structured(tmp_path / "b.yml") == {"x": 2}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            read_structured(tmp_path / "nope.yml")

    def test_parse_error(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Could not parse"):
            read_structured(path)


class TestDetectorConfig:
    def test_defaults(self):
        cfg = DetectorConfig.from_dict(detector())
        assert cfg.feature is FeatureSource.SPECTRAL
        assert cfg.block_size == 1024
        assert cfg.gate is None
        assert cfg.threshold == 0.6

    def test_gate_section(self):
        cfg = DetectorConfig.from_dict(detector(gate={"ratio_mode": "log10", "ratio_threshold": 2.0}))
        assert cfg.gate.ratio_mode is RatioMode.LOG10

    def test_band_lists_become_tuples(self):
        cfg = DetectorConfig.from_dict(detector(low_band_bins=[0, 13], high_band_bins=[22, 128]))
        assert cfg.low_band_bins == (0, 13)
        assert cfg.high_band_bins == (22, 128)

    def test_missing_kind(self):
        with pytest.raises(ConfigurationError, match="kind"):
            DetectorConfig.from_dict(detector(classifier={"model": "x.json"}))

    def test_feature_kind_mismatch(self):
        with pytest.raises(ConfigurationError, match="needs a 'rbf'"):
            DetectorConfig.from_dict(detector(feature="kinematic"))

    def test_unknown_feature(self):
        with pytest.raises(ConfigurationError):
            DetectorConfig.from_dict(detector(feature="video"))

    def test_missing_name(self):
        data = detector()
        del data["name"]
        with pytest.raises(ConfigurationError, match="missing required field"):
            DetectorConfig.from_dict(data)

    def test_unknown_setting(self):
        with pytest.raises(ConfigurationError, match="unknown detector settings"):
            DetectorConfig.from_dict(detector(sensitivity=3))

    def test_bad_gate(self):
        with pytest.raises(ConfigurationError, match="bad gate settings"):
            DetectorConfig.from_dict(detector(gate={"floor_smoothing": 2.0}))

    @pytest.mark.parametrize("field,value", [
        ("block_size", 1000),
        ("threshold", 1.5),
        ("smoothing", 1.0),
        ("cooldown", -0.1),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigurationError):
            DetectorConfig.from_dict(detector(**{field: value}))

    @pytest.mark.parametrize("low,high", [
        ([10, 5], [22, 128]),
        ([0, 13], [30, 30]),
        ([0, 13], [22, 600]),
        ([-1, 13], [22, 128]),
    ])
    def test_bad_band_bins(self, low, high):
        with pytest.raises(ConfigurationError, match="band_bins"):
            DetectorConfig.from_dict(detector(low_band_bins=low, high_band_bins=high))

    def test_band_bins_come_in_pairs(self):
        with pytest.raises(ConfigurationError, match="together"):
            DetectorConfig.from_dict(detector(low_band_bins=[0, 13]))

    def test_window_size_too_small(self):
        with pytest.raises(ConfigurationError, match="window_size"):
            DetectorConfig.from_dict(detector(window_size=1))

    def test_non_numeric_setting(self):
        with pytest.raises(ConfigurationError, match="bad detector setting"):
            DetectorConfig.from_dict(detector(block_size="big"))


class TestClassifierSpec:
    def test_resolve_relative(self, tmp_path):
        spec = ClassifierSpec("cnn", model="meta.json", weights="cnn.pt").resolve(tmp_path)
        assert spec.model == str(tmp_path / "meta.json")
        assert spec.weights == str(tmp_path / "cnn.pt")

    def test_resolve_keeps_absolute(self, tmp_path):
        path = str(tmp_path / "meta.json")
        assert ClassifierSpec("cnn", model=path).resolve(tmp_path / "other").model == path

    def test_inline_params_override_file(self, tmp_path):
        path = tmp_path / "m.json"
        path.write_text(json.dumps({"bias": 1.0, "mean": [0, 0, 0, 0]}))
        params = ClassifierSpec("logistic", model=str(path), params={"bias": 2.0}).load_params()
        assert params["bias"] == 2.0
        assert params["mean"] == [0, 0, 0, 0]

    def test_model_file_must_be_mapping(self, tmp_path):
        path = tmp_path / "m.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigurationError, match="mapping"):
            ClassifierSpec("rbf", model=str(path)).load_params()


class TestEngineConfig:
    def test_from_yaml(self, tmp_path):
        path = tmp_path / "engine.yml"
        path.write_text(yaml.safe_dump({
            "sample_rate": 44100,
            "detectors": [detector(block_size=512)],
            "pinch": {"enabled": True},
        }))
        cfg = EngineConfig.from_yaml(path)
        assert cfg.sample_rate == 44100
        assert cfg.detectors[0].block_size == 512
        assert cfg.pinch.enabled
        assert cfg.base_dir == tmp_path.resolve()

    def test_no_detectors(self):
        with pytest.raises(ConfigurationError, match="No gesture detector"):
            EngineConfig.from_dict({"detectors": []})

    def test_pinch_only_is_valid(self):
        cfg = EngineConfig.from_dict({"pinch": {"enabled": True}})
        assert cfg.detectors == []

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            EngineConfig.from_dict({"detectors": [detector(), detector()]})

    def test_pinch_name_clash(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            EngineConfig.from_dict({
                "detectors": [detector(name="pinch")],
                "pinch": {"enabled": True},
            })

    def test_unknown_pinch_setting(self):
        with pytest.raises(ConfigurationError, match="pinch"):
            EngineConfig.from_dict({"pinch": {"enabled": True, "distance": 0.02}})

    def test_unknown_engine_setting(self):
        with pytest.raises(ConfigurationError, match="Unknown engine settings"):
            EngineConfig.from_dict({"detectors": [detector()], "samplerate": 44100})

    def test_base_dir_is_not_a_file_setting(self):
        with pytest.raises(ConfigurationError, match="base_dir"):
            EngineConfig.from_dict({"detectors": [detector()], "base_dir": "/tmp"})

    @pytest.mark.parametrize("data", [
        {"sample_rate": "fast"},
        {"event_queue_size": None},
        {"pinch": {"enabled": True, "threshold": "close"}},
    ])
    def test_non_numeric_engine_setting(self, data):
        with pytest.raises(ConfigurationError, match="Bad engine setting"):
            EngineConfig.from_dict(dict(data, detectors=[detector()]))

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            EngineConfig.from_dict(["detectors"])

    def test_dict_roundtrip(self):
        original = EngineConfig.from_dict({
            "detectors": [detector(gate={"rms_multiplier": 0.01, "ratio_mode": "log10"})],
        })
        again = EngineConfig.from_dict(original.to_dict())
        assert again.to_dict() == original.to_dict()

    def test_shipped_configs_parse(self, config_dir):
        snap = EngineConfig.from_yaml(config_dir / "snap.yml")
        click = EngineConfig.from_yaml(config_dir / "click.yml")
        assert snap.detectors[0].feature is FeatureSource.KINEMATIC
        assert snap.detectors[0].gate.ratio_mode is RatioMode.LINEAR
        assert click.detectors[0].gate.ratio_mode is RatioMode.LOG10
