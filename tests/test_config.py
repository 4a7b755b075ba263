from pathlib import Path

import pytest

from sentinel_vision.config import ConfigError, ModelDescriptor, ServiceConfig, default_model_catalog, load_config


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_are_valid() -> None:
    config = ServiceConfig()
    config.validate()
    assert config.registry.backend_mode == "auto"
    assert config.registry.idle_threshold_seconds == 1800
    assert config.processing.media_retries == 2
    assert config.detector.input_size == [416, 416]


def test_default_catalog() -> None:
    catalog = {model.id: model for model in default_model_catalog()}
    assert set(catalog) == {
        "object_detection_v1",
        "face_recognition_v1",
        "anomaly_detection_v1",
        "weapon_detection_v1",
    }
    assert catalog["object_detection_v1"].is_default
    assert catalog["face_recognition_v1"].is_default
    assert not catalog["anomaly_detection_v1"].is_default
    assert catalog["face_recognition_v1"].input_shape == [160, 160, 3]
    # 416*416*3 float32 values, double buffered
    assert catalog["object_detection_v1"].memory_estimate_mb == 3


def test_load_config_overrides_sections(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
processing:
  output_dir: /tmp/out
  max_concurrent_jobs: 2
  unknown_key: ignored
live_feed:
  target_fps: 10
prometheus:
  enabled: false
""",
    )
    config = load_config(path)
    assert config.processing.output_dir == "/tmp/out"
    assert config.processing.max_concurrent_jobs == 2
    assert config.live_feed.target_fps == 10
    assert config.prometheus.enabled is False
    assert len(config.registry.models) == 4


def test_load_config_replaces_model_catalog(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
registry:
  backend_mode: synthetic
  models:
    - id: object_detection_v1
      type: object_detection
      input_shape: [320, 320, 3]
      is_default: true
    - id: face_recognition_v1
      type: face_recognition
      input_shape: [112, 112, 3]
      output_dimensions: 64
""",
    )
    config = load_config(path)
    assert [model.id for model in config.registry.models] == ["object_detection_v1", "face_recognition_v1"]
    assert isinstance(config.registry.models[1], ModelDescriptor)
    assert config.registry.models[1].output_dimensions == 64


def test_detector_must_reference_known_models(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
registry:
  models:
    - id: object_detection_v1
      type: object_detection
""",
    )
    with pytest.raises(ConfigError):
        load_config(path)


def test_model_without_id_is_rejected(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
registry:
  models:
    - type: object_detection
""",
    )
    with pytest.raises(ConfigError):
        load_config(path)


@pytest.mark.parametrize(
    "text",
    [
        "registry:\n  backend_mode: gpu\n",
        "processing:\n  max_concurrent_jobs: 0\n",
        "live_feed:\n  source: ffmpeg\n",
        "prometheus:\n  port: 70000\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_settings_raise_config_error(tmp_path: Path, text: str) -> None:
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, text))


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")
