import json

import pytest
from pydantic import ValidationError

from handsfree.config import CONFIG_PATH_ENV, EngineConfig
from handsfree.models import AppContext


def test_defaults():
    cfg = EngineConfig()
    assert cfg.stabilizer.cooldown_sec == 1.5
    assert cfg.stabilizer.hold_frames == 1
    assert cfg.audio.resume_delay_sec == 1.5
    assert cfg.audio.max_retries == 3
    assert cfg.dispatcher.suppression_window_sec == 2.0
    assert cfg.classifier.pointing_min_distance == 40.0
    assert cfg.initial_context is AppContext.STEPS


def test_missing_file_gives_defaults(tmp_path):
    assert EngineConfig.load(tmp_path / "nope.json") == EngineConfig()


def test_malformed_file_gives_defaults(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{not json", encoding="utf-8")
    assert EngineConfig.load(path) == EngineConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "cfg.json"
    cfg = EngineConfig().merge_patch({"stabilizer": {"hold_frames": 3}, "initial_context": "timer"})
    cfg.save(path)
    assert json.loads(path.read_text(encoding="utf-8"))["stabilizer"]["hold_frames"] == 3
    assert EngineConfig.load(path) == cfg


def test_merge_patch_is_nested_and_partial():
    cfg = EngineConfig().merge_patch({"audio": {"retry_backoff_sec": 0.5}})
    assert cfg.audio.retry_backoff_sec == 0.5
    assert cfg.audio.resume_delay_sec == 1.5
    assert cfg.stabilizer == EngineConfig().stabilizer


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        EngineConfig().merge_patch({"stabilizer": {"hold_frames": 0}})
    with pytest.raises(ValidationError):
        EngineConfig().merge_patch({"initial_context": "kitchen"})


def test_from_env(tmp_path, monkeypatch):
    path = tmp_path / "env.json"
    EngineConfig().merge_patch({"voice_enabled": False}).save(path)
    monkeypatch.setenv(CONFIG_PATH_ENV, str(path))
    assert EngineConfig.from_env().voice_enabled is False

    monkeypatch.delenv(CONFIG_PATH_ENV)
    assert EngineConfig.from_env() == EngineConfig()
