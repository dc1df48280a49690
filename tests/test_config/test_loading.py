from pathlib import Path

import pytest
from pydantic import ValidationError

import colloquy.config as config_module
from colloquy.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: ollama\n"
            "  model: qwen3:32b\n"
            "  max_context_tokens: 32768\n"
            "tool_loop:\n"
            "  max_iterations: 4\n"
            "  on_exhausted: raise\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen3:32b"
    assert cfg.model.max_context_tokens == 32768
    assert cfg.tool_loop.max_iterations == 4
    assert cfg.tool_loop.on_exhausted == "raise"


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "retry:\n"
            "  max_attempts: 5\n"
            "  initial_delay: 0.5\n"
            "context:\n"
            "  buffer_fraction: 0.2\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.retry.max_attempts == 5
    assert cfg.retry.initial_delay == 0.5
    assert cfg.context.buffer_fraction == 0.2


def test_defaults_when_no_config_file(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.model.provider == "ollama"
    assert cfg.context.buffer_fraction == 0.1
    assert cfg.context.truncation_threshold == 0.9
    assert cfg.retry.max_attempts == 3
    assert cfg.retry.max_delay == 60.0
    assert cfg.tool_loop.max_iterations == 10
    assert cfg.tool_loop.on_exhausted == "return_last"
    assert cfg.conversation.default_system_prompt == "You are a helpful AI assistant."
    assert set(cfg.session.model_dump()) == {"path", "auto_save"}


def test_env_vars_fill_sections_missing_from_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text("model:\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setenv("COLLOQUY_RETRY__MAX_ATTEMPTS", "7")
    monkeypatch.setenv("COLLOQUY_TOOL_LOOP__MAX_ITERATIONS", "2")

    cfg = Config.load()

    assert cfg.model.model == "llama3.2"
    assert cfg.retry.max_attempts == 7
    assert cfg.tool_loop.max_iterations == 2


def test_invalid_values_are_rejected(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text("context:\n  buffer_fraction: 1.5\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        Config.load()


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.retry.max_attempts = 6
    path = tmp_path / "out" / "config.yaml"

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.retry.max_attempts == 6
    assert loaded.session.auto_save is True


def test_get_config_returns_set_instance():
    original = config_module._config
    try:
        cfg = Config()
        config_module.set_config(cfg)
        assert config_module.get_config() is cfg
    finally:
        config_module._config = original
