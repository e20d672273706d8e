"""Tests for Config loading and saving."""

from __future__ import annotations

from pathlib import Path

import yaml

from coe.core.config import Config


class TestConfigDefaults:
    """Test default config values."""

    def test_defaults(self):
        config = Config()
        assert config.llm.endpoint == "http://127.0.0.1:1234/v1"
        assert config.llm.model == "ministral-3-14b-reasoning"
        assert config.llm.timeout_seconds == 60
        assert config.llm.max_tokens == 2048
        assert config.timeout.max_response_seconds == 45.0
        assert config.timeout.create_ticket_on_timeout is True
        assert config.orchestrator.task_timeout_seconds == 30.0
        assert config.verification.max_retry_cycles == 3
        assert config.verification.coverage_threshold == 80
        assert config.store.backend == "memory"

    def test_db_path_expands_home(self):
        config = Config()
        config.store.db_path = "~/tickets.db"
        assert config.store.resolved_db_path == Path.home() / "tickets.db"


class TestConfigLoad:
    """Test loading config from file and environment."""

    def test_load_from_nonexistent_file_uses_defaults(self, tmp_path):
        config = Config.load(config_path=tmp_path / "nonexistent.yaml")
        assert config.llm.endpoint == "http://127.0.0.1:1234/v1"
        assert config.orchestrator.task_timeout_seconds == 30.0

    def test_load_from_yaml_file(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            yaml.safe_dump(
                {
                    "llm": {"endpoint": "http://gpu-box:8080/v1", "max_tokens": 512},
                    "timeout": {"max_response_seconds": 20, "create_ticket_on_timeout": False},
                    "orchestrator": {"task_timeout_seconds": 90},
                    "verification": {
                        "test_command": "pytest -q",
                        "max_retry_cycles": 5,
                        "working_dir": "~/project",
                    },
                    "store": {"backend": "sqlite", "db_path": "/tmp/coe.db"},
                }
            )
        )

        config = Config.load(config_path=config_file)
        assert config.llm.endpoint == "http://gpu-box:8080/v1"
        assert config.llm.max_tokens == 512
        assert config.llm.model == "ministral-3-14b-reasoning"
        assert config.timeout.max_response_seconds == 20.0
        assert config.timeout.create_ticket_on_timeout is False
        assert config.orchestrator.task_timeout_seconds == 90.0
        assert config.verification.test_command == "pytest -q"
        assert config.verification.max_retry_cycles == 5
        assert config.verification.working_dir == Path.home() / "project"
        assert config.store.backend == "sqlite"

    def test_env_vars_override_file(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.safe_dump({"llm": {"endpoint": "http://from-file/v1"}}))

        monkeypatch.setenv("COE_LLM_ENDPOINT", "http://from-env/v1")
        monkeypatch.setenv("COE_MAX_RESPONSE_SECONDS", "12.5")
        monkeypatch.setenv("COE_TASK_TIMEOUT", "60")
        monkeypatch.setenv("COE_MAX_RETRY_CYCLES", "1")
        monkeypatch.setenv("COE_NO_TIMEOUT_TICKETS", "true")

        config = Config.load(config_path=config_file)
        assert config.llm.endpoint == "http://from-env/v1"
        assert config.timeout.max_response_seconds == 12.5
        assert config.orchestrator.task_timeout_seconds == 60.0
        assert config.verification.max_retry_cycles == 1
        assert config.timeout.create_ticket_on_timeout is False

    def test_env_vars_without_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COE_STORE_BACKEND", "sqlite")
        monkeypatch.setenv("COE_DB_PATH", "/var/lib/coe/tickets.db")

        config = Config.load(config_path=tmp_path / "nonexistent.yaml")
        assert config.store.backend == "sqlite"
        assert config.store.db_path == "/var/lib/coe/tickets.db"

    def test_load_handles_malformed_yaml(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("this is: not: valid: yaml: [[[")

        # Should not raise, just use defaults
        config = Config.load(config_path=config_file)
        assert config.llm.endpoint == "http://127.0.0.1:1234/v1"

    def test_load_handles_bad_values(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.safe_dump({"llm": {"max_tokens": "lots"}}))

        config = Config.load(config_path=config_file)
        assert config.llm.max_tokens == 2048


class TestConfigSave:
    def test_save_and_reload(self, tmp_path):
        config_file = tmp_path / "nested" / "config.yaml"
        config = Config()
        config.llm.model = "qwen2.5-coder"
        config.verification.lint_command = "ruff check ."

        config.save(config_file)
        reloaded = Config.load(config_path=config_file)

        assert reloaded.llm.model == "qwen2.5-coder"
        assert reloaded.verification.lint_command == "ruff check ."
        assert yaml.safe_load(config_file.read_text())["store"]["backend"] == "memory"
