"""Configuration management for coe."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from . import defaults as D


@dataclass
class LLMConfig:
    """OpenAI-compatible model service settings."""

    endpoint: str = D.DEFAULT_LLM_ENDPOINT
    model: str = D.DEFAULT_LLM_MODEL
    timeout_seconds: int = D.DEFAULT_LLM_TIMEOUT
    max_tokens: int = D.DEFAULT_LLM_MAX_TOKENS
    startup_timeout_seconds: int = D.DEFAULT_LLM_STARTUP_TIMEOUT
    temperature: float = D.DEFAULT_LLM_TEMPERATURE
    context_limit: int = D.DEFAULT_LLM_CONTEXT_LIMIT
    trim_fraction: float = D.DEFAULT_LLM_TRIM_FRACTION
    keep_exchanges: int = D.DEFAULT_LLM_KEEP_EXCHANGES


@dataclass
class TimeoutGuardConfig:
    """Inactivity watchdog for model calls."""

    max_response_seconds: float = D.DEFAULT_MAX_RESPONSE_SECONDS
    watchdog_interval: float = D.DEFAULT_WATCHDOG_INTERVAL
    create_ticket_on_timeout: bool = D.DEFAULT_CREATE_TICKET_ON_TIMEOUT
    ticket_priority: int = D.DEFAULT_TIMEOUT_TICKET_PRIORITY


@dataclass
class OrchestratorConfig:
    """Queue dispatch settings."""

    task_timeout_seconds: float = D.DEFAULT_TASK_TIMEOUT_SECONDS
    escalation_priority: int = D.DEFAULT_ESCALATION_PRIORITY


@dataclass
class VerificationConfig:
    """Verification checks and retry governance."""

    stability_delay: float = D.DEFAULT_STABILITY_DELAY
    max_stability_wait: float = D.DEFAULT_MAX_STABILITY_WAIT
    test_command: str = D.DEFAULT_TEST_COMMAND
    lint_command: str = D.DEFAULT_LINT_COMMAND
    build_command: str = D.DEFAULT_BUILD_COMMAND
    type_check_command: str = D.DEFAULT_TYPE_CHECK_COMMAND
    coverage_command: str = D.DEFAULT_COVERAGE_COMMAND
    coverage_threshold: int = D.DEFAULT_COVERAGE_THRESHOLD
    max_retry_cycles: int = D.DEFAULT_MAX_RETRY_CYCLES
    check_timeout: float = D.DEFAULT_CHECK_TIMEOUT
    working_dir: Path | None = None


@dataclass
class StoreConfig:
    """Ticket store backend."""

    backend: str = D.DEFAULT_STORE_BACKEND
    db_path: str = D.DEFAULT_DB_PATH

    @property
    def resolved_db_path(self) -> Path:
        return Path(self.db_path).expanduser()


# YAML section name -> (Config attribute, field coercions)
_SECTIONS: dict[str, tuple[str, dict[str, type]]] = {
    "llm": (
        "llm",
        {
            "endpoint": str,
            "model": str,
            "timeout_seconds": int,
            "max_tokens": int,
            "startup_timeout_seconds": int,
            "temperature": float,
            "context_limit": int,
            "trim_fraction": float,
            "keep_exchanges": int,
        },
    ),
    "timeout": (
        "timeout",
        {
            "max_response_seconds": float,
            "watchdog_interval": float,
            "create_ticket_on_timeout": bool,
            "ticket_priority": int,
        },
    ),
    "orchestrator": (
        "orchestrator",
        {
            "task_timeout_seconds": float,
            "escalation_priority": int,
        },
    ),
    "verification": (
        "verification",
        {
            "stability_delay": float,
            "max_stability_wait": float,
            "test_command": str,
            "lint_command": str,
            "build_command": str,
            "type_check_command": str,
            "coverage_command": str,
            "coverage_threshold": int,
            "max_retry_cycles": int,
            "check_timeout": float,
        },
    ),
    "store": (
        "store",
        {
            "backend": str,
            "db_path": str,
        },
    ),
}


@dataclass
class Config:
    """Main application configuration."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    timeout: TimeoutGuardConfig = field(default_factory=TimeoutGuardConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    # Standard paths
    USER_CONFIG_DIR: Path = Path.home() / ".coe"
    USER_CONFIG_FILE: Path = USER_CONFIG_DIR / "config.yaml"

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """Load config from file and environment variables.

        Priority (highest wins):
          1. Environment variables (COE_LLM_ENDPOINT, COE_TASK_TIMEOUT, etc.)
          2. Config file (~/.coe/config.yaml or custom path)
          3. Defaults

        Args:
            config_path: Optional path to a YAML config file.

        Returns:
            Populated Config instance.
        """
        config = cls()
        file_path = config_path or cls.USER_CONFIG_FILE

        if file_path.exists():
            try:
                config._merge_from_file(file_path)
            except (yaml.YAMLError, OSError, ValueError, TypeError):
                pass

        config._apply_env_overrides()
        return config

    def _merge_from_file(self, path: Path) -> None:
        """Merge configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        for section_name, (attr, coercions) in _SECTIONS.items():
            section = data.get(section_name) or {}
            target = getattr(self, attr)
            for key, kind in coercions.items():
                if key in section:
                    setattr(target, key, kind(section[key]))

        verification = data.get("verification") or {}
        if "working_dir" in verification:
            self.verification.working_dir = Path(verification["working_dir"]).expanduser()

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        if endpoint := os.environ.get("COE_LLM_ENDPOINT"):
            self.llm.endpoint = endpoint
        if model := os.environ.get("COE_LLM_MODEL"):
            self.llm.model = model
        if env_llm_timeout := os.environ.get("COE_LLM_TIMEOUT"):
            self.llm.timeout_seconds = int(env_llm_timeout)
        if env_max_response := os.environ.get("COE_MAX_RESPONSE_SECONDS"):
            self.timeout.max_response_seconds = float(env_max_response)
        if env_task_timeout := os.environ.get("COE_TASK_TIMEOUT"):
            self.orchestrator.task_timeout_seconds = float(env_task_timeout)
        if env_test_command := os.environ.get("COE_TEST_COMMAND"):
            self.verification.test_command = env_test_command
        if env_max_retries := os.environ.get("COE_MAX_RETRY_CYCLES"):
            self.verification.max_retry_cycles = int(env_max_retries)
        if backend := os.environ.get("COE_STORE_BACKEND"):
            self.store.backend = backend
        if db_path := os.environ.get("COE_DB_PATH"):
            self.store.db_path = db_path
        if os.environ.get("COE_NO_TIMEOUT_TICKETS", "").lower() in ("1", "true", "yes"):
            self.timeout.create_ticket_on_timeout = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize the file-backed sections."""
        data: dict[str, Any] = {}
        for section_name, (attr, coercions) in _SECTIONS.items():
            target = getattr(self, attr)
            data[section_name] = {key: getattr(target, key) for key in coercions}
        if self.verification.working_dir:
            data["verification"]["working_dir"] = str(self.verification.working_dir)
        return data

    def save(self, config_path: Path | None = None) -> None:
        """Save current config to file.

        Args:
            config_path: Optional path override.
        """
        file_path = config_path or self.USER_CONFIG_FILE
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)
