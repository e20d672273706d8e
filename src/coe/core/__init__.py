"""Core configuration for coe."""

from .config import (
    Config,
    LLMConfig,
    OrchestratorConfig,
    StoreConfig,
    TimeoutGuardConfig,
    VerificationConfig,
)

__all__ = [
    "Config",
    "LLMConfig",
    "OrchestratorConfig",
    "StoreConfig",
    "TimeoutGuardConfig",
    "VerificationConfig",
]
