"""Default configuration values for COE.

All configurable defaults are defined here. These can be overridden by:
1. Config file (~/.coe/config.yaml or an explicit --config path)
2. Environment variables (COE_*)

Priority (highest to lowest):
Environment > Config file > Defaults
"""

from __future__ import annotations

# =============================================================================
# MODEL SERVICE
# =============================================================================

# OpenAI-compatible endpoint (LM Studio default port)
DEFAULT_LLM_ENDPOINT: str = "http://127.0.0.1:1234/v1"

DEFAULT_LLM_MODEL: str = "ministral-3-14b-reasoning"

# Per-request HTTP timeout in seconds
DEFAULT_LLM_TIMEOUT: int = 60

DEFAULT_LLM_MAX_TOKENS: int = 2048

# How long to wait for the model server to come up on first use
DEFAULT_LLM_STARTUP_TIMEOUT: int = 300

DEFAULT_LLM_TEMPERATURE: float = 0.7

# Context window of the model, in tokens
DEFAULT_LLM_CONTEXT_LIMIT: int = 8192

# Trim history once the estimate exceeds this fraction of the context limit
DEFAULT_LLM_TRIM_FRACTION: float = 0.8

# Exchanges (user + assistant pairs) kept after trimming
DEFAULT_LLM_KEEP_EXCHANGES: int = 5

# =============================================================================
# TIMEOUT GUARD
# =============================================================================

# Inactivity threshold before a model call is cancelled
DEFAULT_MAX_RESPONSE_SECONDS: float = 45.0

# How often the watchdog compares now against last activity
DEFAULT_WATCHDOG_INTERVAL: float = 5.0

DEFAULT_CREATE_TICKET_ON_TIMEOUT: bool = True

DEFAULT_TIMEOUT_TICKET_PRIORITY: int = 2

MIN_RESPONSE_SECONDS: float = 5.0
MAX_RESPONSE_SECONDS: float = 300.0

# =============================================================================
# ORCHESTRATOR
# =============================================================================

# Idle threshold for a picked task before it is marked blocked
DEFAULT_TASK_TIMEOUT_SECONDS: float = 30.0

DEFAULT_ESCALATION_PRIORITY: int = 2

# =============================================================================
# VERIFICATION
# =============================================================================

# Wait for file changes to settle before running checks
DEFAULT_STABILITY_DELAY: float = 60.0

# Upper bound on the stability wait, even if changes keep arriving
DEFAULT_MAX_STABILITY_WAIT: float = 300.0

DEFAULT_TEST_COMMAND: str = "npm test"
DEFAULT_LINT_COMMAND: str = ""
DEFAULT_BUILD_COMMAND: str = ""
DEFAULT_TYPE_CHECK_COMMAND: str = ""

# Coverage run, e.g. "pytest --cov -q"; empty skips the coverage check
DEFAULT_COVERAGE_COMMAND: str = ""

# Minimum coverage percentage
DEFAULT_COVERAGE_THRESHOLD: int = 80

DEFAULT_MAX_RETRY_CYCLES: int = 3

# Seconds before a single check command is killed
DEFAULT_CHECK_TIMEOUT: float = 600.0

# =============================================================================
# TICKET STORE
# =============================================================================

# "memory" or "sqlite"
DEFAULT_STORE_BACKEND: str = "memory"

DEFAULT_DB_PATH: str = "~/.coe/tickets.db"
