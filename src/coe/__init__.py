"""COE: coding orchestration engine.

Dispatches tickets from a ticket store to model-backed workers:
- FIFO task queue with atomic claim and idle-timeout escalation
- Task status state machine with full transition history
- Verification checklist with bounded retry governance
- Inactivity watchdog around every model call, with SSE streaming

Usage:
    # CLI
    $ coe run
    $ coe ask "how do I add a migration?"

    # Python API
    from coe import Orchestrator, Config, ModelClient, InMemoryTicketStore

    async with ModelClient(config.llm) as client:
        async with Orchestrator(store, client, config) as orchestrator:
            task = await orchestrator.get_next_task()
"""

try:
    from importlib.metadata import version as _get_version

    __version__ = _get_version("coe")
except Exception:
    __version__ = "0.0.0-dev"


# Core exports (lazy imports for faster startup)
def __getattr__(name: str):
    """Lazy import for main classes."""
    if name == "Orchestrator":
        from .orchestrator.service import Orchestrator

        return Orchestrator
    if name == "Config":
        from .core.config import Config

        return Config
    if name == "ModelClient":
        from .llm.client import ModelClient

        return ModelClient
    if name == "InMemoryTicketStore":
        from .tickets.store import InMemoryTicketStore

        return InMemoryTicketStore
    if name == "SqliteTicketStore":
        from .tickets.sqlite import SqliteTicketStore

        return SqliteTicketStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    "Config",
    "InMemoryTicketStore",
    "ModelClient",
    "Orchestrator",
    "SqliteTicketStore",
]
