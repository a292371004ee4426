from gauntlet.adapters.base import (
    AdapterExecutionError,
    AdapterHealth,
    AdapterProcessError,
    AdapterTimeoutError,
    CliReviewerAdapter,
    ReviewerAdapter,
)
from gauntlet.adapters.registry import ADAPTER_NAMES, build_adapter, build_adapters

__all__ = [
    "ADAPTER_NAMES",
    "AdapterExecutionError",
    "AdapterHealth",
    "AdapterProcessError",
    "AdapterTimeoutError",
    "CliReviewerAdapter",
    "ReviewerAdapter",
    "build_adapter",
    "build_adapters",
]
