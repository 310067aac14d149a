"""runwire: run execution orchestration for workflow workers."""

__version__ = "0.1.0"

from .config import RunwireConfig, load_config  # noqa: E402
from .runtime import Runtime, build_runtime  # noqa: E402
from .state import RunState, WorkOrderState  # noqa: E402
from .transports import get_transport  # noqa: E402

__all__ = [
    "RunState",
    "Runtime",
    "RunwireConfig",
    "WorkOrderState",
    "build_runtime",
    "get_transport",
    "load_config",
]
