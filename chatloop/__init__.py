"""chatloop - streaming chat completions with an agentic tool-calling loop."""

__version__ = "0.1.0"

from chatloop.config import Config
from chatloop.exceptions import ErrorKind, ExchangeError
from chatloop.orchestrator import Exchange, ExchangeResult, ExchangeState, TurnOrchestrator

__all__ = [
    "Config",
    "ErrorKind",
    "Exchange",
    "ExchangeError",
    "ExchangeResult",
    "ExchangeState",
    "TurnOrchestrator",
    "__version__",
]
