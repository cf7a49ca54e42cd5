"""
╔══════════════════════════════════════════════════════════════╗
║      HELM — Brain: Model Client Contract                     ║
╠══════════════════════════════════════════════════════════════╣
║  The loops talk to a language model only through this        ║
║  interface. Provider SDKs live behind it, in the host app.   ║
║                                                              ║
║    ask()                        — free-text turn             ║
║    ask_with_tools()             — structured tool-call turn  ║
║    continue_with_tool_results() — follow-up turn             ║
║    decide_action()              — Computer-Use turn          ║
║    ask_with_vision()            — screenshot + prompt        ║
╚══════════════════════════════════════════════════════════════╝
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List

from brain.tool_parser import ToolCall


@dataclass
class ModelTurn:
    """One structured-protocol reply: prose plus zero or more tool calls.

    `state` is opaque to the loop; the client hands it back to itself
    in continue_with_tool_results() to keep provider-side context.
    """
    text: str = ""
    calls: List[ToolCall] = field(default_factory=list)
    state: Any = None


@dataclass
class ToolResultMessage:
    call_id: str
    name: str
    content: str
    is_error: bool = False


class ModelClient(ABC):

    @abstractmethod
    def ask(self, messages, system=None) -> str:
        """Free-text completion over a list of {"role", "content"} messages."""

    def ask_with_tools(self, messages, tool_defs, system=None) -> ModelTurn:
        raise NotImplementedError(f"{type(self).__name__} does not support structured tool calls")

    def continue_with_tool_results(self, state, results, tool_defs) -> ModelTurn:
        raise NotImplementedError(f"{type(self).__name__} does not support structured tool calls")

    def supports_computer_use(self) -> bool:
        return False

    def decide_action(self, system, messages, display):
        """Return a list of ComputerStep for the next Computer-Use turn.

        `display` is (width, height) of the screenshot the model sees.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support Computer-Use")

    def ask_with_vision(self, prompt, capture, system=None) -> str:
        raise NotImplementedError(f"{type(self).__name__} does not support vision")


# ─────────────────────────────────────────────
#  Model-call failure classification
# ─────────────────────────────────────────────

_ERROR_MARKERS = (
    ("rate_limit", ("rate_limit", "rate limit", "429", "too many requests", "overloaded")),
    ("quota", ("insufficient_quota", "quota", "spend_limit", "spend limit", "billing", "credit")),
    ("auth", ("401", "403", "unauthorized", "forbidden", "invalid api key", "invalid_api_key",
              "authentication", "permission")),
    ("timeout", ("timeout", "timed out", "deadline")),
    ("network", ("connection", "network", "unreachable", "dns", "socket", "reset by peer", "503", "502")),
)


def classify_model_error(exc) -> str:
    """Bucket a model-call exception: rate_limit, quota, auth, timeout, network, unknown."""
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, ConnectionError):
        return "network"
    err_str = f"{type(exc).__name__} {exc}".lower()
    for kind, markers in _ERROR_MARKERS:
        if any(m in err_str for m in markers):
            return kind
    return "unknown"


def describe_model_error(kind: str) -> str:
    return {
        "rate_limit": "The model provider is rate-limiting requests.",
        "quota": "The model provider account is out of quota.",
        "auth": "The model provider rejected the credentials.",
        "timeout": "The model call timed out.",
        "network": "The model provider could not be reached.",
    }.get(kind, "The model call failed.")
