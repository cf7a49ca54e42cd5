"""
╔══════════════════════════════════════════════════════════════╗
║      HELM — Hands: Tool Execution Contract                   ║
╠══════════════════════════════════════════════════════════════╣
║  What the loops need from "the thing that runs tools":       ║
║    - ToolOutcome: normalized result of one execution         ║
║    - ToolExecutor: the abstract collaborator                 ║
║    - ToolRegistry: name → handler map, never raises          ║
╚══════════════════════════════════════════════════════════════╝
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("HELM")


@dataclass
class ToolOutcome:
    """Result of executing one tool call. Always treated as data."""
    success: bool
    payload: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, payload=None):
        return cls(success=True, payload=payload)

    @classmethod
    def fail(cls, error, payload=None):
        return cls(success=False, payload=payload, error=str(error))

    @classmethod
    def coerce(cls, value):
        """Normalize whatever a handler returned into a ToolOutcome.

        Accepts a ToolOutcome, the {"success", "content", "error"} dict
        convention used by the hands modules, or a bare value (success).
        """
        if isinstance(value, ToolOutcome):
            return value
        if isinstance(value, dict) and "success" in value:
            success = bool(value.get("success"))
            payload = value.get("content", value.get("payload"))
            error = value.get("error")
            if success:
                return cls(success=True, payload=payload)
            # {"error": True, "content": "msg"} carries the message in content
            if error is True or error is None or error is False:
                error = str(payload) if payload is not None else "Tool reported failure"
            return cls(success=False, payload=payload, error=str(error))
        return cls(success=True, payload=value)

    def to_dict(self):
        d = {"success": self.success, "content": self.payload}
        if self.error:
            d["error"] = self.error
        return d


class ToolExecutor(ABC):
    """Executes a named tool. Implementations may raise; loops catch."""

    @abstractmethod
    def execute(self, name: str, arguments: Dict[str, Any]) -> ToolOutcome:
        ...


class ToolRegistry(ToolExecutor):
    """Capability-keyed tool executor.

    Handlers are plain callables taking the arguments as keyword args
    (or a single dict when registered with ``pass_dict=True``). Unknown
    tools and handler exceptions come back as failed outcomes.
    """

    def __init__(self):
        self._handlers: Dict[str, Callable] = {}
        self._pass_dict: Dict[str, bool] = {}
        self._descriptions: Dict[str, str] = {}

    def register(self, name, handler, description="", pass_dict=False):
        if not name:
            raise ValueError("Tool name must be non-empty")
        self._handlers[name] = handler
        self._pass_dict[name] = pass_dict
        self._descriptions[name] = description
        return handler

    def tool(self, name=None, description="", pass_dict=False):
        """Decorator form of register()."""
        def wrap(fn):
            self.register(name or fn.__name__, fn, description, pass_dict)
            return fn
        return wrap

    def unregister(self, name):
        self._handlers.pop(name, None)
        self._pass_dict.pop(name, None)
        self._descriptions.pop(name, None)

    def has(self, name):
        return name in self._handlers

    @property
    def names(self):
        return sorted(self._handlers)

    def describe(self):
        """Tool list for prompts: one '- name: description' line each."""
        return "\n".join(
            f"- {n}: {self._descriptions[n]}" if self._descriptions[n] else f"- {n}"
            for n in self.names
        )

    def execute(self, name, arguments):
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning(f"🔧 Unknown tool requested: {name}")
            return ToolOutcome.fail(f"Unknown tool: {name}")
        arguments = arguments or {}
        try:
            if self._pass_dict[name]:
                result = handler(arguments)
            else:
                result = handler(**arguments)
        except Exception as e:
            logger.warning(f"  ❌ {name} raised: {e}")
            return ToolOutcome.fail(f"Tool execution error: {e}")
        return ToolOutcome.coerce(result)
