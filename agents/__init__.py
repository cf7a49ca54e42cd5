"""
╔══════════════════════════════════════════╗
║       HELM — Agents                      ║
╚══════════════════════════════════════════╝

Long-running workers built on the brain's tool loop:
  - SubAgentManager    — isolated background tool loops
  - TakeControlEngine  — live desktop control sessions
"""

from agents.sub_agent import (
    SubAgentCapacityError,
    SubAgentManager,
    SubAgentResult,
    SubAgentStatus,
)
from agents.take_control import (
    TakeControlEngine,
    TakeControlRejected,
    TakeControlResult,
    detect_take_control_intent,
)

__all__ = [
    "SubAgentCapacityError",
    "SubAgentManager",
    "SubAgentResult",
    "SubAgentStatus",
    "TakeControlEngine",
    "TakeControlRejected",
    "TakeControlResult",
    "detect_take_control_intent",
]
