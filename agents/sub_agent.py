"""
╔══════════════════════════════════════════════════════════════╗
║      HELM — Agents: Sub-Agent Manager                        ║
╠══════════════════════════════════════════════════════════════╣
║  Runs isolated tool loops in the background.                 ║
║                                                              ║
║    spawn()  — start a sub-agent, returns its id immediately  ║
║    kill()   — request abort (honored at the next checkpoint) ║
║    steer()  — queue an instruction for its next model turn   ║
║                                                              ║
║  Each sub-agent owns its conversation, its loop record and   ║
║  its abort flag. The manager owns only the active map and    ║
║  the completed buffer, both behind one lock.                 ║
║                                                              ║
║  At most `max_concurrent` run at once — the next spawn is    ║
║  rejected outright, never queued.                            ║
╚══════════════════════════════════════════════════════════════╝
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from brain.conversation import Conversation
from brain.observer import LoopObserver, safe_observer
from brain.tool_loop import LEGACY_TOOL_PROMPT, ToolLoopEngine
from utils.config import DetectorConfig, LoopConfig, SubAgentConfig
from utils.event_bus import event_bus

logger = logging.getLogger("HELM")

SUB_AGENT_PROMPT = """You are a focused sub-agent. You work on ONE task in the background and report the result.
Stay on the task. Do not ask the user questions; nobody will answer them.
Your final reply is your report: make it complete and self-contained."""

# Finished agents kept around for get_agent()/wait()
_FINISHED_KEEP = 100


class SubAgentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


class SubAgentCapacityError(Exception):
    """Raised by spawn() when the concurrency limit is reached."""


@dataclass
class SubAgentResult:
    id: str
    task: str
    status: SubAgentStatus
    output: str
    tools_used: List[str] = field(default_factory=list)
    iterations: int = 0
    duration_ms: int = 0
    error: Optional[str] = None


@dataclass
class SubAgentInfo:
    """Read-only snapshot of a sub-agent."""
    id: str
    task: str
    status: SubAgentStatus
    iterations: int
    started_at: float
    allowed_tools: Optional[List[str]] = None

    @property
    def elapsed(self):
        return time.time() - self.started_at


@dataclass
class _SubAgent:
    id: str
    task: str
    allowed_tools: Optional[List[str]]
    max_iterations: int
    status: SubAgentStatus = SubAgentStatus.PENDING
    conversation: Conversation = field(default_factory=Conversation)
    iterations: int = 0
    started_at: float = field(default_factory=time.time)
    abort: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    on_complete: Optional[Callable] = None
    result: Optional[SubAgentResult] = None

    def info(self):
        return SubAgentInfo(
            id=self.id,
            task=self.task,
            status=self.status,
            iterations=self.iterations,
            started_at=self.started_at,
            allowed_tools=list(self.allowed_tools) if self.allowed_tools is not None else None,
        )


class _CountingObserver(LoopObserver):
    """Counts tool calls for a sub-agent and forwards to the caller's observer."""

    def __init__(self, agent, inner):
        self._agent = agent
        self._inner = safe_observer(inner)

    def on_tool_started(self, name, arguments):
        self._inner.on_tool_started(name, arguments)

    def on_tool_finished(self, name, outcome):
        self._agent.iterations += 1
        self._inner.on_tool_finished(name, outcome)

    def on_text(self, text):
        self._inner.on_text(text)

    def on_status(self, status):
        self._inner.on_status(status)


class SubAgentManager:

    def __init__(self, model, tools, config: Optional[SubAgentConfig] = None,
                 loop_config: Optional[LoopConfig] = None):
        self.config = config or SubAgentConfig()
        self.loop_config = loop_config or LoopConfig()
        self.engine = ToolLoopEngine(model, tools, self.loop_config)
        self._lock = threading.Lock()
        self._active: "OrderedDict[str, _SubAgent]" = OrderedDict()
        self._finished: "OrderedDict[str, _SubAgent]" = OrderedDict()
        self._completed: List[SubAgentResult] = []
        self._completion_callback: Optional[Callable] = None

    # ── Lifecycle ──

    def spawn(self, task, allowed_tools=None, system_context=None, max_iterations=None,
              observer=None, on_complete=None) -> str:
        """Start a sub-agent on its own thread and return its id."""
        with self._lock:
            if len(self._active) >= self.config.max_concurrent:
                raise SubAgentCapacityError(
                    f"Sub-agent limit reached ({self.config.max_concurrent} running). "
                    f"Wait for one to finish or kill one first."
                )
            agent = _SubAgent(
                id=f"subagent-{uuid.uuid4().hex[:8]}",
                task=task,
                allowed_tools=list(allowed_tools) if allowed_tools is not None else None,
                max_iterations=max_iterations or self.config.default_max_iterations,
                on_complete=on_complete,
            )
            self._active[agent.id] = agent
            agent.status = SubAgentStatus.RUNNING

        thread = threading.Thread(
            target=self._run,
            args=(agent, system_context, observer),
            name=f"helm-{agent.id}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            with self._lock:
                self._active.pop(agent.id, None)
            logger.error(f"❌ Could not start {agent.id}: {e}")
            raise

        logger.info(f"🤖 Spawned {agent.id}: {task[:80]}")
        event_bus.emit("subagent_started", {"id": agent.id, "task": task[:200]})
        return agent.id

    def _system_prompt(self, agent, system_context):
        parts = [SUB_AGENT_PROMPT]
        if system_context:
            parts.append(system_context)
        if agent.allowed_tools is not None:
            parts.append("Tools you may use: " + (", ".join(agent.allowed_tools) or "none"))
        parts.append(LEGACY_TOOL_PROMPT)
        return "\n\n".join(parts)

    def _run(self, agent, system_context, observer):
        start = time.time()
        detector = DetectorConfig(
            warning_iterations=self.config.warning_iterations,
            critical_iterations=agent.max_iterations,
            repeat_tolerance=self.loop_config.detector.repeat_tolerance,
            ping_pong_cycles=self.loop_config.detector.ping_pong_cycles,
            same_call_repeat_max=self.loop_config.detector.same_call_repeat_max,
        )
        tools_used, error = [], None
        try:
            loop = self.engine.run_tool_loop(
                agent.task,
                conversation=agent.conversation,
                system=self._system_prompt(agent, system_context),
                allowed_tools=agent.allowed_tools,
                observer=_CountingObserver(agent, observer),
                cancel=agent.abort,
                detector_config=detector,
                output_limit=self.config.output_limit,
            )
            output, tools_used = loop.response, loop.tools_used
            if loop.cancelled:
                status = SubAgentStatus.KILLED
            elif loop.error is not None:
                status, error = SubAgentStatus.FAILED, loop.error
            else:
                status = SubAgentStatus.COMPLETED
        except Exception as e:
            logger.error(f"❌ {agent.id} crashed: {e}")
            status, error = SubAgentStatus.FAILED, str(e)
            output = f"Sub-agent failed: {e}"

        result = SubAgentResult(
            id=agent.id,
            task=agent.task,
            status=status,
            output=output,
            tools_used=tools_used,
            iterations=agent.iterations,
            duration_ms=int((time.time() - start) * 1000),
            error=error,
        )
        self._finalize(agent, result)

    def _finalize(self, agent, result):
        with self._lock:
            agent.status = result.status
            agent.result = result
            self._active.pop(agent.id, None)
            self._finished[agent.id] = agent
            while len(self._finished) > _FINISHED_KEEP:
                self._finished.popitem(last=False)
            self._completed.append(result)
            global_cb = self._completion_callback

        icon = {"completed": "✅", "killed": "⏹️"}.get(result.status.value, "❌")
        logger.info(f"{icon} {agent.id} {result.status.value} after {result.iterations} tool call(s)")
        event_bus.emit("subagent_completed", {
            "id": agent.id,
            "status": result.status.value,
            "iterations": result.iterations,
            "duration_ms": result.duration_ms,
        })

        for cb in (agent.on_complete, global_cb):
            if cb is None:
                continue
            try:
                cb(result)
            except Exception as e:
                logger.warning(f"⚠️ Completion callback for {agent.id} failed: {e}")
        agent.done.set()

    def kill(self, agent_id) -> bool:
        """Request abort. False if the id is unknown or not running."""
        with self._lock:
            agent = self._active.get(agent_id)
            if agent is None or agent.status != SubAgentStatus.RUNNING:
                return False
            agent.abort.set()
        logger.info(f"⏹️ Kill requested for {agent_id}")
        return True

    def kill_all(self) -> int:
        with self._lock:
            agents = [a for a in self._active.values() if a.status == SubAgentStatus.RUNNING]
            for a in agents:
                a.abort.set()
        return len(agents)

    def steer(self, agent_id, instruction) -> bool:
        """Queue an instruction; the agent sees it before its next model call."""
        with self._lock:
            agent = self._active.get(agent_id)
            if agent is None or agent.status != SubAgentStatus.RUNNING:
                return False
        agent.conversation.inject(f"[STEER] {instruction}")
        logger.info(f"🧭 Steered {agent_id}: {instruction[:80]}")
        return True

    # ── Queries ──

    def get_agent(self, agent_id) -> Optional[SubAgentInfo]:
        with self._lock:
            agent = self._active.get(agent_id) or self._finished.get(agent_id)
            return agent.info() if agent else None

    def list_active(self) -> List[SubAgentInfo]:
        with self._lock:
            return [a.info() for a in self._active.values()]

    def consume_completed_results(self) -> List[SubAgentResult]:
        """Return and clear every result finished since the last call."""
        with self._lock:
            results, self._completed = self._completed, []
        return results

    def set_completion_callback(self, callback):
        with self._lock:
            self._completion_callback = callback

    def build_context(self) -> str:
        """Summary of background work for the main agent's prompt."""
        with self._lock:
            active = [a.info() for a in self._active.values()]
            pending = len(self._completed)
        if not active and not pending:
            return ""
        lines = ["## Background sub-agents"]
        for info in active:
            lines.append(
                f"- {info.id} [{info.status.value}, {info.iterations} tool calls, "
                f"{int(info.elapsed)}s]: {info.task[:100]}"
            )
        if pending:
            lines.append(f"- {pending} finished result(s) waiting to be reported")
        return "\n".join(lines)

    def wait(self, agent_id, timeout=None) -> Optional[SubAgentResult]:
        """Block until the agent finishes. None on timeout or unknown id."""
        with self._lock:
            agent = self._active.get(agent_id) or self._finished.get(agent_id)
        if agent is None or not agent.done.wait(timeout):
            return None
        return agent.result

    def wait_all(self, timeout=None) -> bool:
        deadline = None if timeout is None else time.time() + timeout
        with self._lock:
            agents = list(self._active.values())
        for agent in agents:
            remaining = None if deadline is None else max(0.0, deadline - time.time())
            if not agent.done.wait(remaining):
                return False
        return True
