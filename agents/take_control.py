"""
╔══════════════════════════════════════════════════════════════╗
║      HELM — Agents: Take-Control Session Engine              ║
╠══════════════════════════════════════════════════════════════╣
║  Live desktop control:                                       ║
║     screenshot → model decides → mouse/keyboard → settle     ║
║     → screenshot → ...                                       ║
║                                                              ║
║  Two protocols:                                              ║
║    • structured Computer-Use — model returns action steps,   ║
║      we answer every action with a fresh screenshot          ║
║    • vision fallback — model sees a screenshot and replies   ║
║      with a ```tool block or TASK_COMPLETE                   ║
║                                                              ║
║  Safety:                                                     ║
║    - explicit confirmation required, one session at a time   ║
║    - fixed action budget per session                         ║
║    - old screenshots pruned from history (keep newest N)     ║
║    - stop() is honored between actions and during settles    ║
╚══════════════════════════════════════════════════════════════╝
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from brain.model import classify_model_error, describe_model_error
from brain.observer import safe_observer
from brain.tool_parser import parse_fenced_block, parse_tool_call
from hands.automation import ComputerStep, execute_computer_action
from hands.tools import ToolOutcome
from utils.config import TakeControlConfig
from utils.event_bus import event_bus

logger = logging.getLogger("HELM")

OUTCOME_COMPLETED = "completed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_BUDGET = "budget_exhausted"
OUTCOME_PROTOCOL = "protocol_failure"
OUTCOME_ERROR = "error"

TASK_COMPLETE = "TASK_COMPLETE"
SCREENSHOT_PLACEHOLDER = "[earlier screenshot removed]"

COMPUTER_USE_PROMPT = """You are controlling the user's desktop to complete a task.
You see the screen through screenshots. Use the computer tool to act: click, type, press keys, scroll, wait.
After every action you receive a fresh screenshot; check it before the next action.
Be precise with coordinates. When the task is finished, stop calling the tool and say what you did."""

VISION_PROMPT = """You are controlling the user's desktop to complete a task.
You see one screenshot per turn. Coordinates are in the screenshot's pixel space.
To act, reply with exactly one fenced block:

```tool
{"tool": "<tool name>", "params": {"x": 100, "y": 200}}
```

When the task is finished, reply with TASK_COMPLETE and a one-line summary."""

FORCEFUL_PROMPTS = (
    "Your last reply had no ```tool block. RESPOND ONLY WITH A ```tool BLOCK or TASK_COMPLETE.",
    "RESPOND ONLY WITH A ```tool BLOCK. No explanations. If the task is done, reply TASK_COMPLETE.",
)


class TakeControlRejected(Exception):
    """Raised when a session cannot start (not confirmed, already active, unavailable)."""


@dataclass
class TakeControlResult:
    outcome: str
    log: List[str] = field(default_factory=list)
    actions_taken: int = 0
    error: Optional[str] = None

    @property
    def success(self):
        return self.outcome == OUTCOME_COMPLETED

    @property
    def summary(self):
        return "\n".join(self.log)


@dataclass
class _Session:
    task: str
    cancel: threading.Event
    action_budget: int
    messages: list = field(default_factory=list)
    log: List[str] = field(default_factory=list)
    actions_taken: int = 0
    text_retries: int = 0
    capture: object = None


# ─────────────────────────────────────────────
#  Intent detection
# ─────────────────────────────────────────────

_TAKE_CONTROL_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\btake (over|control)\b",
        r"\bcontrol (my|the) (computer|mac|screen|desktop|pc|laptop)\b",
        r"\b(use|drive|operate) my (computer|mac|screen|desktop|pc|laptop)\b",
        r"\bdo it on my (screen|computer|desktop)\b",
    )
]

_WEB_INTENT = re.compile(
    r"\b(browse|browser|website|web ?page|web ?site|url|https?://|google|search (the )?(web|online|internet))\b",
    re.IGNORECASE,
)


def detect_take_control_intent(message) -> bool:
    """True when the user is asking for direct desktop control (not web browsing)."""
    if not message:
        return False
    if not any(p.search(message) for p in _TAKE_CONTROL_PATTERNS):
        return False
    return not _WEB_INTENT.search(message)


def extract_take_control_request(text) -> Optional[str]:
    """Task from a ```take_control {"task": ...} block in a model reply."""
    data = parse_fenced_block(text, "take_control")
    if not data:
        return None
    task = data.get("task")
    return task.strip() if isinstance(task, str) and task.strip() else None


# ─────────────────────────────────────────────
#  Screenshot pruning
# ─────────────────────────────────────────────

def _image_slots(messages):
    """(container_list, index) for every image block, oldest first."""
    slots = []
    for msg in messages:
        content = msg.get("content")
        if not isinstance(content, list):
            continue
        for i, block in enumerate(content):
            if not isinstance(block, dict):
                continue
            if block.get("type") == "image":
                slots.append((content, i))
            elif block.get("type") == "tool_result" and isinstance(block.get("content"), list):
                for j, inner in enumerate(block["content"]):
                    if isinstance(inner, dict) and inner.get("type") == "image":
                        slots.append((block["content"], j))
    return slots


def prune_screenshots(messages, keep=3) -> int:
    """Replace all but the newest `keep` images with a text placeholder.

    Mutates `messages` in place; returns how many images were replaced.
    """
    slots = _image_slots(messages)
    stale = slots[:-keep] if keep > 0 else slots
    for container, i in stale:
        container[i] = {"type": "text", "text": SCREENSHOT_PLACEHOLDER}
    return len(stale)


def _image_block(capture):
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": capture.mime_type, "data": capture.image},
    }


# ─────────────────────────────────────────────
#  Engine
# ─────────────────────────────────────────────

class TakeControlEngine:

    def __init__(self, model, tools, automation, config: Optional[TakeControlConfig] = None):
        self.model = model
        self.tools = tools
        self.automation = automation
        self.config = config or TakeControlConfig()
        self._lock = threading.Lock()
        self._active = False
        self._cancel: Optional[threading.Event] = None
        self._pending_task: Optional[str] = None

    # ── State ──

    def is_active(self):
        with self._lock:
            return self._active

    def stop(self) -> bool:
        """Cancel the running session. False when none is active."""
        with self._lock:
            if not self._active or self._cancel is None:
                return False
            self._cancel.set()
        logger.info("⏹️ Take-control stop requested")
        return True

    def set_pending_task(self, task):
        """Park a task that is waiting for the user's confirmation."""
        with self._lock:
            self._pending_task = task

    def consume_pending_task(self) -> Optional[str]:
        with self._lock:
            task, self._pending_task = self._pending_task, None
        return task

    # ── Entry point ──

    def start(self, task, observer=None, confirmed=False, cancel=None) -> TakeControlResult:
        if not confirmed:
            raise TakeControlRejected("Take-control requires explicit user confirmation")
        if not self.automation.is_available():
            raise TakeControlRejected("Desktop automation is not available")
        with self._lock:
            if self._active:
                raise TakeControlRejected("A take-control session is already active")
            self._active = True
            self._cancel = cancel if cancel is not None else threading.Event()
            session_cancel = self._cancel

        observer = safe_observer(observer)
        structured = self.model.supports_computer_use()
        session = _Session(
            task=task,
            cancel=session_cancel,
            action_budget=(self.config.structured_action_budget if structured
                           else self.config.vision_action_budget),
        )
        logger.info(f"🖥️ Take-control started ({'computer-use' if structured else 'vision'}): {task[:80]}")
        event_bus.emit("take_control_started", {"task": task[:200], "structured": structured})

        try:
            self.automation.begin_session()
            try:
                if structured:
                    result = self._run_structured(session, observer)
                else:
                    result = self._run_vision(session, observer)
            finally:
                self.automation.end_session()
        except Exception as e:
            logger.error(f"❌ Take-control session crashed: {e}")
            result = self._finish(session, OUTCOME_ERROR, f"Session error: {e}", error=str(e))
        finally:
            with self._lock:
                self._active = False
                self._cancel = None

        observer.on_status(result.outcome)
        event_bus.emit("take_control_finished", {
            "outcome": result.outcome,
            "actions_taken": result.actions_taken,
        })
        logger.info(f"🖥️ Take-control finished: {result.outcome} ({result.actions_taken} actions)")
        return result

    def _finish(self, session, outcome, message, error=None):
        session.log.append(message)
        return TakeControlResult(
            outcome=outcome,
            log=list(session.log),
            actions_taken=session.actions_taken,
            error=error,
        )

    def _model_error(self, session, e):
        kind = classify_model_error(e)
        logger.error(f"❌ Take-control model call failed ({kind}): {e}")
        return self._finish(session, OUTCOME_ERROR, f"⚠️ {describe_model_error(kind)}", error=str(e))

    def _settle(self, session, seconds) -> bool:
        """Wait for the UI to settle. False if cancelled meanwhile."""
        if seconds <= 0:
            return not session.cancel.is_set()
        return not session.cancel.wait(seconds)

    # ── Structured Computer-Use protocol ──

    def _run_structured(self, session, observer):
        cfg = self.config
        try:
            session.capture = self.automation.capture()
        except Exception as e:
            return self._finish(session, OUTCOME_ERROR, f"Screen capture failed: {e}", error=str(e))

        session.messages.append({"role": "user", "content": [
            {"type": "text", "text": f"Task: {session.task}"},
            _image_block(session.capture),
        ]})

        while True:
            if session.cancel.is_set():
                return self._finish(session, OUTCOME_CANCELLED, "Stopped by user.")
            if session.actions_taken >= session.action_budget:
                return self._finish(
                    session, OUTCOME_BUDGET,
                    f"Action budget of {session.action_budget} used up before the task finished.",
                )

            prune_screenshots(session.messages, cfg.keep_screenshots)
            display = (session.capture.width, session.capture.height)
            try:
                steps = self.model.decide_action(COMPUTER_USE_PROMPT, session.messages, display) or []
            except Exception as e:
                return self._model_error(session, e)

            if not steps:
                if session.actions_taken > 0:
                    return self._finish(session, OUTCOME_COMPLETED, "Done.")
                return self._finish(session, OUTCOME_PROTOCOL, "The model returned nothing to do.")

            assistant_blocks, result_blocks = [], []
            finished_text = None
            for step in steps:
                if step.kind == "text":
                    if step.text:
                        session.log.append(step.text)
                        observer.on_text(step.text)
                        assistant_blocks.append({"type": "text", "text": step.text})
                    continue
                if step.kind == "done":
                    finished_text = step.text or "Done."
                    continue
                if step.kind != "action" or step.action is None:
                    continue
                if not step.tool_use_id:
                    logger.warning(f"🖥️ Skipping {step.action.action}: no tool_use id to answer")
                    continue

                if session.cancel.is_set():
                    return self._finish(session, OUTCOME_CANCELLED, "Stopped by user.")
                if session.actions_taken >= session.action_budget:
                    return self._finish(
                        session, OUTCOME_BUDGET,
                        f"Action budget of {session.action_budget} used up before the task finished.",
                    )

                block = self._perform(session, step, observer)
                if block is None:
                    return self._finish(session, OUTCOME_CANCELLED, "Stopped by user.")
                assistant_blocks.append({
                    "type": "tool_use",
                    "id": step.tool_use_id,
                    "name": "computer",
                    "input": step.action.to_input(),
                })
                result_blocks.append(block)

            if not result_blocks:
                return self._finish(session, OUTCOME_COMPLETED, finished_text or "Done.")

            session.messages.append({"role": "assistant", "content": assistant_blocks})
            session.messages.append({"role": "user", "content": result_blocks})

    def _perform(self, session, step: ComputerStep, observer):
        """Execute one action, settle, re-capture. None if cancelled while settling."""
        cfg = self.config
        action = step.action
        observer.on_tool_started("computer", action.to_input())
        is_error = False
        try:
            description = execute_computer_action(
                action, session.capture, self.automation,
                max_wait=cfg.max_wait_seconds,
                max_scroll=cfg.max_scroll_steps,
                sleep=session.cancel.wait,
            )
        except Exception as e:
            is_error = True
            description = f"Action '{action.action}' failed: {e}"
            logger.warning(f"🖱️ {description}")
        session.actions_taken += 1
        session.log.append(f"[{session.actions_taken}] {description}")
        observer.on_tool_finished(
            "computer",
            ToolOutcome.fail(description) if is_error else ToolOutcome.ok(description),
        )
        event_bus.emit("take_control_action", {
            "action": action.action,
            "success": not is_error,
            "count": session.actions_taken,
        })

        delay = cfg.screenshot_settle if action.action == "screenshot" else cfg.action_settle
        if not self._settle(session, delay):
            return None

        content = [{"type": "text", "text": description}]
        try:
            session.capture = self.automation.capture()
            content.append(_image_block(session.capture))
        except Exception as e:
            is_error = True
            content.append({"type": "text", "text": f"Screen capture failed: {e}"})

        return {
            "type": "tool_result",
            "tool_use_id": step.tool_use_id,
            "content": content,
            "is_error": is_error,
        }

    # ── Vision fallback protocol ──

    def _vision_prompt(self, session):
        lines = [
            f"Task: {session.task}",
            f"Step {session.actions_taken + 1} of at most {session.action_budget}.",
        ]
        recent = session.log[-5:]
        if recent:
            lines.append("Recent steps:\n" + "\n".join(recent))
        if self.tools is not None and hasattr(self.tools, "describe"):
            lines.append("Tools:\n" + self.tools.describe())
        if session.text_retries > 0:
            idx = min(session.text_retries, len(FORCEFUL_PROMPTS)) - 1
            lines.append(FORCEFUL_PROMPTS[idx])
        return "\n\n".join(lines)

    def _run_vision(self, session, observer):
        cfg = self.config
        while True:
            if session.cancel.is_set():
                return self._finish(session, OUTCOME_CANCELLED, "Stopped by user.")
            if session.actions_taken >= session.action_budget:
                return self._finish(
                    session, OUTCOME_BUDGET,
                    f"Action budget of {session.action_budget} used up before the task finished.",
                )

            try:
                capture = self.automation.capture()
            except Exception as e:
                return self._finish(session, OUTCOME_ERROR, f"Screen capture failed: {e}", error=str(e))
            session.capture = capture

            try:
                reply = self.model.ask_with_vision(self._vision_prompt(session), capture, VISION_PROMPT) or ""
            except Exception as e:
                return self._model_error(session, e)

            if TASK_COMPLETE in reply:
                summary = reply.replace(TASK_COMPLETE, "").strip(" :-\n") or "Done."
                observer.on_text(summary)
                return self._finish(session, OUTCOME_COMPLETED, summary)

            call = parse_tool_call(reply)
            if call is None:
                session.text_retries += 1
                logger.warning(f"🖥️ No tool block in vision reply ({session.text_retries}/{cfg.max_text_retries})")
                if reply.strip():
                    observer.on_text(reply.strip())
                if session.text_retries >= cfg.max_text_retries:
                    return self._finish(
                        session, OUTCOME_PROTOCOL,
                        f"The model stopped issuing actions after {session.text_retries} replies without one.",
                    )
                continue
            session.text_retries = 0

            args = dict(call.arguments)
            if "x" in args and "y" in args:
                try:
                    args["x"], args["y"] = capture.to_native(args["x"], args["y"])
                except (TypeError, ValueError):
                    pass

            observer.on_tool_started(call.name, args)
            try:
                outcome = ToolOutcome.coerce(self.tools.execute(call.name, args))
            except Exception as e:
                outcome = ToolOutcome.fail(f"Tool execution error: {e}")
            session.actions_taken += 1
            status = "✅" if outcome.success else "❌"
            detail = outcome.payload if outcome.success else outcome.error
            session.log.append(f"[{session.actions_taken}] {status} {call.name}: {str(detail)[:120]}")
            observer.on_tool_finished(call.name, outcome)
            event_bus.emit("take_control_action", {
                "action": call.name,
                "success": outcome.success,
                "count": session.actions_taken,
            })

            if not self._settle(session, cfg.vision_settle):
                return self._finish(session, OUTCOME_CANCELLED, "Stopped by user.")
