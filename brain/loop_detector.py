"""
╔══════════════════════════════════════════════════════════════╗
║      HELM — Brain: Loop / Termination Detector               ║
╠══════════════════════════════════════════════════════════════╣
║  Decides, after every tool call, whether a loop may go on.   ║
║  Pure function of the LoopRecord, checked in this order:     ║
║    1. Repeat run  — same (tool, args, result) N times        ║
║    2. Ping-pong   — A,B,A,B,... between two tools            ║
║    3. Same call   — same (tool, args), results drifting      ║
║    4. Critical    — record length ≥ critical threshold       ║
║    5. Warning     — continue, nudge once per distinct run    ║
║                                                              ║
║  Same record in → same verdict out. No hidden state.         ║
╚══════════════════════════════════════════════════════════════╝
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from utils.config import DetectorConfig

STATUS_OK = "ok"
STATUS_WARNING = "warning"
STATUS_LOOP = "loop-detected"
STATUS_CRITICAL = "critical"

STOP_NUDGE = (
    "⚠️ You have been calling tools without making progress. "
    "Do NOT call another tool. Answer the user now with what you have."
)


def fingerprint(value: Any) -> str:
    """Stable 12-char hash of any JSON-ish value (key order ignored)."""
    try:
        canonical = json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        # Mixed key types can't be sorted; repr is still stable per value
        canonical = repr(value)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()[:12]


class LoopRecordFull(Exception):
    """Raised when appending past a LoopRecord's maximum length."""


@dataclass(frozen=True)
class LoopEntry:
    tool_name: str
    arguments_fingerprint: str
    result_fingerprint: str

    @property
    def call_key(self) -> Tuple[str, str]:
        return (self.tool_name, self.arguments_fingerprint)

    @property
    def loop_key(self) -> Tuple[str, str, str]:
        return (self.tool_name, self.arguments_fingerprint, self.result_fingerprint)


class LoopRecord:
    """Append-only history of (tool, args, result) fingerprints for one loop."""

    def __init__(self, max_length: int):
        self.max_length = max_length
        self._entries: List[LoopEntry] = []

    def append(self, tool_name, arguments, result) -> LoopEntry:
        if len(self._entries) >= self.max_length:
            raise LoopRecordFull(f"LoopRecord is full ({self.max_length} entries)")
        entry = LoopEntry(tool_name, fingerprint(arguments), fingerprint(result))
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> Tuple[LoopEntry, ...]:
        return tuple(self._entries)

    def trailing_run(self) -> int:
        """Length of the run of identical loop fingerprints at the end."""
        if not self._entries:
            return 0
        last = self._entries[-1].loop_key
        run = 0
        for entry in reversed(self._entries):
            if entry.loop_key != last:
                break
            run += 1
        return run

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)


@dataclass
class DetectorVerdict:
    should_continue: bool
    status: str = STATUS_OK
    nudge_message: Optional[str] = None
    reason: str = ""
    iteration: int = 0

    @property
    def severity(self) -> Optional[str]:
        if self.status == STATUS_OK:
            return None
        if self.status == STATUS_WARNING:
            return "warning"
        return "critical"


class LoopDetector:
    """Stateless verdict function over a LoopRecord."""

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()

    def check(self, record: LoopRecord) -> DetectorVerdict:
        cfg = self.config
        entries = record.entries
        n = len(entries)
        if n == 0:
            return DetectorVerdict(should_continue=True)

        last = entries[-1]
        run = record.trailing_run()

        # 1. Identical call + identical result, back to back
        if run >= cfg.repeat_tolerance:
            return self._stop(
                STATUS_LOOP, n,
                f"'{last.tool_name}' returned the same result {run} times in a row",
            )

        # 2. Ping-pong between two tools
        span = 2 * cfg.ping_pong_cycles
        if cfg.ping_pong_cycles > 0 and n >= span:
            tail = entries[-span:]
            a, b = tail[0].tool_name, tail[1].tool_name
            if a != b and all(
                e.tool_name == (a if i % 2 == 0 else b) for i, e in enumerate(tail)
            ):
                return self._stop(
                    STATUS_LOOP, n,
                    f"alternating between '{a}' and '{b}' for {cfg.ping_pong_cycles} cycles",
                )

        # 3. Same call over and over even though results differ
        k = cfg.same_call_repeat_max
        if k > 0 and n >= k and len({e.call_key for e in entries[-k:]}) == 1:
            return self._stop(
                STATUS_LOOP, n,
                f"'{last.tool_name}' called {k} times with the same arguments",
            )

        # 4. Hard ceiling on total iterations
        if n >= cfg.critical_iterations:
            return self._stop(
                STATUS_CRITICAL, n,
                f"reached {n} tool calls (critical threshold {cfg.critical_iterations})",
            )

        # 5. Warning zone: keep going, nudge on entry and on each new repeat run
        if n >= cfg.warning_iterations:
            nudge = None
            if n == cfg.warning_iterations or run == 2:
                nudge = (
                    f"⚠️ {n} tool calls so far. Check whether you are making progress; "
                    f"if you have enough information, answer the user instead of calling more tools."
                )
            return DetectorVerdict(
                should_continue=True,
                status=STATUS_WARNING,
                nudge_message=nudge,
                reason=f"{n} tool calls (warning threshold {cfg.warning_iterations})",
                iteration=n,
            )

        return DetectorVerdict(should_continue=True, iteration=n)

    @staticmethod
    def _stop(status, n, reason):
        return DetectorVerdict(
            should_continue=False,
            status=status,
            nudge_message=f"{STOP_NUDGE} (Stopped: {reason}.)",
            reason=reason,
            iteration=n,
        )
