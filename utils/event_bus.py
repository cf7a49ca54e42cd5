"""
╔══════════════════════════════════════════╗
║       HELM — Event Bus                   ║
╚══════════════════════════════════════════╝

In-process event stream. Tool executions, loop stops,
sub-agent lifecycles and take-control sessions are all
reported here so a host application can watch them.
"""

import time
import threading
from datetime import datetime
from collections import deque


class EventBus:
    """Central event bus — every orchestration event flows through here."""

    def __init__(self, max_history=500):
        self._sync_subs = {}           # event_type → [callable]
        self._sync_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.history = deque(maxlen=max_history)
        self._stats = {
            "total_events": 0,
            "actions_success": 0,
            "actions_failed": 0,
            "start_time": time.time(),
            "tool_usage": {},
            "loop_stops": {},
            "subagents": {},
            "take_control": {},
        }

    @property
    def stats(self):
        return self._stats

    def emit(self, event_type, data=None):
        """Emit an event to history and synchronous listeners."""
        data = data or {}
        event = {
            "type": event_type,
            "timestamp": datetime.now().isoformat(),
            "ts_unix": time.time(),
            "data": data,
        }

        with self._stats_lock:
            self._stats["total_events"] += 1
            self._update_stats(event_type, data)
            self.history.append(event)

        with self._sync_lock:
            listeners = list(self._sync_subs.get(event_type, []))
        for cb in listeners:
            try:
                cb(data)
            except Exception:
                # A broken listener must never break the emitting loop
                pass

    def _update_stats(self, event_type, data):
        """Update running statistics."""
        if event_type == "tool_result":
            if data.get("success"):
                self._stats["actions_success"] += 1
            else:
                self._stats["actions_failed"] += 1
            tool = data.get("tool_name", "unknown")
            self._stats["tool_usage"][tool] = self._stats["tool_usage"].get(tool, 0) + 1

        elif event_type == "loop_stopped":
            reason = data.get("stop_reason", "unknown")
            self._stats["loop_stops"][reason] = self._stats["loop_stops"].get(reason, 0) + 1

        elif event_type == "subagent_completed":
            status = data.get("status", "unknown")
            self._stats["subagents"][status] = self._stats["subagents"].get(status, 0) + 1

        elif event_type == "take_control_finished":
            outcome = data.get("outcome", "unknown")
            self._stats["take_control"][outcome] = self._stats["take_control"].get(outcome, 0) + 1

    def subscribe_sync(self, event_type, callback):
        """Subscribe a synchronous callback to a specific event type.

        The callback receives the event data dict and runs on the emitting thread.
        """
        with self._sync_lock:
            self._sync_subs.setdefault(event_type, []).append(callback)

    def unsubscribe_sync(self, event_type, callback):
        """Remove a synchronous callback."""
        with self._sync_lock:
            listeners = self._sync_subs.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)

    def get_history(self, event_type=None):
        """Get stored events, optionally filtered by type."""
        if event_type is None:
            return list(self.history)
        return [e for e in self.history if e["type"] == event_type]

    def get_stats(self):
        """Get current stats snapshot."""
        with self._stats_lock:
            stats = dict(self._stats)
        stats["uptime_seconds"] = time.time() - stats["start_time"]
        return stats


# Singleton
event_bus = EventBus()
