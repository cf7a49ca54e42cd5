"""
╔══════════════════════════════════════════╗
║       HELM — Brain: Conversation         ║
╚══════════════════════════════════════════╝

Message history owned by a single loop. Other threads may only
queue steering text with inject(); the owning loop folds it in
with flush_pending() right before its next model call.
"""

import threading
from typing import List


class Conversation:
    """Thread-safe list of {"role", "content"} messages."""

    def __init__(self, messages=None):
        self._lock = threading.Lock()
        self._messages: List[dict] = list(messages or [])
        self._pending: List[str] = []

    def append(self, role, content):
        with self._lock:
            self._messages.append({"role": role, "content": content})

    def add_user(self, content):
        self.append("user", content)

    def add_assistant(self, content):
        self.append("assistant", content)

    def inject(self, text):
        """Queue text from another thread; delivered on the next flush."""
        with self._lock:
            self._pending.append(text)

    def flush_pending(self) -> int:
        """Move queued text into the history as user messages. Returns count."""
        with self._lock:
            pending, self._pending = self._pending, []
            for text in pending:
                self._messages.append({"role": "user", "content": text})
            return len(pending)

    @property
    def messages(self) -> List[dict]:
        """Snapshot copy of the history."""
        with self._lock:
            return [dict(m) for m in self._messages]

    def __len__(self):
        with self._lock:
            return len(self._messages)
