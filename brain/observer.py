"""
╔══════════════════════════════════════════╗
║       HELM — Brain: Loop Observer        ║
╚══════════════════════════════════════════╝

Per-call progress hooks. Every loop entry point takes an optional
observer; the default does nothing. Observer exceptions are logged
and never affect the loop.
"""

import logging

logger = logging.getLogger("HELM")


class LoopObserver:
    """Override any subset of these."""

    def on_tool_started(self, name, arguments):
        pass

    def on_tool_finished(self, name, outcome):
        pass

    def on_text(self, text):
        pass

    def on_status(self, status):
        pass


class _SafeObserver:
    """Wraps an observer so a failing hook is logged and ignored."""

    def __init__(self, observer):
        self._observer = observer or LoopObserver()

    def __getattr__(self, hook):
        fn = getattr(self._observer, hook, None)

        def call(*args):
            if fn is None:
                return
            try:
                fn(*args)
            except Exception as e:
                logger.warning(f"👀 Observer {hook} failed: {e}")
        return call


def safe_observer(observer):
    return _SafeObserver(observer)
