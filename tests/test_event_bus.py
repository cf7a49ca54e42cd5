"""
╔══════════════════════════════════════════╗
║     HELM — Test Suite: Event Bus          ║
╚══════════════════════════════════════════╝

Tests emission, sync listeners, orchestration stats,
bounded history and concurrent emitters.
"""

import unittest
import threading
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from utils.event_bus import EventBus, event_bus


class TestEmission(unittest.TestCase):

    def setUp(self):
        self.bus = EventBus(max_history=100)

    def test_emit_recorded(self):
        self.bus.emit("tool_started", {"tool_name": "echo"})
        history = self.bus.get_history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["type"], "tool_started")
        self.assertEqual(history[0]["data"]["tool_name"], "echo")
        self.assertEqual(history[0]["data"], self.bus.get_history("tool_started")[0]["data"])

    def test_history_filter(self):
        self.bus.emit("a")
        self.bus.emit("b")
        self.bus.emit("a")
        self.assertEqual(len(self.bus.get_history("a")), 2)
        self.assertEqual(self.bus.get_history("missing"), [])

    def test_history_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(10):
            bus.emit(f"e{i}")
        self.assertEqual([e["type"] for e in bus.get_history()], ["e7", "e8", "e9"])

    def test_listener_only_for_its_type(self):
        received = []
        self.bus.subscribe_sync("loop_stopped", received.append)
        self.bus.emit("tool_result", {"success": True})
        self.bus.emit("loop_stopped", {"stop_reason": "completed"})
        self.assertEqual(received, [{"stop_reason": "completed"}])

    def test_unsubscribe(self):
        received = []
        self.bus.subscribe_sync("x", received.append)
        self.bus.emit("x", {"n": 1})
        self.bus.unsubscribe_sync("x", received.append)
        self.bus.emit("x", {"n": 2})
        self.assertEqual(len(received), 1)

    def test_broken_listener_isolated(self):
        def bad(data):
            raise RuntimeError("listener bug")

        received = []
        self.bus.subscribe_sync("x", bad)
        self.bus.subscribe_sync("x", received.append)
        self.bus.emit("x", {"n": 1})
        self.assertEqual(len(received), 1)


class TestStats(unittest.TestCase):

    def setUp(self):
        self.bus = EventBus()

    def test_tool_results_counted(self):
        self.bus.emit("tool_result", {"success": True, "tool_name": "read"})
        self.bus.emit("tool_result", {"success": False, "tool_name": "read"})
        stats = self.bus.get_stats()
        self.assertEqual(stats["actions_success"], 1)
        self.assertEqual(stats["actions_failed"], 1)
        self.assertEqual(stats["tool_usage"]["read"], 2)

    def test_loop_and_agent_outcomes_counted(self):
        self.bus.emit("loop_stopped", {"stop_reason": "hard_cap"})
        self.bus.emit("subagent_completed", {"status": "killed"})
        self.bus.emit("take_control_finished", {"outcome": "completed"})
        stats = self.bus.get_stats()
        self.assertEqual(stats["loop_stops"], {"hard_cap": 1})
        self.assertEqual(stats["subagents"], {"killed": 1})
        self.assertEqual(stats["take_control"], {"completed": 1})
        self.assertGreaterEqual(stats["uptime_seconds"], 0)


class TestConcurrency(unittest.TestCase):

    def test_concurrent_emit(self):
        bus = EventBus(max_history=10000)
        errors = []

        def emitter(n):
            try:
                for i in range(100):
                    bus.emit("tool_result", {"success": i % 2 == 0, "tool_name": f"t{n}"})
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=emitter, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        stats = bus.get_stats()
        self.assertEqual(stats["total_events"], 800)
        self.assertEqual(stats["actions_success"] + stats["actions_failed"], 800)


class TestSingleton(unittest.TestCase):

    def test_module_singleton(self):
        self.assertIsInstance(event_bus, EventBus)


if __name__ == "__main__":
    unittest.main()
