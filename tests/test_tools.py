"""
╔══════════════════════════════════════════╗
║     HELM — Test Suite: Tool Registry      ║
╚══════════════════════════════════════════╝

Tests ToolOutcome normalization and ToolRegistry dispatch.
"""

import unittest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from hands.tools import ToolOutcome, ToolRegistry


class TestToolOutcome(unittest.TestCase):

    def test_coerce_success_dict(self):
        outcome = ToolOutcome.coerce({"success": True, "content": "3 files"})
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.payload, "3 files")
        self.assertIsNone(outcome.error)

    def test_coerce_failure_dict_with_error_flag(self):
        outcome = ToolOutcome.coerce({"success": False, "error": True, "content": "AppleScript error: nope"})
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error, "AppleScript error: nope")

    def test_coerce_failure_dict_with_message(self):
        outcome = ToolOutcome.coerce({"success": False, "error": "timeout"})
        self.assertEqual(outcome.error, "timeout")

    def test_coerce_bare_value(self):
        outcome = ToolOutcome.coerce(["a", "b"])
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.payload, ["a", "b"])

    def test_coerce_passthrough(self):
        original = ToolOutcome.fail("x")
        self.assertIs(ToolOutcome.coerce(original), original)

    def test_to_dict(self):
        self.assertEqual(ToolOutcome.ok("hi").to_dict(), {"success": True, "content": "hi"})
        self.assertEqual(ToolOutcome.fail("bad").to_dict()["error"], "bad")


class TestToolRegistry(unittest.TestCase):

    def setUp(self):
        self.registry = ToolRegistry()

    def test_keyword_dispatch(self):
        self.registry.register("add", lambda a, b: a + b, "Add two numbers")
        outcome = self.registry.execute("add", {"a": 2, "b": 3})
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.payload, 5)

    def test_dict_dispatch(self):
        self.registry.register("keys", lambda args: sorted(args), pass_dict=True)
        self.assertEqual(self.registry.execute("keys", {"z": 1, "a": 2}).payload, ["a", "z"])

    def test_decorator(self):
        @self.registry.tool(description="Say hi")
        def greet(name):
            return f"hi {name}"

        self.assertTrue(self.registry.has("greet"))
        self.assertEqual(self.registry.execute("greet", {"name": "Ada"}).payload, "hi Ada")
        self.assertIn("- greet: Say hi", self.registry.describe())

    def test_unknown_tool(self):
        outcome = self.registry.execute("ghost", {})
        self.assertFalse(outcome.success)
        self.assertIn("Unknown tool", outcome.error)

    def test_handler_exception_becomes_failure(self):
        def broken():
            raise KeyError("missing")

        self.registry.register("broken", broken)
        outcome = self.registry.execute("broken", {})
        self.assertFalse(outcome.success)
        self.assertIn("missing", outcome.error)

    def test_bad_arguments_become_failure(self):
        self.registry.register("one", lambda x: x)
        self.assertFalse(self.registry.execute("one", {"y": 1}).success)

    def test_unregister(self):
        self.registry.register("tmp", lambda: 1)
        self.registry.unregister("tmp")
        self.assertEqual(self.registry.names, [])

    def test_empty_name_rejected(self):
        with self.assertRaises(ValueError):
            self.registry.register("", lambda: 1)


if __name__ == "__main__":
    unittest.main()
