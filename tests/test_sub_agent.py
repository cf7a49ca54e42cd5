"""
╔══════════════════════════════════════════╗
║     HELM — Test Suite: Sub-Agents         ║
╚══════════════════════════════════════════╝

Tests spawn / capacity, kill, steer, completion
callbacks, result buffering and context summaries.
"""

import json
import threading
import unittest
import sys
import os
from unittest import mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from agents.sub_agent import (
    SubAgentCapacityError,
    SubAgentManager,
    SubAgentStatus,
)
from brain.model import ModelClient
from hands.tools import ToolRegistry
from utils.config import SubAgentConfig

WAIT = 5


def tool_block(name, **params):
    return "```tool\n" + json.dumps({"tool": name, "params": params}) + "\n```"


class TaskModel(ModelClient):
    """First turn calls `echo`; any later turn reports. Optionally blocks on a gate."""

    def __init__(self, gate=None, first_tool="echo", fail=False):
        self.gate = gate
        self.first_tool = first_tool
        self.fail = fail
        self.received = []
        self._lock = threading.Lock()

    def ask(self, messages, system=None):
        if self.gate is not None:
            self.gate.wait(WAIT)
        with self._lock:
            self.received.append(messages)
        if self.fail:
            raise RuntimeError("401 Unauthorized")
        if not any(m["role"] == "assistant" for m in messages):
            return tool_block(self.first_tool, task=messages[0]["content"])
        return f"Report for: {messages[0]['content']}"


def make_tools():
    tools = ToolRegistry()
    tools.executed = []
    lock = threading.Lock()

    def echo(**kwargs):
        with lock:
            tools.executed.append(("echo", kwargs))
        return "echoed"

    def delete_everything(**kwargs):
        with lock:
            tools.executed.append(("delete_everything", kwargs))
        return "deleted"

    tools.register("echo", echo)
    tools.register("delete_everything", delete_everything)
    return tools


class TestSpawnAndComplete(unittest.TestCase):

    def setUp(self):
        self.tools = make_tools()
        self.manager = SubAgentManager(TaskModel(), self.tools)

    def test_spawn_returns_id_and_completes(self):
        agent_id = self.manager.spawn("summarize the logs")
        self.assertTrue(agent_id.startswith("subagent-"))
        self.assertEqual(len(agent_id), len("subagent-") + 8)

        result = self.manager.wait(agent_id, timeout=WAIT)
        self.assertIsNotNone(result)
        self.assertEqual(result.status, SubAgentStatus.COMPLETED)
        self.assertEqual(result.output, "Report for: summarize the logs")
        self.assertEqual(result.tools_used, ["echo"])
        self.assertEqual(result.iterations, 1)

    def test_completed_results_consumed_once(self):
        agent_id = self.manager.spawn("task")
        self.manager.wait(agent_id, timeout=WAIT)
        results = self.manager.consume_completed_results()
        self.assertEqual([r.id for r in results], [agent_id])
        self.assertEqual(self.manager.consume_completed_results(), [])

    def test_finished_agent_leaves_active_set(self):
        agent_id = self.manager.spawn("task")
        self.manager.wait(agent_id, timeout=WAIT)
        self.assertEqual(self.manager.list_active(), [])
        info = self.manager.get_agent(agent_id)
        self.assertEqual(info.status, SubAgentStatus.COMPLETED)

    def test_kill_after_completion_returns_false(self):
        agent_id = self.manager.spawn("task")
        self.manager.wait(agent_id, timeout=WAIT)
        self.assertFalse(self.manager.kill(agent_id))
        self.assertFalse(self.manager.kill("subagent-unknown"))
        # Completed buffer untouched
        self.assertEqual(len(self.manager.consume_completed_results()), 1)

    def test_disallowed_tool_rejected(self):
        manager = SubAgentManager(TaskModel(first_tool="delete_everything"), self.tools)
        agent_id = manager.spawn("clean up", allowed_tools=["echo"])
        result = manager.wait(agent_id, timeout=WAIT)
        self.assertEqual(result.status, SubAgentStatus.COMPLETED)
        self.assertEqual(self.tools.executed, [])

    def test_model_failure_marks_failed(self):
        manager = SubAgentManager(TaskModel(fail=True), self.tools)
        agent_id = manager.spawn("task")
        result = manager.wait(agent_id, timeout=WAIT)
        self.assertEqual(result.status, SubAgentStatus.FAILED)
        self.assertIn("401", result.error)
        self.assertTrue(result.output)

    def test_thread_start_failure_frees_slot(self):
        manager = SubAgentManager(TaskModel(), self.tools, SubAgentConfig(max_concurrent=1))
        with mock.patch.object(threading.Thread, "start", side_effect=RuntimeError("can't start new thread")):
            with self.assertRaises(RuntimeError):
                manager.spawn("task")
        self.assertEqual(manager.list_active(), [])
        agent_id = manager.spawn("task")
        self.assertEqual(manager.wait(agent_id, timeout=WAIT).status, SubAgentStatus.COMPLETED)


class TestCallbacks(unittest.TestCase):

    def test_per_spawn_and_global_callbacks(self):
        manager = SubAgentManager(TaskModel(), make_tools())
        seen = []
        manager.set_completion_callback(lambda r: seen.append(("global", r.id)))
        agent_id = manager.spawn("task", on_complete=lambda r: seen.append(("own", r.id)))
        manager.wait(agent_id, timeout=WAIT)
        self.assertEqual(seen, [("own", agent_id), ("global", agent_id)])

    def test_failing_callback_does_not_lose_result(self):
        manager = SubAgentManager(TaskModel(), make_tools())

        def broken(result):
            raise ValueError("callback bug")

        agent_id = manager.spawn("task", on_complete=broken)
        result = manager.wait(agent_id, timeout=WAIT)
        self.assertEqual(result.status, SubAgentStatus.COMPLETED)
        self.assertEqual(len(manager.consume_completed_results()), 1)


class TestRunningAgents(unittest.TestCase):

    def setUp(self):
        self.gate = threading.Event()
        self.model = TaskModel(gate=self.gate)
        self.manager = SubAgentManager(self.model, make_tools(), SubAgentConfig(max_concurrent=3))

    def tearDown(self):
        self.gate.set()
        self.manager.kill_all()
        self.manager.wait_all(timeout=WAIT)

    def test_fourth_spawn_rejected_without_mutation(self):
        ids = [self.manager.spawn(f"task {i}") for i in range(3)]
        with self.assertRaises(SubAgentCapacityError):
            self.manager.spawn("task 4")
        active = self.manager.list_active()
        self.assertEqual(sorted(a.id for a in active), sorted(ids))
        self.assertTrue(all(a.status == SubAgentStatus.RUNNING for a in active))
        self.assertEqual(self.manager.consume_completed_results(), [])

    def test_kill_running_agent(self):
        agent_id = self.manager.spawn("long task")
        self.assertTrue(self.manager.kill(agent_id))
        self.gate.set()
        result = self.manager.wait(agent_id, timeout=WAIT)
        self.assertEqual(result.status, SubAgentStatus.KILLED)
        self.assertTrue(result.output)

    def test_steer_reaches_next_model_call(self):
        agent_id = self.manager.spawn("research topic")
        self.assertTrue(self.manager.steer(agent_id, "focus on 2024 only"))
        self.gate.set()
        result = self.manager.wait(agent_id, timeout=WAIT)
        self.assertEqual(result.status, SubAgentStatus.COMPLETED)
        self.assertTrue(any(
            m["content"] == "[STEER] focus on 2024 only"
            for prompt in self.model.received for m in prompt
        ))

    def test_steer_unknown_agent(self):
        self.assertFalse(self.manager.steer("subagent-missing", "hello"))

    def test_build_context_lists_active(self):
        self.assertEqual(self.manager.build_context(), "")
        agent_id = self.manager.spawn("watch the build")
        context = self.manager.build_context()
        self.assertIn(agent_id, context)
        self.assertIn("watch the build", context)


if __name__ == "__main__":
    unittest.main()
