"""
╔══════════════════════════════════════════════════════════════╗
║      HELM — Orchestrator                                     ║
╠══════════════════════════════════════════════════════════════╣
║  One object for the host application:                       ║
║    - foreground tool loops (sequential / batched)            ║
║    - background sub-agents                                   ║
║    - take-control desktop sessions                           ║
║                                                              ║
║  The host supplies the model client, the tool executor and   ║
║  (optionally) the desktop automation collaborator.           ║
╚══════════════════════════════════════════════════════════════╝
"""

import logging
import os

from agents.sub_agent import SubAgentManager
from agents.take_control import TakeControlEngine, TakeControlRejected
from brain.tool_loop import ToolLoopEngine
from utils.config import BASE_DIR, OrchestratorConfig, load_config
from utils.logger import setup_logger

logger = logging.getLogger("HELM")


class Orchestrator:

    def __init__(self, model, tools, automation=None, config=None, base_dir=None):
        self.config = config or OrchestratorConfig()
        self.model = model
        self.tools = tools
        self.automation = automation

        self.engine = ToolLoopEngine(model, tools, self.config.loop)
        self.sub_agents = SubAgentManager(model, tools, self.config.sub_agents, self.config.loop)
        self.take_control = (
            TakeControlEngine(model, tools, automation, self.config.take_control)
            if automation is not None else None
        )
        self.base_dir = base_dir or BASE_DIR

    @classmethod
    def from_config_file(cls, model, tools, automation=None, path=None, configure_logging=True):
        config = load_config(path)
        base_dir = os.path.dirname(os.path.abspath(path)) if path else BASE_DIR
        if configure_logging:
            setup_logger(config.logging, base_dir)
        logger.info("⚙️ Config loaded")
        return cls(model, tools, automation=automation, config=config, base_dir=base_dir)

    # ── Foreground loops ──

    def run_tool_loop(self, message, **kwargs):
        return self.engine.run_tool_loop(message, **kwargs)

    def run_batched_loop(self, message, tool_defs, **kwargs):
        return self.engine.run_batched_loop(message, tool_defs, **kwargs)

    # ── Sub-agents ──

    def spawn_sub_agent(self, task, allowed_tools=None, **kwargs):
        return self.sub_agents.spawn(task, allowed_tools, **kwargs)

    def kill_sub_agent(self, agent_id):
        return self.sub_agents.kill(agent_id)

    def steer_sub_agent(self, agent_id, instruction):
        return self.sub_agents.steer(agent_id, instruction)

    def list_sub_agents(self):
        return self.sub_agents.list_active()

    def consume_sub_agent_results(self):
        return self.sub_agents.consume_completed_results()

    # ── Take-control ──

    def start_take_control(self, task, observer=None, confirmed=False, cancel=None):
        if self.take_control is None:
            raise TakeControlRejected("No desktop automation configured")
        return self.take_control.start(task, observer=observer, confirmed=confirmed, cancel=cancel)

    def stop_take_control(self):
        if self.take_control is None:
            return False
        return self.take_control.stop()

    def shutdown(self, timeout=5.0):
        """Kill every sub-agent and stop any live session."""
        killed = self.sub_agents.kill_all()
        self.stop_take_control()
        if killed:
            logger.info(f"⏹️ Waiting for {killed} sub-agent(s) to stop")
            self.sub_agents.wait_all(timeout)
