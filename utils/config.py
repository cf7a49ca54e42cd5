"""
╔══════════════════════════════════════════╗
║       HELM — Utilities: Config           ║
╚══════════════════════════════════════════╝

Loads config.yaml into typed settings objects. Every engine
takes its settings explicitly at construction; nothing reads
module-level constants.

Environment overrides (applied after the file):
  HELM_LOG_LEVEL       →  logging.level
  HELM_HARD_CAP        →  loop.hard_cap
  HELM_MAX_SUB_AGENTS  →  sub_agents.max_concurrent
"""

import os
import logging
from dataclasses import dataclass, field, fields

import yaml

logger = logging.getLogger("HELM")

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFAULT_CONFIG_PATH = os.path.join(BASE_DIR, "config.yaml")


@dataclass
class DetectorConfig:
    """Thresholds for the loop/termination detector."""
    warning_iterations: int = 15
    critical_iterations: int = 40
    repeat_tolerance: int = 3
    ping_pong_cycles: int = 3
    same_call_repeat_max: int = 5


@dataclass
class LoopConfig:
    hard_cap: int = 50
    output_limit: int = 15000
    detector: DetectorConfig = field(default_factory=DetectorConfig)


@dataclass
class SubAgentConfig:
    max_concurrent: int = 3
    default_max_iterations: int = 30
    warning_iterations: int = 15
    output_limit: int = 10000


@dataclass
class TakeControlConfig:
    structured_action_budget: int = 30
    vision_action_budget: int = 20
    max_text_retries: int = 3
    keep_screenshots: int = 3
    screenshot_settle: float = 0.1
    action_settle: float = 0.8
    vision_settle: float = 0.5
    max_wait_seconds: float = 10.0
    max_scroll_steps: int = 10


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = "logs/helm.log"
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 3


def _section(cls, raw):
    """Build a settings dataclass from a dict, ignoring unknown keys."""
    if not isinstance(raw, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        logger.debug(f"⚙️ Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in raw.items() if k in known})


@dataclass
class OrchestratorConfig:
    loop: LoopConfig = field(default_factory=LoopConfig)
    sub_agents: SubAgentConfig = field(default_factory=SubAgentConfig)
    take_control: TakeControlConfig = field(default_factory=TakeControlConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, raw):
        raw = raw or {}
        loop_raw = dict(raw.get("loop") or {})
        detector = _section(DetectorConfig, loop_raw.pop("detector", None))
        loop = _section(LoopConfig, loop_raw)
        loop.detector = detector
        return cls(
            loop=loop,
            sub_agents=_section(SubAgentConfig, raw.get("sub_agents")),
            take_control=_section(TakeControlConfig, raw.get("take_control")),
            logging=_section(LoggingConfig, raw.get("logging")),
        )


def load_config(path=None):
    """Load configuration from config.yaml with env var overrides.

    A missing file is not an error: every setting has a default.
    """
    config_path = path or DEFAULT_CONFIG_PATH
    raw = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.warning(f"⚙️ No config at {config_path} — using defaults")

    config = OrchestratorConfig.from_dict(raw)

    if os.environ.get("HELM_LOG_LEVEL"):
        config.logging.level = os.environ["HELM_LOG_LEVEL"]
    if os.environ.get("HELM_HARD_CAP"):
        config.loop.hard_cap = int(os.environ["HELM_HARD_CAP"])
    if os.environ.get("HELM_MAX_SUB_AGENTS"):
        config.sub_agents.max_concurrent = int(os.environ["HELM_MAX_SUB_AGENTS"])

    return config
