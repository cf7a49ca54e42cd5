"""
╔══════════════════════════════════════════════════════════════╗
║      HELM — Hands: Desktop Automation Contract               ║
╠══════════════════════════════════════════════════════════════╣
║  The take-control engine never touches the OS directly.      ║
║  It drives an Automation collaborator through:               ║
║    • capture() → ScreenCapture (image + scale factors)       ║
║    • mouse / keyboard primitives in NATIVE coordinates       ║
║                                                              ║
║  The model reasons in the coordinate space of the image it   ║
║  was shown; ScreenCapture.to_native() maps back, clamped to  ║
║  the native display bounds.                                  ║
╚══════════════════════════════════════════════════════════════╝
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger("HELM")


# ─────────────────────────────────────────────
#  Screen capture
# ─────────────────────────────────────────────

@dataclass
class ScreenCapture:
    """One screenshot as shown to the model.

    width/height are the dimensions of the image the model sees;
    native_width/native_height are the real display dimensions.
    scale_x = native_width / width (same for y).
    """
    image: str                      # base64-encoded image bytes
    width: int
    height: int
    native_width: int
    native_height: int
    scale_x: float = 1.0
    scale_y: float = 1.0
    mime_type: str = "image/png"

    @classmethod
    def scaled(cls, image, width, height, native_width, native_height, mime_type="image/png"):
        """Build a capture and derive its scale factors."""
        return cls(
            image=image,
            width=width,
            height=height,
            native_width=native_width,
            native_height=native_height,
            scale_x=native_width / width if width else 1.0,
            scale_y=native_height / height if height else 1.0,
            mime_type=mime_type,
        )

    def to_native(self, x, y) -> Tuple[int, int]:
        """Map model-space coordinates to native display coordinates."""
        nx = int(round(float(x) * self.scale_x))
        ny = int(round(float(y) * self.scale_y))
        nx = max(0, min(nx, self.native_width - 1))
        ny = max(0, min(ny, self.native_height - 1))
        return nx, ny


class Automation(ABC):
    """OS input + screen capture collaborator. All coordinates are native."""

    @abstractmethod
    def capture(self) -> ScreenCapture:
        ...

    @abstractmethod
    def mouse_move(self, x: int, y: int):
        ...

    @abstractmethod
    def mouse_click(self, x: int, y: int, button: str = "left"):
        ...

    @abstractmethod
    def keyboard_type(self, text: str):
        ...

    @abstractmethod
    def keyboard_press(self, key: str):
        ...

    @abstractmethod
    def keyboard_shortcut(self, keys):
        ...

    def is_available(self) -> bool:
        return True

    def begin_session(self):
        """Called once before a take-control session starts driving input."""

    def end_session(self):
        """Called once when a session ends, whatever the outcome."""


# ─────────────────────────────────────────────
#  Computer-Use action vocabulary
# ─────────────────────────────────────────────

COMPUTER_ACTIONS = (
    "screenshot", "cursor_position", "mouse_move",
    "left_click", "right_click", "middle_click", "double_click",
    "type", "key", "scroll", "wait",
)

_CLICK_BUTTONS = {
    "left_click": "left",
    "right_click": "right",
    "middle_click": "middle",
}

_SCROLL_KEYS = {
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
}


@dataclass
class ComputerAction:
    """A single desktop action requested by the model (model-space coords)."""
    action: str
    coordinate: Optional[Tuple[float, float]] = None
    text: Optional[str] = None
    duration: Optional[float] = None
    scroll_direction: Optional[str] = None
    scroll_amount: Optional[int] = None

    def to_input(self):
        d = {"action": self.action}
        if self.coordinate is not None:
            d["coordinate"] = list(self.coordinate)
        for key in ("text", "duration", "scroll_direction", "scroll_amount"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d


@dataclass
class ComputerStep:
    """One step of a structured Computer-Use turn."""
    kind: str                               # "text" | "action" | "done"
    text: str = ""
    action: Optional[ComputerAction] = None
    tool_use_id: Optional[str] = None

    @classmethod
    def say(cls, text):
        return cls(kind="text", text=text)

    @classmethod
    def act(cls, action, tool_use_id):
        return cls(kind="action", action=action, tool_use_id=tool_use_id)

    @classmethod
    def done(cls, text=""):
        return cls(kind="done", text=text)


def _require_coordinate(action):
    if action.coordinate is None:
        raise ValueError(f"'{action.action}' requires a coordinate")
    return action.coordinate


def execute_computer_action(action, capture, automation, max_wait=10.0, max_scroll=10, sleep=time.sleep):
    """Perform one ComputerAction through the automation collaborator.

    Coordinates are remapped with the scale factors of `capture` (the
    screenshot the model was looking at). Returns a short description.
    Raises ValueError for unknown actions or missing arguments.
    """
    name = action.action

    if name == "screenshot":
        return "Screenshot requested"

    if name == "cursor_position":
        return "Cursor position requested"

    if name == "mouse_move":
        x, y = capture.to_native(*_require_coordinate(action))
        automation.mouse_move(x, y)
        return f"Moved mouse to ({x}, {y})"

    if name in _CLICK_BUTTONS:
        x, y = capture.to_native(*_require_coordinate(action))
        automation.mouse_click(x, y, _CLICK_BUTTONS[name])
        return f"{_CLICK_BUTTONS[name].capitalize()}-clicked at ({x}, {y})"

    if name == "double_click":
        x, y = capture.to_native(*_require_coordinate(action))
        automation.mouse_click(x, y, "left")
        sleep(0.05)
        automation.mouse_click(x, y, "left")
        return f"Double-clicked at ({x}, {y})"

    if name == "type":
        if action.text is None:
            raise ValueError("'type' requires text")
        automation.keyboard_type(action.text)
        return f"Typed {len(action.text)} characters"

    if name == "key":
        if not action.text:
            raise ValueError("'key' requires text")
        if "+" in action.text:
            keys = [k.strip() for k in action.text.split("+") if k.strip()]
            automation.keyboard_shortcut(keys)
            return f"Pressed shortcut: {'+'.join(keys)}"
        automation.keyboard_press(action.text)
        return f"Pressed: {action.text}"

    if name == "scroll":
        direction = (action.scroll_direction or "down").lower()
        key = _SCROLL_KEYS.get(direction)
        if key is None:
            raise ValueError(f"Unknown scroll direction: {direction}")
        if action.coordinate is not None:
            x, y = capture.to_native(*action.coordinate)
            automation.mouse_move(x, y)
        steps = max(1, min(int(action.scroll_amount or 3), max_scroll))
        for _ in range(steps):
            automation.keyboard_press(key)
        return f"Scrolled {direction} {steps} steps"

    if name == "wait":
        secs = min(float(action.duration if action.duration is not None else 1.0), max_wait)
        sleep(max(0.0, secs))
        return f"Waited {secs:g} seconds"

    logger.warning(f"🖱️ Unknown computer action: {name}")
    raise ValueError(f"Unknown action: {name}")
