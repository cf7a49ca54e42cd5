"""
╔══════════════════════════════════════════════════════════════╗
║      HELM — Brain: Tool Invocation Parser                    ║
╠══════════════════════════════════════════════════════════════╣
║  Turns model output into ToolCalls.                          ║
║                                                              ║
║  Sequential protocol (free text):                            ║
║    Format A:  ```tool                                        ║
║               {"tool": "name", "params": {...}}              ║
║               ```                                            ║
║    Format B:  <function>name{...}</function>                 ║
║               <function(name>{...}</function>                ║
║                                                              ║
║  Batched protocol: calls arrive already structured; we only  ║
║  validate them (name + id present).                          ║
║                                                              ║
║  Anything malformed means "no call", never an exception.     ║
╚══════════════════════════════════════════════════════════════╝
"""

import json
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger("HELM")


@dataclass
class ToolCall:
    """One request from the model to run a named tool."""
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


_TOOL_BLOCK_RE = re.compile(r"```tool\s*\n([\s\S]*?)\n?```")

_FUNCTION_TAG_RE = re.compile(
    r'<function[>(](\w+)>?\s*(\{.*?\})\s*</function>',
    re.DOTALL,
)

_TOOL_OUTPUT_RE = re.compile(
    r"\[TOOL OUTPUT[^\]]*\][\s\S]*?\[END TOOL OUTPUT\]",
)


def _loads_lenient(raw):
    """json.loads, retrying once with common over-escaping undone."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        try:
            return json.loads(raw.replace("\\'", "'").replace("\\\\", "\\"))
        except json.JSONDecodeError:
            return None


def parse_function_tags(text):
    """
    Parse <function>name{"key":"val"}</function> tags from model text.

    Returns list of (name, args_dict) tuples, or empty list if none found.
    """
    results = []
    for m in _FUNCTION_TAG_RE.finditer(text or ""):
        args = _loads_lenient(m.group(2))
        if not isinstance(args, dict):
            continue
        results.append((m.group(1), args))
    return results


def _call_from_block(raw):
    data = _loads_lenient(raw.strip())
    if not isinstance(data, dict):
        return None
    name = data.get("tool")
    if not isinstance(name, str) or not name.strip():
        return None
    params = data.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        return None
    return ToolCall(name=name.strip(), arguments=params)


def parse_tool_call(text) -> Optional[ToolCall]:
    """Extract the first well-formed tool call from model text, or None."""
    if not text:
        return None

    for m in _TOOL_BLOCK_RE.finditer(text):
        call = _call_from_block(m.group(1))
        if call is not None:
            return call
        logger.debug(f"🧩 Ignoring malformed tool block: {m.group(1)[:80]}")

    tags = parse_function_tags(text)
    if tags:
        name, args = tags[0]
        return ToolCall(name=name, arguments=args)

    return None


def parse_fenced_block(text, tag):
    """Return the JSON object inside the first ```<tag> block, or None."""
    if not text:
        return None
    pattern = re.compile(r"```" + re.escape(tag) + r"\s*\n([\s\S]*?)\n?```")
    for m in pattern.finditer(text):
        data = _loads_lenient(m.group(1).strip())
        if isinstance(data, dict):
            return data
    return None


def strip_tool_markup(text):
    """Remove tool blocks, function tags and wrapped tool output from text."""
    if not text:
        return ""
    text = _TOOL_BLOCK_RE.sub("", text)
    text = _FUNCTION_TAG_RE.sub("", text)
    text = _TOOL_OUTPUT_RE.sub("", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def validate_tool_calls(calls) -> List[ToolCall]:
    """Keep structured calls that carry both a name and an id.

    Accepts ToolCall objects or dicts with id/name/arguments (an
    arguments string is decoded as JSON; undecodable becomes {}).
    """
    valid = []
    for raw in calls or []:
        if isinstance(raw, ToolCall):
            call = raw
        elif isinstance(raw, dict):
            args = raw.get("arguments", raw.get("input", {}))
            if isinstance(args, str):
                decoded = _loads_lenient(args) if args.strip() else {}
                args = decoded if isinstance(decoded, dict) else {}
            if not isinstance(args, dict):
                args = {}
            call = ToolCall(name=raw.get("name") or "", arguments=args, id=raw.get("id"))
        else:
            logger.warning(f"🧩 Dropping unrecognized tool call: {raw!r:.80}")
            continue

        if not call.name or not call.id:
            logger.warning(f"🧩 Dropping tool call without name/id: name={call.name!r} id={call.id!r}")
            continue
        valid.append(call)
    return valid
