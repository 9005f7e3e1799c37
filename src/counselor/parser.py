from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import CounselorError, InvalidArguments, MalformedOutput, UnknownTool
from .ids import new_id
from .models import ParsedModelOutput, ToolCall
from .providers import RawModelOutput
from .runlog import RunLogger
from .tools import ToolRegistry


@dataclass(frozen=True)
class SchemaRule:
    """Validation rules for one prompt schema tag.

    ``native`` rules accept plain reply text and/or vendor tool calls;
    otherwise the text must hold a JSON object with ``required`` keys.
    ``tools_key`` names the envelope list of ``{"name", "args"}`` calls and
    ``reply_key`` the field surfaced as the reply text.
    """
    tag: str
    native: bool = False
    required: Tuple[str, ...] = ()
    tools_key: Optional[str] = None
    reply_key: Optional[str] = None


SCHEMA_RULES: Dict[str, SchemaRule] = {
    "onboarding.v2": SchemaRule("onboarding.v2", native=True),
    "counselor.v3": SchemaRule("counselor.v3", native=True),
    "parser.v1": SchemaRule("parser.v1", required=("tools",), tools_key="tools", reply_key="acknowledgment"),
    "secretary.v2": SchemaRule("secretary.v2", required=("can_handle",), tools_key="tools", reply_key="response"),
    "objectives.v1": SchemaRule("objectives.v1", required=("objectives",)),
    "summary.v1": SchemaRule("summary.v1", required=("digest",)),
}

_FENCE = re.compile(r"^```(?:json|JSON)?\s*|\s*```$")


def _strip_fences(text: str) -> str:
    return _FENCE.sub("", text.strip()).strip()


def _extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First top-level JSON object in ``text``, tolerating fences and surrounding prose."""
    cleaned = _strip_fences(text)
    try:
        val = json.loads(cleaned)
        if isinstance(val, dict):
            return val
    except json.JSONDecodeError:
        pass
    buf: List[str] = []
    depth = 0
    in_str = False
    escaped = False
    for ch in cleaned:
        if depth == 0 and ch != "{":
            continue
        buf.append(ch)
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    val = json.loads("".join(buf))
                except json.JSONDecodeError:
                    buf = []
                    continue
                if isinstance(val, dict):
                    return val
                buf = []
    return None


class OutputParser:
    """Turns raw provider output into a ParsedModelOutput; never raises."""

    def __init__(self, registry: ToolRegistry, logger: Optional[RunLogger] = None) -> None:
        self.registry = registry
        self.logger = logger

    def parse(self, raw: RawModelOutput, schema_tag: str, registry: Optional[ToolRegistry] = None) -> ParsedModelOutput:
        registry = registry or self.registry
        raw_text = raw.text or ""
        try:
            rule = SCHEMA_RULES.get(schema_tag)
            if rule is None:
                raise MalformedOutput(f"no parser rules for schema '{schema_tag}'", raw_text, schema_tag)
            if raw.kind == "error":
                raise MalformedOutput(f"provider reported an error: {raw.error}", raw_text, schema_tag)
            if rule.native:
                return self._parse_native(raw, rule, registry)
            return self._parse_envelope(raw, rule, registry)
        except (CounselorError, ValueError, TypeError, KeyError) as e:
            reason = str(e) or type(e).__name__
            if self.logger is not None:
                self.logger.log(
                    "output_malformed",
                    schema=schema_tag,
                    vendor=raw.vendor,
                    reason=reason,
                    raw_preview=raw_text[:300],
                    tool_calls=[c.get("name") for c in raw.tool_calls],
                )
            return ParsedModelOutput.malformed(raw_text or json.dumps(raw.tool_calls, default=str), reason)

    def _validate_call(self, name: Any, arguments: Any, call_id: Optional[str], registry: ToolRegistry) -> ToolCall:
        if not isinstance(name, str) or not name:
            raise MalformedOutput("tool call is missing a name")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                raise MalformedOutput(f"tool '{name}': arguments are not valid JSON ({e.msg})")
        if arguments is None:
            arguments = {}
        try:
            registry.validate(name, arguments)
        except (UnknownTool, InvalidArguments) as e:
            raise MalformedOutput(str(e))
        return ToolCall(name=name, arguments=arguments, call_id=call_id or new_id("call"))

    def _parse_native(self, raw: RawModelOutput, rule: SchemaRule, registry: ToolRegistry) -> ParsedModelOutput:
        text = (raw.text or "").strip()
        if raw.tool_calls:
            calls = [self._validate_call(c.get("name"), c.get("arguments"), c.get("id"), registry) for c in raw.tool_calls]
            return ParsedModelOutput.tool_calls(calls, content=text or None)
        if not text:
            raise MalformedOutput("empty response: no text and no tool calls", raw.text, rule.tag)
        return ParsedModelOutput.text(text)

    def _parse_envelope(self, raw: RawModelOutput, rule: SchemaRule, registry: ToolRegistry) -> ParsedModelOutput:
        if raw.tool_calls and not raw.text:
            raise MalformedOutput(f"expected a JSON object for '{rule.tag}', got native tool calls", None, rule.tag)
        obj = _extract_json_object(raw.text or "")
        if obj is None:
            raise MalformedOutput(f"expected a JSON object for '{rule.tag}', got free text", raw.text, rule.tag)
        missing = [k for k in rule.required if k not in obj]
        if missing:
            raise MalformedOutput(f"missing required field(s): {', '.join(missing)}", raw.text, rule.tag)
        self._check_envelope(obj, rule)

        calls: List[ToolCall] = []
        if rule.tools_key:
            entries = obj.get(rule.tools_key) or []
            if not isinstance(entries, list):
                raise MalformedOutput(f"field '{rule.tools_key}' must be a list", raw.text, rule.tag)
            for i, entry in enumerate(entries):
                if not isinstance(entry, Mapping):
                    raise MalformedOutput(f"tool entry {i} must be an object", raw.text, rule.tag)
                args = entry.get("args", entry.get("arguments"))
                calls.append(self._validate_call(entry.get("name"), args, entry.get("id"), registry))

        reply = obj.get(rule.reply_key) if rule.reply_key else None
        reply = reply.strip() if isinstance(reply, str) else None
        data = {k: v for k, v in obj.items() if k != rule.tools_key}
        if calls:
            return ParsedModelOutput.tool_calls(calls, content=reply, data=data)
        return ParsedModelOutput.text(reply or "", data=data)

    @staticmethod
    def _check_envelope(obj: Dict[str, Any], rule: SchemaRule) -> None:
        if rule.tag == "secretary.v2":
            if not isinstance(obj.get("can_handle"), bool):
                raise MalformedOutput("field 'can_handle' must be a boolean")
            if obj["can_handle"] and not (isinstance(obj.get("response"), str) and obj["response"].strip()):
                raise MalformedOutput("field 'response' is required when can_handle is true")
        elif rule.tag == "objectives.v1":
            items = obj.get("objectives")
            if not isinstance(items, list) or not all(isinstance(x, str) and x.strip() for x in items):
                raise MalformedOutput("field 'objectives' must be a list of non-empty strings")
        elif rule.tag == "summary.v1":
            if not isinstance(obj.get("digest"), str) or not obj["digest"].strip():
                raise MalformedOutput("field 'digest' must be a non-empty string")
