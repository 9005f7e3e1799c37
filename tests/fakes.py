"""Test doubles shared by the engine tests."""

import json
import tempfile
import threading
from typing import Any, Dict, Iterator, List, Optional, Union

from counselor.config import EngineConfig, ProviderConfig, RetryPolicy, RoleRoute
from counselor.constants import SUPPORTED_ROLES
from counselor.providers import ModelRequest, ProviderAdapter, RawModelOutput, StreamEvent
from counselor.runlog import RunLogger


Step = Union[RawModelOutput, Exception]


def text(content: str, vendor: str = "primary") -> RawModelOutput:
    return RawModelOutput(kind="text", text=content, vendor=vendor, model="fake-model")


def tool_calls(*calls: Dict[str, Any], content: str = "", vendor: str = "primary") -> RawModelOutput:
    """Each call is {"name", "arguments"[, "id"]}."""
    normalized = [
        {"id": c.get("id"), "name": c["name"], "arguments": c.get("arguments", {})}
        for c in calls
    ]
    return RawModelOutput(kind="tool_calls", text=content, tool_calls=normalized, vendor=vendor, model="fake-model")


def envelope(obj: Dict[str, Any], vendor: str = "primary") -> RawModelOutput:
    return text(json.dumps(obj), vendor=vendor)


class ScriptedAdapter(ProviderAdapter):
    """Replays a script of outputs or exceptions and records every request."""

    def __init__(self, name: str = "primary", script: Optional[List[Step]] = None, supports_tools: bool = True):
        super().__init__(ProviderConfig(name=name, kind="openai-compat", base_url="http://fake.invalid", api_key="test"))
        self.script: List[Step] = list(script or [])
        self.requests: List[ModelRequest] = []
        self.supports_tools = supports_tools
        self._lock = threading.Lock()
        self.default: Optional[RawModelOutput] = None

    def push(self, *steps: Step) -> None:
        self.script.extend(steps)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def _next(self, request: ModelRequest) -> RawModelOutput:
        with self._lock:
            self.requests.append(request)
            if self.script:
                step = self.script.pop(0)
            elif self.default is not None:
                step = self.default
            else:
                raise AssertionError(f"ScriptedAdapter '{self.name}' ran out of scripted responses")
        if isinstance(step, Exception):
            raise step
        return step

    def generate(self, request: ModelRequest) -> RawModelOutput:
        return self._next(request)

    def generate_streaming(self, request: ModelRequest) -> Iterator[StreamEvent]:
        output = self._next(request)
        for word in output.text.split(" "):
            if word:
                yield StreamEvent(type="delta", text=word + " ")
        yield StreamEvent(type="final", output=output)


def make_config(vendors: Optional[List[str]] = None, **overrides: Any) -> EngineConfig:
    """Every role routed to ``vendors`` in order, with instant retries."""
    vendors = vendors or ["primary"]
    providers = {
        v: ProviderConfig(name=v, kind="openai-compat", base_url="http://fake.invalid", api_key="test", model="fake-model")
        for v in vendors
    }
    routes = {role: RoleRoute(role=role, vendors=list(vendors)) for role in SUPPORTED_ROLES}
    cfg = EngineConfig(
        providers=providers,
        routes=routes,
        retry=RetryPolicy(attempts=3, base_delay=0.0, jitter=0.0, max_delay=0.0),
        secretary_tiers=[],
        log_dir=tempfile.mkdtemp(prefix="counselor-test-"),
    )
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def make_logger(cfg: EngineConfig) -> RunLogger:
    return RunLogger(cfg.log_dir)
