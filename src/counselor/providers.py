import json
import random
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from .config import EngineConfig, ProviderConfig, RoleRoute
from .constants import ANTHROPIC_API_VERSION, DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from .errors import RETRYABLE_STATUS_CODES, ConfigurationError, ProviderError, handle_provider_error
from .runlog import RunLogger


@dataclass
class ModelRequest:
    messages: List[Dict[str, Any]]
    model: Optional[str] = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: Optional[int] = None
    # OpenAI function-tool format; adapters convert as needed
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[str] = None


@dataclass
class RawModelOutput:
    """Vendor-neutral model response: ``text``, ``tool_calls`` or ``error``.

    Each tool call is ``{"id", "name", "arguments"}`` where arguments is the
    vendor's payload as received (a JSON string or an already-decoded object).
    """
    kind: str
    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    vendor: Optional[str] = None
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    error: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class StreamEvent:
    type: str  # "delta" | "final"
    text: str = ""
    output: Optional[RawModelOutput] = None


def _http_error(vendor: str, resp: requests.Response) -> ProviderError:
    try:
        data = resp.json()
    except ValueError:
        data = {"text": resp.text[:500]}
    return ProviderError(
        f"HTTP {resp.status_code}: {data}",
        vendor,
        retryable=resp.status_code in RETRYABLE_STATUS_CODES,
        status_code=resp.status_code,
        context={"status_code": resp.status_code, "response_data": data},
    )


def _sse_data(lines: Iterator[Any]) -> Iterator[str]:
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        if not line or not line.startswith("data:"):
            continue
        yield line[5:].strip()


class ProviderAdapter(ABC):
    supports_tools: bool = True
    supports_streaming: bool = True

    def __init__(self, cfg: ProviderConfig):
        self.cfg = cfg

    @property
    def name(self) -> str:
        return self.cfg.name

    def _post(self, url: str, headers: Dict[str, str], body: Dict[str, Any], params: Optional[Dict[str, Any]] = None, stream: bool = False) -> requests.Response:
        try:
            resp = requests.post(url, headers=headers, params=params or {}, json=body, timeout=self.cfg.timeout, stream=stream)
        except requests.RequestException as e:
            raise handle_provider_error(e, self.name)
        if not resp.ok:
            raise _http_error(self.name, resp)
        return resp

    def _lines(self, resp: requests.Response, deadline: float) -> Iterator[str]:
        """Stream lines, failing once the whole stream outlives ``cfg.timeout``."""
        for line in resp.iter_lines(decode_unicode=True):
            if time.monotonic() > deadline:
                raise ProviderError(
                    f"{self.name} stream exceeded {self.cfg.timeout}s",
                    self.name,
                    retryable=True,
                    context={"timeout": self.cfg.timeout},
                )
            yield line

    def _json(self, resp: requests.Response) -> Dict[str, Any]:
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"Invalid JSON from {self.name}: {e}", self.name, context={"body": resp.text[:500]})

    @abstractmethod
    def generate(self, request: ModelRequest) -> RawModelOutput:
        ...

    @abstractmethod
    def generate_streaming(self, request: ModelRequest) -> Iterator[StreamEvent]:
        ...


class OpenAICompatAdapter(ProviderAdapter):
    """OpenAI chat completions and the compatible endpoints of Groq and Gemini."""

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        if self.cfg.extra_headers:
            headers.update(self.cfg.extra_headers)
        return headers

    def _params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if "generativelanguage.googleapis.com" in self.cfg.base_url and self.cfg.api_key:
            params["key"] = self.cfg.api_key
        if self.cfg.extra_params:
            params.update(self.cfg.extra_params)
        return params

    def _url(self) -> str:
        return self.cfg.base_url.rstrip("/") + "/chat/completions"

    def _body(self, request: ModelRequest, stream: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": request.model or self.cfg.model,
            "messages": request.messages,
            "temperature": request.temperature,
        }
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.tools:
            body["tools"] = request.tools
            if request.tool_choice:
                body["tool_choice"] = request.tool_choice
        if stream:
            body["stream"] = True
        return body

    def normalize(self, data: Dict[str, Any], model: Optional[str]) -> RawModelOutput:
        if data.get("error"):
            return RawModelOutput(kind="error", vendor=self.name, model=model, error=str(data["error"]), raw=data)
        choices = data.get("choices") or []
        if not choices:
            return RawModelOutput(kind="error", vendor=self.name, model=model, error="response has no choices", raw=data)
        choice = choices[0]
        message = choice.get("message") or {}
        finish = choice.get("finish_reason")
        if finish == "content_filter":
            return RawModelOutput(kind="error", vendor=self.name, model=model, finish_reason=finish, error="response blocked by content filter", raw=data)
        calls = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            calls.append({"id": tc.get("id"), "name": fn.get("name"), "arguments": fn.get("arguments")})
        text = message.get("content") or ""
        kind = "tool_calls" if calls else "text"
        return RawModelOutput(kind=kind, text=text, tool_calls=calls, vendor=self.name, model=data.get("model") or model, finish_reason=finish, raw=data)

    def generate(self, request: ModelRequest) -> RawModelOutput:
        body = self._body(request)
        resp = self._post(self._url(), self._headers(), body, params=self._params())
        return self.normalize(self._json(resp), body["model"])

    def generate_streaming(self, request: ModelRequest) -> Iterator[StreamEvent]:
        body = self._body(request, stream=True)
        deadline = time.monotonic() + self.cfg.timeout
        resp = self._post(self._url(), self._headers(), body, params=self._params(), stream=True)
        text_parts: List[str] = []
        calls: Dict[int, Dict[str, Any]] = {}
        finish = None
        try:
            for payload in _sse_data(self._lines(resp, deadline)):
                if payload == "[DONE]":
                    break
                chunk = json.loads(payload)
                if chunk.get("error"):
                    raise ProviderError(f"{self.name} stream error: {chunk['error']}", self.name, context={"chunk": chunk})
                for choice in chunk.get("choices") or []:
                    delta = choice.get("delta") or {}
                    finish = choice.get("finish_reason") or finish
                    if delta.get("content"):
                        text_parts.append(delta["content"])
                        yield StreamEvent(type="delta", text=delta["content"])
                    for tc in delta.get("tool_calls") or []:
                        slot = calls.setdefault(tc.get("index", 0), {"id": None, "name": None, "arguments": ""})
                        fn = tc.get("function") or {}
                        slot["id"] = tc.get("id") or slot["id"]
                        slot["name"] = fn.get("name") or slot["name"]
                        slot["arguments"] += fn.get("arguments") or ""
        except (requests.RequestException, ValueError) as e:
            raise handle_provider_error(e, self.name)
        finally:
            resp.close()
        tool_calls = [calls[i] for i in sorted(calls)]
        yield StreamEvent(type="final", output=RawModelOutput(
            kind="tool_calls" if tool_calls else "text",
            text="".join(text_parts),
            tool_calls=tool_calls,
            vendor=self.name,
            model=body["model"],
            finish_reason=finish,
        ))


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API."""

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_API_VERSION,
        }
        if self.cfg.api_key:
            headers["x-api-key"] = self.cfg.api_key
        if self.cfg.extra_headers:
            headers.update(self.cfg.extra_headers)
        return headers

    def _url(self) -> str:
        return self.cfg.base_url.rstrip("/") + "/v1/messages"

    @staticmethod
    def _convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out = []
        for t in tools:
            fn = t.get("function") or t
            out.append({
                "name": fn["name"],
                "description": fn.get("description", ""),
                "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
            })
        return out

    def _body(self, request: ModelRequest, stream: bool = False) -> Dict[str, Any]:
        system = "\n\n".join(m["content"] for m in request.messages if m.get("role") == "system")
        messages = [{"role": m["role"], "content": m["content"]} for m in request.messages if m.get("role") != "system"]
        body: Dict[str, Any] = {
            "model": request.model or self.cfg.model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
            "temperature": request.temperature,
        }
        if system:
            body["system"] = system
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
            if request.tool_choice == "required":
                body["tool_choice"] = {"type": "any"}
            elif request.tool_choice == "auto":
                body["tool_choice"] = {"type": "auto"}
        if stream:
            body["stream"] = True
        return body

    def normalize(self, data: Dict[str, Any], model: Optional[str]) -> RawModelOutput:
        if data.get("type") == "error" or data.get("error"):
            return RawModelOutput(kind="error", vendor=self.name, model=model, error=str(data.get("error")), raw=data)
        text_parts = []
        calls = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                text_parts.append(block.get("text") or "")
            elif block.get("type") == "tool_use":
                calls.append({"id": block.get("id"), "name": block.get("name"), "arguments": block.get("input") or {}})
        stop = data.get("stop_reason")
        kind = "tool_calls" if calls else "text"
        return RawModelOutput(kind=kind, text="".join(text_parts), tool_calls=calls, vendor=self.name, model=data.get("model") or model, finish_reason=stop, raw=data)

    def generate(self, request: ModelRequest) -> RawModelOutput:
        body = self._body(request)
        resp = self._post(self._url(), self._headers(), body)
        return self.normalize(self._json(resp), body["model"])

    def generate_streaming(self, request: ModelRequest) -> Iterator[StreamEvent]:
        body = self._body(request, stream=True)
        deadline = time.monotonic() + self.cfg.timeout
        resp = self._post(self._url(), self._headers(), body, stream=True)
        text_parts: List[str] = []
        blocks: Dict[int, Dict[str, Any]] = {}
        stop = None
        try:
            for payload in _sse_data(self._lines(resp, deadline)):
                event = json.loads(payload)
                etype = event.get("type")
                if etype == "error":
                    err = event.get("error") or {}
                    raise ProviderError(
                        f"{self.name} stream error: {err.get('message', err)}",
                        self.name,
                        retryable=err.get("type") == "overloaded_error",
                        context={"event": event},
                    )
                if etype == "content_block_start":
                    block = event.get("content_block") or {}
                    if block.get("type") == "tool_use":
                        blocks[event.get("index", 0)] = {"id": block.get("id"), "name": block.get("name"), "partial": ""}
                elif etype == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        text_parts.append(delta.get("text", ""))
                        yield StreamEvent(type="delta", text=delta.get("text", ""))
                    elif delta.get("type") == "input_json_delta" and event.get("index", 0) in blocks:
                        blocks[event.get("index", 0)]["partial"] += delta.get("partial_json", "")
                elif etype == "message_delta":
                    stop = (event.get("delta") or {}).get("stop_reason") or stop
                elif etype == "message_stop":
                    break
        except (requests.RequestException, ValueError) as e:
            raise handle_provider_error(e, self.name)
        finally:
            resp.close()
        calls = [{"id": b["id"], "name": b["name"], "arguments": b["partial"] or "{}"} for _, b in sorted(blocks.items())]
        yield StreamEvent(type="final", output=RawModelOutput(
            kind="tool_calls" if calls else "text",
            text="".join(text_parts),
            tool_calls=calls,
            vendor=self.name,
            model=body["model"],
            finish_reason=stop,
        ))


ADAPTER_KINDS: Dict[str, type] = {
    "openai-compat": OpenAICompatAdapter,
    "anthropic": AnthropicAdapter,
}


def build_adapter(cfg: ProviderConfig) -> ProviderAdapter:
    cls = ADAPTER_KINDS.get(cfg.kind)
    if cls is None:
        raise ConfigurationError(f"Unknown adapter kind '{cfg.kind}' for provider '{cfg.name}'", {"kind": cfg.kind})
    return cls(cfg)


def collect_stream(events: Iterator[StreamEvent], on_delta: Optional[Callable[[str], None]] = None) -> RawModelOutput:
    final: Optional[RawModelOutput] = None
    for ev in events:
        if ev.type == "delta" and on_delta is not None and ev.text:
            on_delta(ev.text)
        elif ev.type == "final":
            final = ev.output
    if final is None:
        raise ProviderError("Stream ended without a final response", retryable=True)
    return final


@dataclass
class RetryEvent:
    vendor: str
    attempt: int
    delay: float
    error: str


@dataclass
class GatewayResult:
    output: RawModelOutput
    vendor: str
    model: Optional[str]
    attempts: int
    retry_events: List[RetryEvent] = field(default_factory=list)


class ModelGateway:
    """Role-based entry point to the vendors: route lookup, retries, fallback."""

    def __init__(
        self,
        config: EngineConfig,
        logger: RunLogger,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.logger = logger
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters or {})
        self._injected = set(self._adapters)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def adapter_for(self, vendor: str) -> ProviderAdapter:
        adapter = self._adapters.get(vendor)
        if adapter is None:
            cfg = self.config.providers.get(vendor)
            if cfg is None:
                raise ConfigurationError(f"Provider '{vendor}' is not configured", {"vendor": vendor})
            adapter = build_adapter(cfg)
            self._adapters[vendor] = adapter
        return adapter

    def available_vendors(self, route: RoleRoute, needs_tools: bool = False) -> List[str]:
        out = []
        for vendor in route.vendors:
            if vendor not in self._injected:
                cfg = self.config.providers.get(vendor)
                if cfg is None or not cfg.is_available():
                    self.logger.log("provider_unavailable", role=route.role, vendor=vendor, reason="not configured")
                    continue
            if needs_tools and not self.adapter_for(vendor).supports_tools:
                self.logger.log("provider_unavailable", role=route.role, vendor=vendor, reason="no tool support")
                continue
            out.append(vendor)
        return out

    def _call(self, adapter: ProviderAdapter, request: ModelRequest, on_delta: Optional[Callable[[str], None]]) -> RawModelOutput:
        if on_delta is not None and adapter.supports_streaming:
            # deltas of an attempt are held until it completes; a failed attempt emits nothing
            held: List[str] = []
            output = collect_stream(adapter.generate_streaming(request), held.append)
            if output.kind != "error":
                for delta in held:
                    on_delta(delta)
            return output
        return adapter.generate(request)

    def generate(
        self,
        role: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        tier: Optional[str] = None,
        on_delta: Optional[Callable[[str], None]] = None,
        turn_id: Optional[str] = None,
    ) -> GatewayResult:
        route = self.config.route_for(role, tier)
        policy = self.config.retry
        vendors = self.available_vendors(route, needs_tools=bool(tools))
        if not vendors:
            raise ProviderError(f"No available provider for role '{role}'", retryable=False, context={"route": route.vendors})

        retry_events: List[RetryEvent] = []
        total_attempts = 0
        last_error: Optional[ProviderError] = None
        for vendor in vendors:
            adapter = self.adapter_for(vendor)
            model = route.model_for(vendor, self.config.providers.get(vendor))
            request = ModelRequest(
                messages=messages,
                model=model,
                temperature=route.temperature,
                max_tokens=route.max_tokens,
                tools=tools,
                tool_choice=tool_choice if tools else None,
            )
            for attempt in range(1, policy.attempts + 1):
                total_attempts += 1
                t0 = time.time()
                try:
                    output = self._call(adapter, request, on_delta)
                    if output.kind == "error":
                        raise ProviderError(f"{vendor} returned an error: {output.error}", vendor, retryable=False, context={"finish_reason": output.finish_reason})
                except (ProviderError, requests.RequestException) as e:
                    err = handle_provider_error(e, vendor, attempt)
                    last_error = err
                    self.logger.log(
                        "provider_call",
                        turn_id=turn_id,
                        role=role,
                        vendor=vendor,
                        model=model,
                        attempt=attempt,
                        duration_sec=round(time.time() - t0, 3),
                        error=str(err),
                        retryable=err.retryable,
                    )
                    if not err.retryable:
                        err.context.setdefault("retry_events", [asdict(r) for r in retry_events])
                        raise err
                    if attempt < policy.attempts:
                        delay = policy.delay_for(attempt, self._rng.uniform(-1.0, 1.0))
                        event = RetryEvent(vendor=vendor, attempt=attempt, delay=round(delay, 3), error=str(err))
                        retry_events.append(event)
                        self.logger.log("provider_retry", turn_id=turn_id, role=role, **asdict(event))
                        self._sleep(delay)
                    continue
                self.logger.log(
                    "provider_call",
                    turn_id=turn_id,
                    role=role,
                    vendor=vendor,
                    model=output.model or model,
                    attempt=attempt,
                    duration_sec=round(time.time() - t0, 3),
                    kind=output.kind,
                    tool_calls=len(output.tool_calls),
                    output_preview=output.text[:200],
                    error=None,
                )
                return GatewayResult(output=output, vendor=vendor, model=output.model or model, attempts=total_attempts, retry_events=retry_events)
            self.logger.log("provider_fallback", turn_id=turn_id, role=role, vendor=vendor, error=str(last_error))

        raise ProviderError(
            f"All providers failed for role '{role}'. Last error: {last_error}",
            last_error.vendor if last_error else None,
            retryable=True,
            attempts=total_attempts,
            context={"retry_events": [asdict(r) for r in retry_events]},
        )
