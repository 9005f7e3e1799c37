"""
Tests for the vendor adapters and the role-routed model gateway.

HTTP is never touched: adapters are exercised by patching requests.post and
the gateway runs against scripted adapters.
"""

import json
import random
import unittest
from unittest.mock import MagicMock, patch

import requests

from counselor.config import ProviderConfig, RoleRoute
from counselor.errors import ProviderError
from counselor.providers import (
    AnthropicAdapter,
    ModelGateway,
    ModelRequest,
    OpenAICompatAdapter,
    build_adapter,
    StreamEvent,
    collect_stream,
)

from fakes import ScriptedAdapter, make_config, make_logger, text


def _response(status=200, payload=None, lines=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.json.return_value = payload or {}
    resp.text = json.dumps(payload or {})
    resp.iter_lines.return_value = lines or []
    return resp


def _openai_cfg(**kw):
    return ProviderConfig(name="openai", kind="openai-compat", base_url="https://api.openai.com/v1", api_key="sk-test", model="gpt-test", **kw)


def _anthropic_cfg():
    return ProviderConfig(name="anthropic", kind="anthropic", base_url="https://api.anthropic.com", api_key="ant-test", model="claude-test")


TOOLS = [{
    "type": "function",
    "function": {
        "name": "create_goal",
        "description": "Create a goal",
        "parameters": {"type": "object", "properties": {"title": {"type": "string"}}, "required": ["title"]},
    },
}]


class OpenAICompatAdapterTest(unittest.TestCase):

    @patch("counselor.providers.requests.post")
    def test_text_response_normalized(self, mock_post):
        """Test that a plain chat completion becomes a text output."""
        mock_post.return_value = _response(payload={
            "model": "gpt-test",
            "choices": [{"message": {"content": "Hello!"}, "finish_reason": "stop"}],
        })
        out = OpenAICompatAdapter(_openai_cfg()).generate(ModelRequest(messages=[{"role": "user", "content": "hi"}]))
        self.assertEqual(out.kind, "text")
        self.assertEqual(out.text, "Hello!")
        self.assertEqual(out.vendor, "openai")
        _, kwargs = mock_post.call_args
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk-test")
        self.assertEqual(kwargs["timeout"], 30)

    @patch("counselor.providers.requests.post")
    def test_tool_calls_normalized(self, mock_post):
        """Test that function tool calls keep their id, name and raw argument string."""
        mock_post.return_value = _response(payload={
            "choices": [{
                "message": {
                    "content": None,
                    "tool_calls": [{"id": "call_1", "type": "function", "function": {"name": "create_goal", "arguments": "{\"title\": \"X\"}"}}],
                },
                "finish_reason": "tool_calls",
            }],
        })
        out = OpenAICompatAdapter(_openai_cfg()).generate(ModelRequest(messages=[], tools=TOOLS, tool_choice="auto"))
        self.assertEqual(out.kind, "tool_calls")
        self.assertEqual(out.tool_calls, [{"id": "call_1", "name": "create_goal", "arguments": "{\"title\": \"X\"}"}])
        body = mock_post.call_args.kwargs["json"]
        self.assertEqual(body["tools"], TOOLS)
        self.assertEqual(body["tool_choice"], "auto")

    @patch("counselor.providers.requests.post")
    def test_content_filter_is_error(self, mock_post):
        """Test that a filtered completion normalizes to an error output."""
        mock_post.return_value = _response(payload={"choices": [{"message": {"content": ""}, "finish_reason": "content_filter"}]})
        out = OpenAICompatAdapter(_openai_cfg()).generate(ModelRequest(messages=[]))
        self.assertEqual(out.kind, "error")

    @patch("counselor.providers.requests.post")
    def test_rate_limit_is_retryable(self, mock_post):
        """Test that HTTP 429 raises a retryable ProviderError."""
        mock_post.return_value = _response(status=429, payload={"error": {"message": "slow down"}})
        with self.assertRaises(ProviderError) as ctx:
            OpenAICompatAdapter(_openai_cfg()).generate(ModelRequest(messages=[]))
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.vendor, "openai")

    @patch("counselor.providers.requests.post")
    def test_auth_failure_is_not_retryable(self, mock_post):
        """Test that HTTP 401 raises a non-retryable ProviderError."""
        mock_post.return_value = _response(status=401, payload={"error": {"message": "bad key"}})
        with self.assertRaises(ProviderError) as ctx:
            OpenAICompatAdapter(_openai_cfg()).generate(ModelRequest(messages=[]))
        self.assertFalse(ctx.exception.retryable)

    @patch("counselor.providers.requests.post")
    def test_timeout_is_retryable(self, mock_post):
        """Test that a transport timeout is classified as retryable."""
        mock_post.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(ProviderError) as ctx:
            OpenAICompatAdapter(_openai_cfg()).generate(ModelRequest(messages=[]))
        self.assertTrue(ctx.exception.retryable)

    @patch("counselor.providers.requests.post")
    def test_gemini_key_goes_in_query_params(self, mock_post):
        """Test that the Gemini compat endpoint receives the key as a query parameter."""
        cfg = ProviderConfig(
            name="gemini-openai-compat",
            kind="openai-compat",
            base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
            api_key="g-key",
            model="gemini-test",
        )
        mock_post.return_value = _response(payload={"choices": [{"message": {"content": "ok"}}]})
        OpenAICompatAdapter(cfg).generate(ModelRequest(messages=[]))
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions")
        self.assertEqual(kwargs["params"], {"key": "g-key"})

    @patch("counselor.providers.requests.post")
    def test_streaming_accumulates_text_and_tool_deltas(self, mock_post):
        """Test that SSE chunks produce deltas and a final output with merged tool arguments."""
        chunks = [
            {"choices": [{"delta": {"content": "Let me "}}]},
            {"choices": [{"delta": {"content": "save that."}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "create_goal", "arguments": "{\"ti"}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "tle\": \"X\"}"}}]}, "finish_reason": "tool_calls"}]},
        ]
        lines = [f"data: {json.dumps(c)}" for c in chunks] + ["", "data: [DONE]"]
        mock_post.return_value = _response(lines=lines)

        deltas = []
        out = collect_stream(OpenAICompatAdapter(_openai_cfg()).generate_streaming(ModelRequest(messages=[])), deltas.append)
        self.assertEqual(deltas, ["Let me ", "save that."])
        self.assertEqual(out.text, "Let me save that.")
        self.assertEqual(out.tool_calls, [{"id": "c1", "name": "create_goal", "arguments": "{\"title\": \"X\"}"}])
        self.assertTrue(mock_post.call_args.kwargs["stream"])


    @patch("counselor.providers.requests.post")
    def test_slow_stream_hits_overall_deadline(self, mock_post):
        """Test that a stream dripping past the timeout raises a retryable error."""
        lines = [f"data: {json.dumps({'choices': [{'delta': {'content': w}}]})}" for w in ("Hel", "lo", "!")]
        mock_post.return_value = _response(lines=lines)
        ticks = [0.0, 1.0]
        deltas = []
        with patch("counselor.providers.time.monotonic", side_effect=lambda: ticks.pop(0) if ticks else 10.0):
            with self.assertRaises(ProviderError) as ctx:
                collect_stream(OpenAICompatAdapter(_openai_cfg(timeout=5.0)).generate_streaming(ModelRequest(messages=[])), deltas.append)
        self.assertTrue(ctx.exception.retryable)
        self.assertIn("exceeded 5.0s", str(ctx.exception))
        self.assertEqual(deltas, ["Hel"])
        mock_post.return_value.close.assert_called_once()


class AnthropicAdapterTest(unittest.TestCase):

    @patch("counselor.providers.requests.post")
    def test_request_shape(self, mock_post):
        """Test system extraction, tool conversion and headers on the Messages API."""
        mock_post.return_value = _response(payload={"content": [{"type": "text", "text": "hi"}], "stop_reason": "end_turn"})
        AnthropicAdapter(_anthropic_cfg()).generate(ModelRequest(
            messages=[{"role": "system", "content": "be kind"}, {"role": "user", "content": "hello"}],
            tools=TOOLS,
            tool_choice="required",
        ))
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://api.anthropic.com/v1/messages")
        body = kwargs["json"]
        self.assertEqual(body["system"], "be kind")
        self.assertEqual(body["messages"], [{"role": "user", "content": "hello"}])
        self.assertEqual(body["tools"][0]["name"], "create_goal")
        self.assertIn("input_schema", body["tools"][0])
        self.assertEqual(body["tool_choice"], {"type": "any"})
        self.assertEqual(kwargs["headers"]["x-api-key"], "ant-test")
        self.assertIn("anthropic-version", kwargs["headers"])

    @patch("counselor.providers.requests.post")
    def test_tool_use_blocks_normalized(self, mock_post):
        """Test that tool_use blocks become tool calls with decoded input."""
        mock_post.return_value = _response(payload={
            "model": "claude-test",
            "content": [
                {"type": "text", "text": "Saving it."},
                {"type": "tool_use", "id": "toolu_1", "name": "create_goal", "input": {"title": "X"}},
            ],
            "stop_reason": "tool_use",
        })
        out = AnthropicAdapter(_anthropic_cfg()).generate(ModelRequest(messages=[]))
        self.assertEqual(out.kind, "tool_calls")
        self.assertEqual(out.text, "Saving it.")
        self.assertEqual(out.tool_calls, [{"id": "toolu_1", "name": "create_goal", "arguments": {"title": "X"}}])

    @patch("counselor.providers.requests.post")
    def test_streaming_events(self, mock_post):
        """Test that content block events stream text and assemble tool input JSON."""
        events = [
            {"type": "message_start", "message": {}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "On it"}},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "toolu_9", "name": "create_goal"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{\"title\":"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": " \"X\"}"}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
            {"type": "message_stop"},
        ]
        lines = []
        for e in events:
            lines += [f"event: {e['type']}", f"data: {json.dumps(e)}", ""]
        mock_post.return_value = _response(lines=lines)

        deltas = []
        out = collect_stream(AnthropicAdapter(_anthropic_cfg()).generate_streaming(ModelRequest(messages=[])), deltas.append)
        self.assertEqual(deltas, ["On it"])
        self.assertEqual(out.finish_reason, "tool_use")
        self.assertEqual(out.tool_calls, [{"id": "toolu_9", "name": "create_goal", "arguments": "{\"title\": \"X\"}"}])

    @patch("counselor.providers.requests.post")
    def test_overloaded_stream_error_is_retryable(self, mock_post):
        """Test that an overloaded_error event raises a retryable ProviderError."""
        err = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        mock_post.return_value = _response(lines=[f"data: {json.dumps(err)}"])
        with self.assertRaises(ProviderError) as ctx:
            collect_stream(AnthropicAdapter(_anthropic_cfg()).generate_streaming(ModelRequest(messages=[])))
        self.assertTrue(ctx.exception.retryable)

    def test_build_adapter_by_kind(self):
        """Test that adapters are selected from the kind registry."""
        self.assertIsInstance(build_adapter(_anthropic_cfg()), AnthropicAdapter)
        self.assertIsInstance(build_adapter(_openai_cfg()), OpenAICompatAdapter)


class DroppingStreamAdapter(ScriptedAdapter):
    """Drops its first stream after one delta."""

    def generate_streaming(self, request):
        if self.calls == 0:
            self.requests.append(request)
            yield StreamEvent(type="delta", text="Hello ")
            raise ProviderError("connection reset mid-stream", self.name, retryable=True)
        yield from super().generate_streaming(request)


class ModelGatewayTest(unittest.TestCase):

    def _gateway(self, adapters, vendors=None):
        cfg = make_config(vendors or list(adapters))
        self.sleeps = []
        return ModelGateway(cfg, make_logger(cfg), adapters=adapters, sleep=self.sleeps.append, rng=random.Random(7))

    def test_retry_twice_then_success(self):
        """Test two timeouts then success yields the success with exactly two retry events."""
        timeout = ProviderError("timed out", "primary", retryable=True)
        adapter = ScriptedAdapter("primary", [timeout, timeout, text("ok")])
        result = self._gateway({"primary": adapter}).generate("counselor", [{"role": "user", "content": "hi"}])
        self.assertEqual(result.output.text, "ok")
        self.assertEqual(len(result.retry_events), 2)
        self.assertEqual([e.attempt for e in result.retry_events], [1, 2])
        self.assertEqual(result.attempts, 3)
        self.assertEqual(len(self.sleeps), 2)

    def test_requests_timeout_is_retried(self):
        """Test that a raw requests.Timeout from an adapter is treated as retryable."""
        adapter = ScriptedAdapter("primary", [requests.Timeout("slow"), text("ok")])
        result = self._gateway({"primary": adapter}).generate("counselor", [])
        self.assertEqual(result.output.text, "ok")
        self.assertEqual(len(result.retry_events), 1)

    def test_backoff_delays_grow(self):
        """Test that real backoff delays grow between retries and stay under the cap."""
        cfg = make_config(["primary"])
        cfg.retry.base_delay = 0.5
        cfg.retry.jitter = 0.2
        cfg.retry.max_delay = 8.0
        sleeps = []
        err = ProviderError("503", "primary", retryable=True)
        adapter = ScriptedAdapter("primary", [err, err, text("ok")])
        ModelGateway(cfg, make_logger(cfg), adapters={"primary": adapter}, sleep=sleeps.append).generate("counselor", [])
        self.assertEqual(len(sleeps), 2)
        self.assertTrue(0.4 <= sleeps[0] <= 0.6)
        self.assertTrue(0.8 <= sleeps[1] <= 1.2)

    def test_fallback_to_next_vendor(self):
        """Test that exhausting the preferred vendor falls back to the next one."""
        err = ProviderError("503", "primary", retryable=True)
        primary = ScriptedAdapter("primary", [err, err, err])
        backup = ScriptedAdapter("backup", [text("from backup", vendor="backup")])
        result = self._gateway({"primary": primary, "backup": backup}).generate("counselor", [])
        self.assertEqual(result.vendor, "backup")
        self.assertEqual(primary.calls, 3)
        self.assertEqual(len(result.retry_events), 2)

    def test_non_retryable_propagates_immediately(self):
        """Test that an auth failure is not retried and does not fall back."""
        primary = ScriptedAdapter("primary", [ProviderError("401", "primary", retryable=False, status_code=401)])
        backup = ScriptedAdapter("backup", [text("never")])
        with self.assertRaises(ProviderError) as ctx:
            self._gateway({"primary": primary, "backup": backup}).generate("counselor", [])
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(primary.calls, 1)
        self.assertEqual(backup.calls, 0)

    def test_all_vendors_exhausted(self):
        """Test that the final error carries every retry event."""
        err = ProviderError("503", "primary", retryable=True)
        adapter = ScriptedAdapter("primary", [err, err, err])
        with self.assertRaises(ProviderError) as ctx:
            self._gateway({"primary": adapter}).generate("counselor", [])
        self.assertEqual(len(ctx.exception.context["retry_events"]), 2)

    def test_vendor_without_tool_support_skipped_when_tools_requested(self):
        """Test that tool requests skip vendors lacking tool support."""
        primary = ScriptedAdapter("primary", [text("no tools")], supports_tools=False)
        backup = ScriptedAdapter("backup", [text("tools ok", vendor="backup")])
        result = self._gateway({"primary": primary, "backup": backup}).generate("counselor", [], tools=TOOLS, tool_choice="auto")
        self.assertEqual(result.vendor, "backup")
        self.assertEqual(primary.calls, 0)
        self.assertEqual(backup.requests[0].tools, TOOLS)

    def test_tier_route_is_used(self):
        """Test that a role:tier route takes precedence over the base role route."""
        primary = ScriptedAdapter("primary", [])
        backup = ScriptedAdapter("backup", [text("tiered", vendor="backup")])
        gateway = self._gateway({"primary": primary, "backup": backup})
        gateway.config.routes["counselor:paid"] = RoleRoute(role="counselor", vendors=["backup"], models={"backup": "big"})
        result = gateway.generate("counselor", [], tier="paid")
        self.assertEqual(result.vendor, "backup")
        self.assertEqual(backup.requests[0].model, "big")

    def test_unconfigured_vendor_is_skipped(self):
        """Test that vendors without credentials are skipped by the route."""
        cfg = make_config(["primary"])
        cfg.providers["ghost"] = ProviderConfig(name="ghost", kind="openai-compat", base_url="http://x", api_key=None)
        cfg.routes["counselor"] = RoleRoute(role="counselor", vendors=["ghost", "primary"])
        adapter = ScriptedAdapter("primary", [text("ok")])
        result = ModelGateway(cfg, make_logger(cfg), adapters={"primary": adapter}, sleep=lambda s: None).generate("counselor", [])
        self.assertEqual(result.vendor, "primary")

    def test_streaming_passes_deltas(self):
        """Test that on_delta receives streamed text through the gateway."""
        adapter = ScriptedAdapter("primary", [text("hello there")])
        deltas = []
        result = self._gateway({"primary": adapter}).generate("counselor", [], on_delta=deltas.append)
        self.assertEqual("".join(deltas).strip(), "hello there")
        self.assertEqual(result.output.text, "hello there")

    def test_retries_are_logged(self):
        """Test that each retry writes a provider_retry event."""
        err = ProviderError("503", "primary", retryable=True)
        cfg = make_config(["primary"])
        logger = make_logger(cfg)
        adapter = ScriptedAdapter("primary", [err, text("ok")])
        ModelGateway(cfg, logger, adapters={"primary": adapter}, sleep=lambda s: None).generate("counselor", [])
        self.assertEqual(len(logger.read("provider_retry")), 1)

    def test_retried_stream_does_not_repeat_text(self):
        """Test that deltas from a stream that failed mid-way never reach on_delta."""
        adapter = DroppingStreamAdapter("primary", [text("Hello Alex")])
        deltas = []
        result = self._gateway({"primary": adapter}).generate("counselor", [], on_delta=deltas.append)
        self.assertEqual(result.output.text, "Hello Alex")
        self.assertEqual("".join(deltas).strip(), "Hello Alex")
        self.assertEqual(len(result.retry_events), 1)
        self.assertEqual(adapter.calls, 2)
