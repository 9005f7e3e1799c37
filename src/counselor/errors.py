from typing import Any, Dict, List, Optional

import requests


RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class CounselorError(Exception):
    """Base exception for all counselor engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ConfigurationError(CounselorError):
    """Raised when there are configuration issues."""
    pass


class StoreError(CounselorError):
    """Raised by profile/conversation store implementations on read or write failure."""

    def __init__(self, message: str, operation: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.operation = operation


class ContextUnavailable(CounselorError):
    """Raised when the stores backing a student's context cannot be read."""

    def __init__(self, message: str, student_id: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.student_id = student_id


class ProviderError(CounselorError):
    """Raised when there are LLM provider issues."""

    def __init__(
        self,
        message: str,
        vendor: Optional[str] = None,
        retryable: bool = False,
        attempts: int = 0,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.vendor = vendor
        self.retryable = retryable
        self.attempts = attempts
        self.status_code = status_code


class MalformedOutput(CounselorError):
    """Raised inside the parser when model output violates its schema."""

    def __init__(self, message: str, raw: Optional[str] = None, schema_tag: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.raw = raw
        self.schema_tag = schema_tag


class UnknownTool(CounselorError):
    """Raised when a tool call names a tool that is not registered."""

    def __init__(self, message: str, tool_name: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.tool_name = tool_name


class InvalidArguments(CounselorError):
    """Raised when tool call arguments do not match the tool's schema."""

    def __init__(self, message: str, tool_name: Optional[str] = None, errors: Optional[List[str]] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.tool_name = tool_name
        self.errors = errors or []


class ToolExecutionError(CounselorError):
    """Raised when a tool handler fails to apply its write."""

    def __init__(self, message: str, tool_name: Optional[str] = None, call_id: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.tool_name = tool_name
        self.call_id = call_id


class QuotaExceeded(CounselorError):
    """Raised when the entitlement gate denies a turn."""

    def __init__(self, message: str, tier: Optional[str] = None, reason: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.tier = tier
        self.reason = reason


class TemplateError(CounselorError):
    """Raised when template processing fails."""

    def __init__(self, message: str, template_path: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.template_path = template_path


def handle_provider_error(e: Exception, vendor: str, attempts: int = 0) -> ProviderError:
    """Convert generic exceptions to ProviderError with a retryable classification."""
    if isinstance(e, ProviderError):
        if e.vendor is None:
            e.vendor = vendor
        e.attempts = max(e.attempts, attempts)
        return e

    context = {
        "original_error": str(e),
        "error_type": type(e).__name__
    }

    if isinstance(e, requests.Timeout):
        return ProviderError(f"{vendor} timed out: {e}", vendor, retryable=True, attempts=attempts, context=context)
    if isinstance(e, requests.ConnectionError):
        return ProviderError(f"{vendor} unreachable: {e}", vendor, retryable=True, attempts=attempts, context=context)

    status_code = getattr(e, "status_code", None)
    response = getattr(e, "response", None)
    if status_code is None and response is not None:
        status_code = getattr(response, "status_code", None)
    if response is not None:
        context["response"] = str(response)[:500]
    if status_code is not None:
        context["status_code"] = status_code

    retryable = status_code in RETRYABLE_STATUS_CODES
    return ProviderError(str(e), vendor, retryable=retryable, attempts=attempts, status_code=status_code, context=context)


def handle_tool_error(e: Exception, tool_name: str, call_id: Optional[str] = None) -> ToolExecutionError:
    """Convert handler exceptions to ToolExecutionError with context."""
    if isinstance(e, ToolExecutionError):
        return e

    context = {
        "original_error": str(e),
        "error_type": type(e).__name__
    }

    return ToolExecutionError(f"Tool '{tool_name}' failed: {e}", tool_name, call_id, context)


def handle_template_error(e: Exception, template_path: str) -> TemplateError:
    """Convert generic exceptions to TemplateError with context."""
    if isinstance(e, TemplateError):
        return e

    context = {
        "original_error": str(e),
        "error_type": type(e).__name__
    }

    return TemplateError(f"Template '{template_path}' failed: {e}", template_path, context)
