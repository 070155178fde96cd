"""
Exception hierarchy and error handling utilities for scriptbridge.

Provides:
- Custom exception classes with error codes and remediation hints
- Error categorization (recoverable, fatal, validation, ...)
- Safe error message formatting (no sensitive data leak into scripts)
- Conversion of any exception into a structured ``ErrorInfo``
"""

from __future__ import annotations

import asyncio
import json
import re
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict


class ErrorInfo(BaseModel):
    """Structured error carried across the bridge and in failed results."""

    model_config = ConfigDict(frozen=True)

    message: str
    code: str | None = None
    fix: str | None = None


class ErrorCategory(Enum):
    """Error categories for classification."""
    RECOVERABLE = "recoverable"
    RETRYABLE = "retryable"
    FATAL = "fatal"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"


class ScriptBridgeError(Exception):
    """Base exception for all scriptbridge errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        category: ErrorCategory = ErrorCategory.FATAL,
        fix: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.fix = fix
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "category": self.category.value,
            "fix": self.fix,
            "details": self.details,
        }

    def to_error_info(self) -> ErrorInfo:
        return ErrorInfo(message=self.message, code=self.code, fix=self.fix)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(ScriptBridgeError):
    """Input validation error."""

    def __init__(self, message: str, field: str | None = None, fix: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            code="INVALID_INPUT",
            category=ErrorCategory.VALIDATION,
            fix=fix,
            details=details,
        )


class ExecutionTimeout(ScriptBridgeError):
    """The invocation ran past its timeout and the context was killed."""

    def __init__(self, timeout_ms: int):
        super().__init__(
            f"Script timed out after {timeout_ms}ms",
            code="TIMEOUT",
            category=ErrorCategory.TIMEOUT,
            fix="Break the script into smaller steps or increase the timeout.",
            details={"timeout_ms": timeout_ms},
        )


class ContextCreationFailure(ScriptBridgeError):
    """The isolated context could not be started."""

    def __init__(self, reason: str):
        super().__init__(
            f"Failed to start script context: {reason}",
            code="CONTEXT_CREATION_FAILED",
            category=ErrorCategory.FATAL,
            fix="Check that the configured Python interpreter exists and is executable.",
            details={"reason": reason},
        )


class ContextRuntimeError(ScriptBridgeError):
    """The context failed outside the script entry point (syntax error, crash, protocol violation)."""

    def __init__(self, message: str, exit_code: int | None = None, stderr_tail: list[str] | None = None):
        super().__init__(
            message,
            code="CONTEXT_ERROR",
            category=ErrorCategory.FATAL,
            fix="Check the script for syntax errors and avoid exiting the interpreter.",
            details={"exit_code": exit_code, "stderr_tail": list(stderr_tail or [])},
        )


class ScriptThrow(ScriptBridgeError):
    """An exception raised inside the script entry point."""

    def __init__(self, error: ErrorInfo):
        super().__init__(
            error.message,
            code=error.code or "SCRIPT_ERROR",
            category=ErrorCategory.RECOVERABLE,
            fix=error.fix,
        )
        self.error = error

    def to_error_info(self) -> ErrorInfo:
        return self.error.model_copy(update={"code": self.code})


class UnknownDispatchMethod(ScriptBridgeError):
    """Lookup miss in the dispatch table."""

    def __init__(self, key: str, available: Iterable[str]):
        names = list(available)
        super().__init__(
            f"Unknown host method: {key}",
            code="INVALID_INPUT",
            category=ErrorCategory.VALIDATION,
            fix=f"Use one of the registered host methods. Available: {', '.join(names)}",
            details={"key": key, "available": names},
        )


class DispatchFailure(ScriptBridgeError):
    """A host operation raised; wraps the cause's own message, code and fix when structured."""

    def __init__(self, key: str, cause: BaseException):
        info = describe_exception(cause)
        super().__init__(
            info.message,
            code=info.code or "DISPATCH_FAILED",
            category=classify_exception(cause)[1],
            fix=info.fix,
            details={"key": key, "exception_type": type(cause).__name__},
        )
        self.cause = cause


_SENSITIVE_PATTERNS = [
    re.compile(r"(api[_-]?key|token|secret|password|auth)[=:]\s*['\"]?([^\s'\"]+)['\"]?", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"[a-zA-Z0-9]{32,}"),
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
    re.compile(r"xox[baprs]-[a-zA-Z0-9\-]+"),
    re.compile(r"[0-9]{10,}:[a-zA-Z0-9_-]{30,}"),
]


def sanitize_error_message(message: str, replacement: str = "[REDACTED]") -> str:
    """Remove sensitive information from error messages."""
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def describe_exception(exc: BaseException) -> ErrorInfo:
    """
    Extract ``{message, code, fix}`` from an exception.

    Typed errors (``ScriptBridgeError`` or anything carrying string ``code``/``fix``
    attributes) keep their structure; everything else falls back to the
    stringified error.
    """
    if isinstance(exc, ScriptBridgeError):
        return ErrorInfo(
            message=sanitize_error_message(exc.message),
            code=exc.code,
            fix=exc.fix,
        )
    text = str(exc)
    message = sanitize_error_message(text) if text else type(exc).__name__
    code = getattr(exc, "code", None)
    fix = getattr(exc, "fix", None)
    return ErrorInfo(
        message=message,
        code=code if isinstance(code, str) else None,
        fix=fix if isinstance(fix, str) else None,
    )


def classify_exception(exc: BaseException) -> tuple[str, ErrorCategory, bool]:
    """
    Classify an exception and return (error_code, category, should_retry).

    Returns:
        Tuple of (error_code, category, should_retry)
    """
    exc_str = str(exc).lower()

    if isinstance(exc, ScriptBridgeError):
        return exc.code, exc.category, exc.category in (ErrorCategory.RETRYABLE, ErrorCategory.RATE_LIMIT)

    if isinstance(exc, FileNotFoundError):
        return "FILE_NOT_FOUND", ErrorCategory.NOT_FOUND, False

    if isinstance(exc, PermissionError):
        return "PERMISSION_DENIED", ErrorCategory.PERMISSION, False

    if isinstance(exc, asyncio.TimeoutError):
        return "TIMEOUT", ErrorCategory.TIMEOUT, True

    if isinstance(exc, ConnectionError):
        return "CONNECTION_ERROR", ErrorCategory.RETRYABLE, True

    if isinstance(exc, json.JSONDecodeError):
        return "JSON_PARSE_ERROR", ErrorCategory.VALIDATION, False

    if isinstance(exc, ValueError):
        return "INVALID_VALUE", ErrorCategory.VALIDATION, False

    if isinstance(exc, KeyError):
        return "MISSING_KEY", ErrorCategory.VALIDATION, False

    if isinstance(exc, TypeError):
        return "TYPE_ERROR", ErrorCategory.VALIDATION, False

    if "rate limit" in exc_str or "429" in exc_str:
        return "RATE_LIMIT", ErrorCategory.RATE_LIMIT, True

    if "timeout" in exc_str or "timed out" in exc_str:
        return "TIMEOUT", ErrorCategory.TIMEOUT, True

    if "not found" in exc_str or "404" in exc_str:
        return "NOT_FOUND", ErrorCategory.NOT_FOUND, False

    if "permission" in exc_str or "forbidden" in exc_str or "403" in exc_str:
        return "PERMISSION_DENIED", ErrorCategory.PERMISSION, False

    if "unauthorized" in exc_str or "401" in exc_str:
        return "UNAUTHORIZED", ErrorCategory.PERMISSION, False

    if "connection" in exc_str or "network" in exc_str:
        return "CONNECTION_ERROR", ErrorCategory.RETRYABLE, True

    return "INTERNAL_ERROR", ErrorCategory.FATAL, False
