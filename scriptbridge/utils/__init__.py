"""Utility functions for scriptbridge."""

from scriptbridge.utils.exceptions import (
    ContextCreationFailure,
    ContextRuntimeError,
    DispatchFailure,
    ErrorCategory,
    ErrorInfo,
    ExecutionTimeout,
    ScriptBridgeError,
    ScriptThrow,
    UnknownDispatchMethod,
    ValidationError,
    classify_exception,
    describe_exception,
    sanitize_error_message,
)

__all__ = [
    "ContextCreationFailure",
    "ContextRuntimeError",
    "DispatchFailure",
    "ErrorCategory",
    "ErrorInfo",
    "ExecutionTimeout",
    "ScriptBridgeError",
    "ScriptThrow",
    "UnknownDispatchMethod",
    "ValidationError",
    "classify_exception",
    "describe_exception",
    "sanitize_error_message",
]
