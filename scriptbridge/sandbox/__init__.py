"""Sandboxed script execution: host, bridge, dispatch table, rate limiter, session."""

from scriptbridge.sandbox.bridge import Bridge
from scriptbridge.sandbox.connection import ScriptConnection
from scriptbridge.sandbox.dispatch import DispatchEntry, DispatchTable
from scriptbridge.sandbox.host import Capabilities, ExecutionHost, Invocation, execute_script
from scriptbridge.sandbox.protocol import SandboxResult
from scriptbridge.sandbox.rate_limiter import RateLimiter
from scriptbridge.sandbox.session import SessionStore
from scriptbridge.sandbox.settlement import Settlement

__all__ = [
    "Bridge",
    "Capabilities",
    "DispatchEntry",
    "DispatchTable",
    "ExecutionHost",
    "Invocation",
    "RateLimiter",
    "SandboxResult",
    "ScriptConnection",
    "SessionStore",
    "Settlement",
    "execute_script",
]
