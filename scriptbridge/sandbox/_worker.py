"""Script context bootstrap.

Runs inside the isolated child process (``python -I -c <this source>``), so it
must only use the standard library and must not import scriptbridge.

Protocol: the first stdin line is the ``start`` message; afterwards stdin
carries ``result``/``error`` responses. The original stdout descriptor is kept
for protocol output and fd 1 is pointed at stderr, so ``print`` in a script
cannot corrupt the channel.

Script surface:
 - Attribute names starting with ``_`` and a short list of frame, code and
   module attributes are rejected at compile time and by ``getattr`` and
   friends, so script objects never lead back to real globals.
 - ``call``, ``progress`` and ``gather`` are defined in a namespace that only
   holds the restricted builtins.
 - Before the script starts, an audit hook refuses file access outside the
   standard library, sockets, process creation and imports of modules that
   carry those capabilities.
"""

import ast
import asyncio
import builtins
import itertools
import json
import os
import sys
import threading

_ENTRY_NAME = "__entry__"
_ENTRY_TEMPLATE = "async def __entry__():\n    pass\n"

_BLOCKED_BUILTINS = {
    "open",
    "exec",
    "eval",
    "compile",
    "input",
    "breakpoint",
    "help",
    "exit",
    "quit",
    "globals",
    "locals",
    "vars",
    "memoryview",
    "__import__",
    "__loader__",
    "__spec__",
}

# Frames and code objects lead back to module globals; these modules hold host capabilities.
_BLOCKED_ATTRIBUTES = frozenset({
    "f_globals",
    "f_locals",
    "f_builtins",
    "f_back",
    "f_code",
    "tb_frame",
    "tb_next",
    "gi_frame",
    "gi_code",
    "gi_yieldfrom",
    "cr_frame",
    "cr_code",
    "cr_await",
    "ag_frame",
    "ag_code",
    "ag_await",
    "co_consts",
    "co_code",
    "modules",
    "sys",
    "os",
    "posix",
    "nt",
    "builtins",
    "io",
    "importlib",
    "subprocess",
    "socket",
    "ctypes",
    "signal",
    "shutil",
    "gc",
    "inspect",
    "asyncio",
    "threading",
})

_DENIED_EVENTS = frozenset({
    "subprocess.Popen",
    "os.system",
    "os.posix_spawn",
    "os.spawn",
    "os.fork",
    "os.forkpty",
    "os.kill",
    "os.killpg",
    "os.startfile",
    "os.remove",
    "os.rename",
    "os.rmdir",
    "os.mkdir",
    "os.chmod",
    "os.chown",
    "os.truncate",
    "os.link",
    "os.symlink",
    "os.chdir",
    "os.putenv",
    "os.unsetenv",
    "pty.spawn",
    "shutil.rmtree",
    "code.__new__",
    "mmap.__new__",
    "webbrowser.open",
    "urllib.Request",
})
_DENIED_EVENT_PREFIXES = ("socket.", "os.exec", "ctypes.", "winreg.", "ftplib.", "smtplib.", "imaplib.", "poplib.")
_DENIED_MODULES = frozenset({
    "ctypes",
    "_ctypes",
    "socket",
    "_socket",
    "ssl",
    "_ssl",
    "subprocess",
    "_posixsubprocess",
    "multiprocessing",
    "_multiprocessing",
    "mmap",
    "pty",
    "fcntl",
    "termios",
    "shutil",
    "tempfile",
    "urllib",
    "http",
    "ftplib",
    "smtplib",
    "webbrowser",
    "sqlite3",
    "_sqlite3",
    "winreg",
    "_winapi",
    "msvcrt",
})
_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_TRUNC | os.O_APPEND

# Session keys that are only reachable as context[...] because attribute access means something else.
_CONTEXT_HELPERS = frozenset({"get", "keys", "items", "to_dict"})

_PRIMITIVES_SOURCE = """
async def call(namespace, method, *args, **kwargs):
    return await _start(str(namespace), str(method), args, kwargs)


def progress(text):
    _send({"type": "progress", "text": str(text)})


async def gather(*aws, return_exceptions=False):
    return list(await _gather(*aws, return_exceptions=return_exceptions))
"""


class HostCallError(Exception):
    """Raised inside a script when a host call answers with an error."""

    def __init__(self, message, code=None, fix=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.fix = fix


class _Channel:
    def __init__(self, stream):
        self._stream = stream
        self._lock = threading.Lock()

    def send(self, message):
        line = json.dumps(message, separators=(",", ":"), allow_nan=False)
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()


class _Calls:
    """Pending host calls keyed by id."""

    def __init__(self, channel, loop):
        self._channel = channel
        self._loop = loop
        self._pending = {}
        self._ids = itertools.count()

    def start(self, namespace, method, args, kwargs):
        call_id = next(self._ids)
        future = self._loop.create_future()
        self._pending[call_id] = future
        try:
            self._channel.send({
                "type": "call",
                "id": call_id,
                "namespace": namespace,
                "method": method,
                "args": list(args),
                "kwargs": dict(kwargs),
            })
        except (TypeError, ValueError) as e:
            del self._pending[call_id]
            raise TypeError(f"Arguments to {namespace}.{method} must be JSON-serializable: {e}") from None
        return future

    def resolve(self, message):
        future = self._pending.pop(message.get("id"), None)
        if future is None or future.done():
            return
        if message.get("type") == "result":
            future.set_result(message.get("value"))
        else:
            error = message.get("error") or {}
            future.set_exception(HostCallError(
                error.get("message", "Host call failed"),
                code=error.get("code"),
                fix=error.get("fix"),
            ))


class _LineReader:
    """Unbuffered line reader over a raw descriptor (no buffered object for a daemon thread to hold)."""

    def __init__(self, fd):
        self._fd = fd
        self._buffer = b""

    def readline(self):
        while b"\n" not in self._buffer:
            chunk = os.read(self._fd, 65536)
            if not chunk:
                line, self._buffer = self._buffer, b""
                return line
            self._buffer += chunk
        line, _, self._buffer = self._buffer.partition(b"\n")
        return line + b"\n"


def _read_responses(reader, loop, calls):
    while True:
        line = reader.readline()
        if not line:
            return
        if not line.strip():
            continue
        try:
            loop.call_soon_threadsafe(calls.resolve, json.loads(line))
        except RuntimeError:
            return


class _Method:
    __slots__ = ("_call", "_namespace", "_method")

    def __init__(self, call, namespace, method):
        self._call = call
        self._namespace = namespace
        self._method = method

    def __call__(self, *args, **kwargs):
        return self._call(self._namespace, self._method, *args, **kwargs)

    def __repr__(self):
        return f"<host method {self._namespace}.{self._method}>"


class _Namespace:
    __slots__ = ("_call", "_name", "_methods")

    def __init__(self, call, name, methods):
        self._call = call
        self._name = name
        self._methods = methods

    def __getattr__(self, method):
        if method.startswith("__"):
            raise AttributeError(method)
        return _Method(self._call, self._name, method)

    def __dir__(self):
        return list(self._methods)

    def __repr__(self):
        return f"<host namespace {self._name}>"


class _Host:
    """``host.<namespace>.<method>(...)`` sugar over ``call``; the host decides what exists."""

    __slots__ = ("_call", "_namespaces")

    def __init__(self, call, methods):
        self._call = call
        self._namespaces = {}
        for key in methods:
            namespace, _, method = key.partition(".")
            self._namespaces.setdefault(namespace, []).append(method)

    def __getattr__(self, namespace):
        if namespace.startswith("__"):
            raise AttributeError(namespace)
        return _Namespace(self._call, namespace, self._namespaces.get(namespace, []))

    def __dir__(self):
        return list(self._namespaces)

    def __repr__(self):
        return f"<host {sorted(self._namespaces)}>"


class _Context:
    """Session state; every assignment is mirrored to the host as a session update."""

    __slots__ = ("_data", "_channel")

    def __init__(self, data, channel):
        object.__setattr__(self, "_data", dict(data))
        object.__setattr__(self, "_channel", channel)

    def __getattr__(self, key):
        try:
            return self._data[key]
        except KeyError:
            raise AttributeError(key) from None

    def __setattr__(self, key, value):
        if key in _CONTEXT_HELPERS:
            raise TypeError(f"'{key}' is a context method; use context[{key!r}] to store it")
        self[key] = value

    def __delattr__(self, key):
        raise TypeError("context keys cannot be deleted; assign None instead")

    def __getitem__(self, key):
        return self._data[key]

    def __setitem__(self, key, value):
        if not isinstance(key, str) or not key:
            raise TypeError(f"context keys must be non-empty strings, got {key!r}")
        try:
            stored = json.loads(json.dumps(value, allow_nan=False))
        except (TypeError, ValueError) as e:
            raise TypeError(f"context.{key} must be JSON-serializable: {e}") from None
        self._channel.send({"type": "session-update", "key": key, "value": stored})
        self._data[key] = stored

    def __delitem__(self, key):
        raise TypeError("context keys cannot be deleted; assign None instead")

    def __contains__(self, key):
        return key in self._data

    def __iter__(self):
        return iter(list(self._data))

    def __len__(self):
        return len(self._data)

    def __repr__(self):
        return f"context({self._data!r})"

    def get(self, key, default=None):
        return self._data.get(key, default)

    def keys(self):
        return list(self._data)

    def items(self):
        return list(self._data.items())

    def to_dict(self):
        return dict(self._data)


def _guarded_import(allowed):
    real_import = builtins.__import__

    def _import(name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0 or name.partition(".")[0] not in allowed:
            raise ImportError(f"import of '{name}' is not allowed in scripts")
        return real_import(name, globals, locals, fromlist, level)

    return _import


def _attribute_allowed(name):
    return type(name) is str and not name.startswith("_") and name not in _BLOCKED_ATTRIBUTES


def _blocked_attribute(name):
    return AttributeError(f"access to attribute {name!r} is not allowed in scripts")


def _guarded_attribute_builtins():
    real_getattr, real_hasattr = builtins.getattr, builtins.hasattr
    real_setattr, real_delattr = builtins.setattr, builtins.delattr

    def getattr(obj, name, *default):
        if not _attribute_allowed(name):
            raise _blocked_attribute(name)
        return real_getattr(obj, name, *default)

    def hasattr(obj, name):
        return _attribute_allowed(name) and real_hasattr(obj, name)

    def setattr(obj, name, value):
        if not _attribute_allowed(name):
            raise _blocked_attribute(name)
        real_setattr(obj, name, value)

    def delattr(obj, name):
        if not _attribute_allowed(name):
            raise _blocked_attribute(name)
        real_delattr(obj, name)

    return {"getattr": getattr, "hasattr": hasattr, "setattr": setattr, "delattr": delattr}


def _script_builtins(allowed_modules):
    safe = {k: v for k, v in vars(builtins).items() if k not in _BLOCKED_BUILTINS}
    safe.update(_guarded_attribute_builtins())
    safe["__import__"] = _guarded_import(frozenset(allowed_modules))
    return safe


def _primitives(safe_builtins, calls, channel):
    """Build ``call``, ``progress`` and ``gather`` whose globals hold nothing but the restricted builtins."""
    scope = {
        "__builtins__": safe_builtins,
        "_start": calls.start,
        "_send": channel.send,
        "_gather": asyncio.gather,
    }
    exec(compile(_PRIMITIVES_SOURCE, "<primitives>", "exec"), scope)
    return {name: scope[name] for name in ("call", "progress", "gather")}


class _ScriptPolicy(ast.NodeVisitor):
    """Rejects attribute access the restricted builtins cannot stop."""

    def _reject(self, node, name):
        raise SyntaxError(
            f"access to attribute {name!r} is not allowed in scripts",
            ("<script>", getattr(node, "lineno", 1), getattr(node, "col_offset", 0) + 1, None),
        )

    def visit_Attribute(self, node):
        if not _attribute_allowed(node.attr):
            self._reject(node, node.attr)
        self.generic_visit(node)

    def visit_MatchClass(self, node):
        for name in node.kwd_attrs:
            if not _attribute_allowed(name):
                self._reject(node, name)
        self.generic_visit(node)

    # Top-level module names are governed by the import allowlist at runtime.
    def visit_Import(self, node):
        for alias in node.names:
            for part in alias.name.split(".")[1:]:
                if not _attribute_allowed(part):
                    self._reject(node, part)

    def visit_ImportFrom(self, node):
        parts = (node.module or "").split(".")[1:] + [alias.name for alias in node.names]
        for part in parts:
            if part and part != "*" and not _attribute_allowed(part):
                self._reject(node, part)


def _compile_script(source):
    """Wrap the script body in ``async def __entry__()`` so ``return`` and ``await`` work."""
    tree = ast.parse(source, filename="<script>", mode="exec")
    _ScriptPolicy().visit(tree)
    wrapper = ast.parse(_ENTRY_TEMPLATE, filename="<script>", mode="exec")
    wrapper.body[0].body = tree.body or [ast.Pass()]
    ast.fix_missing_locations(wrapper)
    return compile(wrapper, "<script>", "exec")


def _stdlib_read(args, stdlib_prefix):
    path, mode, flags = args
    if not isinstance(path, str):
        return False
    if mode is not None:
        if any(c in mode for c in "wax+"):
            return False
    elif flags and flags & _WRITE_FLAGS:
        return False
    return os.path.realpath(path).startswith(stdlib_prefix)


def _install_audit_hook():
    """Refuse host capabilities for the rest of the process; lazy standard library imports keep working."""
    stdlib_prefix = os.path.join(os.path.dirname(os.path.dirname(os.path.realpath(asyncio.__file__))), "")

    def hook(event, args):
        if event == "open":
            if not _stdlib_read(args, stdlib_prefix):
                raise PermissionError(f"file access is not allowed in scripts: {args[0]!r}")
        elif event == "import":
            if args[0].partition(".")[0] in _DENIED_MODULES:
                raise ImportError(f"import of '{args[0]}' is not allowed in scripts")
        elif event in _DENIED_EVENTS or event.startswith(_DENIED_EVENT_PREFIXES):
            raise PermissionError(f"'{event}' is not allowed in scripts")

    sys.dont_write_bytecode = True
    sys.addaudithook(hook)


def _describe(exc):
    if isinstance(exc, HostCallError):
        message = exc.message
    else:
        text = str(exc)
        message = f"{type(exc).__name__}: {text}" if text else type(exc).__name__
    error = {"message": message}
    code = getattr(exc, "code", None)
    fix = getattr(exc, "fix", None)
    if isinstance(code, str):
        error["code"] = code
    if isinstance(fix, str):
        error["fix"] = fix
    return error


def _apply_memory_limit(limit_mb):
    if not limit_mb:
        return
    try:
        import resource
    except ImportError:
        return
    limit = int(limit_mb) * 1024 * 1024
    resource.setrlimit(resource.RLIMIT_AS, (limit, limit))


async def _run(code, start, channel, reader):
    loop = asyncio.get_running_loop()
    calls = _Calls(channel, loop)
    listener = threading.Thread(target=_read_responses, args=(reader, loop, calls), daemon=True)
    listener.start()

    safe_builtins = _script_builtins(start.get("allowed_modules") or [])
    primitives = _primitives(safe_builtins, calls, channel)
    namespace = {
        "__builtins__": safe_builtins,
        "__name__": "__script__",
        "host": _Host(primitives["call"], start.get("methods") or []),
        "context": _Context(start.get("session") or {}, channel),
        **primitives,
    }
    exec(code, namespace)
    _install_audit_hook()

    try:
        value = await namespace[_ENTRY_NAME]()
    except Exception as e:
        channel.send({"type": "fatal", "error": _describe(e)})
        return
    try:
        channel.send({"type": "done", "value": value})
    except (TypeError, ValueError) as e:
        channel.send({
            "type": "fatal",
            "error": {
                "message": f"Script return value is not JSON-serializable: {e}",
                "code": "INVALID_OUTPUT",
                "fix": "Return plain JSON data (dict, list, str, int, float, bool, None).",
            },
        })


def main():
    reader = _LineReader(0)
    start = json.loads(reader.readline())
    channel = _Channel(os.fdopen(os.dup(1), "w", encoding="utf-8"))
    os.dup2(2, 1)
    sys.stdout = sys.stderr
    _apply_memory_limit(start.get("memory_limit_mb"))
    code = _compile_script(start["script"])
    asyncio.run(_run(code, start, channel, reader))


if __name__ == "__main__":
    main()
