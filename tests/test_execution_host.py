"""End-to-end tests for the execution host using real script contexts."""

import asyncio
import time

import pytest

from scriptbridge.config.schema import Config, RateLimitConfig, SandboxConfig
from scriptbridge.sandbox.dispatch import DispatchTable
from scriptbridge.sandbox.host import Capabilities, ExecutionHost, Invocation, execute_script
from scriptbridge.sandbox.rate_limiter import RateLimiter
from scriptbridge.sandbox.session import SessionStore

pytestmark = pytest.mark.subprocess


def _capabilities(dispatch_table, session=None):
    return Capabilities(dispatch_table=dispatch_table, session=session or SessionStore())


@pytest.mark.asyncio
async def test_return_value(config, dispatch_table):
    """A plain return settles ok with the value and no progress."""
    result = await ExecutionHost(config).execute("return 1+1", _capabilities(dispatch_table))
    assert result.ok, result.error
    assert result.value == 2
    assert result.progress_messages == []


@pytest.mark.asyncio
async def test_progress_is_streamed_and_collected(config, dispatch_table):
    """progress() text reaches the sink in order and is kept on the result."""
    seen = []
    result = await ExecutionHost(config).execute(
        'progress("step1")\nprogress("step2")\nreturn "done"',
        _capabilities(dispatch_table),
        on_progress=seen.append,
    )
    assert result.value == "done"
    assert result.progress_messages == ["step1", "step2"]
    assert seen == ["step1", "step2"]


@pytest.mark.asyncio
async def test_host_calls_through_sugar_and_call(config, dispatch_table, fake_tasks):
    """host.<ns>.<method>() and call() both reach the dispatch table."""
    script = (
        'open_tasks = await host.tasks.list(status="open")\n'
        'one = await call("tasks", "get", 5)\n'
        "return {'open': open_tasks, 'one': one}"
    )
    result = await ExecutionHost(config).execute(script, _capabilities(dispatch_table))
    assert result.ok, result.error
    assert result.value == {"open": [{"id": 1, "status": "open"}], "one": {"id": 5}}
    assert fake_tasks.calls == [("list", "open"), ("get", 5)]


@pytest.mark.asyncio
async def test_unknown_method_fails_closed(config, dispatch_table):
    """Calling an unregistered key fails with INVALID_INPUT naming it."""
    result = await ExecutionHost(config).execute("await host.unknown.op()", _capabilities(dispatch_table))
    assert not result.ok
    assert result.error.code == "INVALID_INPUT"
    assert "unknown.op" in result.error.message
    assert "tasks.list" in result.error.fix


@pytest.mark.asyncio
async def test_host_error_can_be_caught_by_script(config, dispatch_table):
    """A failing host call raises inside the script and can be handled there."""
    script = (
        "try:\n"
        "    await host.tasks.get(404)\n"
        "except Exception as e:\n"
        "    return {'message': str(e), 'code': e.code}\n"
    )
    result = await ExecutionHost(config).execute(script, _capabilities(dispatch_table))
    assert result.value == {"message": "Task 404 not found", "code": "DISPATCH_FAILED"}


@pytest.mark.asyncio
async def test_infinite_loop_times_out(dispatch_table):
    """A hung script is killed at the timeout and reported with it."""
    host = ExecutionHost(Config())
    started = time.monotonic()
    result = await host.execute("while True:\n    pass", _capabilities(dispatch_table), timeout_ms=50)
    elapsed = time.monotonic() - started
    assert not result.ok
    assert result.error.code == "TIMEOUT"
    assert "50" in result.error.message
    assert elapsed < 5


@pytest.mark.asyncio
async def test_raised_error_surfaces_message(config, dispatch_table):
    """An uncaught script exception becomes a SCRIPT_ERROR with its message."""
    result = await ExecutionHost(config).execute(
        'progress("starting")\nraise ValueError("bad input")', _capabilities(dispatch_table)
    )
    assert not result.ok
    assert result.error.code == "SCRIPT_ERROR"
    assert "bad input" in result.error.message
    assert result.progress_messages == ["starting"]


@pytest.mark.asyncio
async def test_syntax_error_is_context_error(config, dispatch_table):
    """A script that does not compile settles as a context error."""
    result = await ExecutionHost(config).execute("return (", _capabilities(dispatch_table))
    assert not result.ok
    assert result.error.code == "CONTEXT_ERROR"
    assert "SyntaxError" in result.error.message


@pytest.mark.asyncio
async def test_context_writes_reach_session_in_order(config, dispatch_table):
    """context writes are mirrored to the session store, last write winning."""
    session = SessionStore({"seen": 1})
    updates = []
    script = (
        "context.count = context.seen + 1\n"
        "context['items'] = [1, 2]\n"
        "context.count = 10\n"
        "return context.to_dict()"
    )
    result = await ExecutionHost(config).execute(
        script,
        _capabilities(dispatch_table, session),
        on_session_update=lambda key, value: updates.append((key, value)),
    )
    assert result.ok, result.error
    assert result.value == {"seen": 1, "count": 10, "items": [1, 2]}
    assert session.snapshot() == {"seen": 1, "count": 10, "items": [1, 2]}
    assert updates == [("count", 2), ("items", [1, 2]), ("count", 10)]


@pytest.mark.asyncio
async def test_concurrent_calls_with_gather(config):
    """gather() fans out host calls; responses are matched by id."""

    async def slow(n):
        await asyncio.sleep(0.05 * (3 - n))
        return n * 10

    table = DispatchTable.from_mapping({"math": {"slow": slow}})
    result = await ExecutionHost(config).execute(
        "return list(await gather(*(host.math.slow(i) for i in range(3))))",
        _capabilities(table),
    )
    assert result.ok, result.error
    assert result.value == [0, 10, 20]


@pytest.mark.asyncio
async def test_blocked_imports_and_builtins(config, dispatch_table):
    """Imports outside the allowlist and dangerous builtins are unavailable."""
    denied = await ExecutionHost(config).execute("import os\nreturn 1", _capabilities(dispatch_table))
    allowed = await ExecutionHost(config).execute("import math\nreturn math.floor(2.5)", _capabilities(dispatch_table))
    no_open = await ExecutionHost(config).execute("open('x')", _capabilities(dispatch_table))
    assert denied.error.code == "SCRIPT_ERROR"
    assert "not allowed" in denied.error.message
    assert allowed.value == 2
    assert "NameError" in no_open.error.message


@pytest.mark.asyncio
async def test_print_does_not_corrupt_protocol(config, dispatch_table):
    """print() output goes to stderr, not the message channel."""
    result = await ExecutionHost(config).execute('print("noise")\nreturn "clean"', _capabilities(dispatch_table))
    assert result.value == "clean"


@pytest.mark.asyncio
async def test_non_json_return_is_invalid_output(config, dispatch_table):
    """Returning something that is not JSON fails with INVALID_OUTPUT."""
    result = await ExecutionHost(config).execute("return {1, 2}", _capabilities(dispatch_table))
    assert not result.ok
    assert result.error.code == "INVALID_OUTPUT"


@pytest.mark.asyncio
async def test_child_environment_only_inherits_named_variables(dispatch_table, monkeypatch):
    """Only variables named in inherit_env are passed to the context."""
    monkeypatch.setenv("SCRIPTBRIDGE_TEST_SECRET", "hunter2")
    monkeypatch.setenv("SCRIPTBRIDGE_TEST_LOCALE", "C")
    sandbox = SandboxConfig(inherit_env=["SCRIPTBRIDGE_TEST_LOCALE", "SCRIPTBRIDGE_TEST_UNSET"])
    invocation = Invocation(
        "return 1",
        _capabilities(dispatch_table),
        config=sandbox,
        rate_limiter=RateLimiter(),
        timeout_ms=1000,
    )
    env = invocation._child_env()
    assert env.get("SCRIPTBRIDGE_TEST_LOCALE") == "C"
    assert "SCRIPTBRIDGE_TEST_SECRET" not in env
    assert "SCRIPTBRIDGE_TEST_UNSET" not in env


@pytest.mark.asyncio
async def test_invalid_input_is_reported_without_spawning(config, dispatch_table):
    """Empty scripts and non-positive timeouts fail fast with INVALID_INPUT."""
    host = ExecutionHost(config)
    empty = await host.execute("   ", _capabilities(dispatch_table))
    bad_timeout = await host.execute("return 1", _capabilities(dispatch_table), timeout_ms=0)
    assert empty.error.code == "INVALID_INPUT"
    assert bad_timeout.error.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_missing_interpreter_is_creation_failure(dispatch_table):
    """A context that cannot be spawned settles as CONTEXT_CREATION_FAILED."""
    config = Config(sandbox=SandboxConfig(python_executable="/nonexistent/python-xyz"))
    result = await ExecutionHost(config).execute("return 1", _capabilities(dispatch_table))
    assert not result.ok
    assert result.error.code == "CONTEXT_CREATION_FAILED"


@pytest.mark.asyncio
async def test_rate_limiter_is_awaited_per_call(config, dispatch_table):
    """Every host call goes through the supplied rate limiter."""

    class Counting(RateLimiter):
        count = 0

        async def acquire(self):
            Counting.count += 1
            return 0.0

    script = "for i in range(5):\n    await host.tasks.get(i)\nreturn 'ok'"
    result = await ExecutionHost(config).execute(
        script, _capabilities(dispatch_table), rate_limiter=Counting()
    )
    assert result.value == "ok"
    assert Counting.count == 5


@pytest.mark.asyncio
async def test_cancellation_tears_down_and_propagates(config, dispatch_table):
    """Cancelling the caller kills the context and re-raises CancelledError."""
    task = asyncio.ensure_future(
        ExecutionHost(config).execute("while True:\n    pass", _capabilities(dispatch_table))
    )
    await asyncio.sleep(0.3)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_execute_script_convenience(config):
    """execute_script wraps host and capabilities for one-off runs."""
    table = DispatchTable.from_mapping({"m": {"double": lambda x: x * 2}})
    result = await execute_script(
        "return await host.m.double(21)",
        table,
        config=Config(rate_limit=RateLimitConfig(max_calls=1, window_ms=1000)),
    )
    assert result.value == 42


@pytest.mark.asyncio
async def test_primitive_globals_do_not_reach_real_builtins(config, dispatch_table, tmp_path):
    """Reaching builtins through call.__globals__ is refused and no file content leaks."""
    secret = tmp_path / "secret.txt"
    secret.write_text("TOPSECRET")
    script = f"b = call.__globals__['builtins']\nreturn b.open({str(secret)!r}).read()"
    result = await ExecutionHost(config).execute(script, _capabilities(dispatch_table))
    assert not result.ok
    assert result.error.code == "CONTEXT_ERROR"
    assert "__globals__" in result.error.message
    assert "TOPSECRET" not in result.model_dump_json()


@pytest.mark.asyncio
async def test_runtime_attribute_names_are_guarded(config, dispatch_table):
    """getattr with a computed dunder name fails inside the script."""
    result = await ExecutionHost(config).execute(
        "return getattr(call, '__glob' + 'als__')", _capabilities(dispatch_table)
    )
    assert not result.ok
    assert result.error.code == "SCRIPT_ERROR"
    assert "not allowed" in result.error.message


@pytest.mark.asyncio
async def test_file_access_through_module_attributes_is_refused(config, dispatch_table, tmp_path):
    """Opening a file via a module reachable from an allowed import is blocked by the audit hook."""
    secret = tmp_path / "secret.txt"
    secret.write_text("TOPSECRET")
    script = f"import json\nreturn json.codecs.open({str(secret)!r}).read()"
    result = await ExecutionHost(config).execute(script, _capabilities(dispatch_table))
    assert not result.ok
    assert "PermissionError" in result.error.message
    assert "TOPSECRET" not in result.model_dump_json()


@pytest.mark.asyncio
async def test_lazy_stdlib_imports_still_work(config, dispatch_table):
    """Allowed modules that import helpers lazily keep working under the audit hook."""
    script = "import datetime\nreturn datetime.datetime.strptime('2024-01-02', '%Y-%m-%d').year"
    result = await ExecutionHost(config).execute(script, _capabilities(dispatch_table))
    assert result.ok, result.error
    assert result.value == 2024


@pytest.mark.asyncio
async def test_rejected_context_write_fails_in_script(config, dispatch_table):
    """An invalid context key raises in the script and the session stays untouched."""
    session = SessionStore()
    result = await ExecutionHost(config).execute(
        "context[''] = 1\nreturn context.to_dict()", _capabilities(dispatch_table, session)
    )
    assert not result.ok
    assert result.error.code == "SCRIPT_ERROR"
    assert "TypeError" in result.error.message
    assert session.snapshot() == {}


@pytest.mark.asyncio
async def test_reserved_context_keys_are_read_by_item(config, dispatch_table):
    """Keys named like internals or helpers come back through context[...]."""
    session = SessionStore({"_data": 7, "keys": "k"})
    result = await ExecutionHost(config).execute(
        "return [context['_data'], context['keys'], sorted(context.keys())]",
        _capabilities(dispatch_table, session),
    )
    assert result.ok, result.error
    assert result.value == [7, "k", ["_data", "keys"]]
