# krill

This package provides building blocks for an agent runtime. It is written in
plain Python and has no third-party dependencies.

- `krill.cron` is a five-field cron matcher. Use `parse` to compile an
  expression, then `Cron.next` and `Cron.matches`.
- `krill.scheduler` has an `Engine` that fires schedules on each `tick`, or
  from a background thread through `start` and `stop`. It supports:
  - concurrency policies: `allow`, `forbid` and `replace`;
  - retries with backoff;
  - a missed-run policy: `skip`, which is the default, or `run_once`;
  - time zones;
  - an audit trail;
  - control-plane operations: `pause_schedule`, `resume_schedule`,
    `cancel_schedule`, `trigger_now`, `create_or_update_schedule`,
    `schedule_status` and `schedule_history`.
- `krill.session` has a `SessionService` that keeps a JSON-lines event log and
  a snapshot file. It supports open, resume, checkpoint, close, branch, commit,
  merge (with the `fail`, `last-write-wins` and `manual` policies) and replay.
  It can also retain and summarise history. The data types are in
  `krill.session_models` and the file handling is in `krill.session_store`.
- `krill.memory_store`: `wrap_memory_store` decorates a memory backend. Every
  message written to the backend through `append` or `append_batch` is also
  recorded in the session that is open on that thread.
- `krill.skills` has a skill `Registry` and a per-conversation `View`. The view
  keeps a small active set of tool definitions and promotes a skill into it the
  first time the skill is called.
- `krill.sandbox` runs skills:
  - `ProcessSandbox` runs an executable with the JSON arguments on stdin. Each
    call gets its own temporary directory and a minimal environment, and has a
    timeout. The default timeout is 30 s.
  - `NoopSandbox` echoes its input back.
- `krill.schema` normalises and validates versioned (`v2`) envelopes, and maps
  them to and from the internal `Envelope`.
- `krill.tracing`, `krill.metrics` and `krill.tracecontext` provide spans,
  in-memory metrics and trace context. There are four profiles: `off`,
  `minimal`, `standard` and `debug`. There are two exporters:
  - `log` writes JSON to stdout;
  - `otlp_http` posts OTLP/JSON to an endpoint.

## Installation

```
pip install .
```

## Examples

Parse a cron expression and ask when it next fires:

```python
from datetime import datetime, timezone
from krill.cron import parse

cron = parse("*/15 9 * * 1")
print(cron.next(datetime(2026, 3, 2, 9, 1, tzinfo=timezone.utc)))
# 2026-03-02 09:15:00+00:00
```

Schedule a job. The executor is any callable that takes a `Trigger` and a
`threading.Event`. The event is set when the run is cancelled. To report a
failure, the executor raises an exception.

```python
from krill.scheduler import Engine, ScheduleConfig

def run(trigger, cancelled):
    print("running", trigger.target, trigger.payload, trigger.attempt)

engine = Engine(
    [ScheduleConfig(id="nightly", cron_expr="0 2 * * *", target="wf-nightly",
                    payload_template="run", enabled=True, timezone="Europe/Rome")],
    executor=run,
)
engine.start(tick=1.0)
# ...
engine.stop()
print(engine.audit())
```

Keep a session across restarts:

```python
from krill.session import SessionConfig, SessionService
from krill.session_models import Message, OpenRequest

with SessionService(SessionConfig(path="./data/sessions.json")) as sessions:
    sess = sessions.open(OpenRequest(client_id="c1", thread_id="t1"))
    sessions.record_message("c1", "t1", Message(role="user", content="hello"))
    print(sessions.restore_messages(sess.id))
```

Register a skill and let a view load it lazily:

```python
from krill.skills import Registry, View

registry = Registry()
registry.register_builtin("echo", "Echo the arguments", lambda args: args)
view = View(registry)
print(view.execute("echo", '{"x": 1}'))  # ('{"x": 1}', LazyLoadResult.LAZY_LOADED)
print(view.is_active("echo"))            # True
```

Normalise an incoming envelope:

```python
from krill.schema import normalize_json

env = normalize_json(
    b'{"client_id":"c1","source_protocol":"http","role":"user","text":"hi"}',
    strict=True,
)
print(env.thread_id, env.tenant)  # c1 default
```

Run a skill in a process sandbox. The skill reads JSON on stdin and writes its
result to stdout:

```python
from krill.sandbox import ProcessConfig, ProcessSandbox

sandbox = ProcessSandbox(ProcessConfig(path="/usr/local/bin/my-skill", timeout_ms=5000))
print(sandbox.run('{"query": "hello"}'))
```

## What this package does not do

- It has no command-line program and no server. It is a library only.
- It has no message bus. The scheduler passes each trigger to the executor
  callable you give it and does nothing else with it.
- It does not include a memory backend. `wrap_memory_store` wraps a backend
  that you supply.
- `WasmSandbox` has no WebAssembly runtime. Every call to `run` raises
  `SandboxError`.

## Tests

```
pip install .[test]
pytest
```