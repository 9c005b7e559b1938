"""Isolated skill execution environments.

The process sandbox runs an executable in an ephemeral working directory with
a minimal environment and a wall-clock timeout. It receives the JSON arguments
on stdin and returns its trimmed stdout. The wasm sandbox has no runtime
available and always fails to run. The noop sandbox echoes its input.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from krill.metrics import SANDBOX_EXEC_DURATION
from krill.tracecontext import current_trace
from krill.tracing import observe_duration_ms, start_span

_SAFE_PATH = "/usr/local/bin:/usr/bin:/bin"
_DEFAULT_TIMEOUT_S = 30.0
_POSIX = os.name == "posix"


class SandboxError(RuntimeError):
    """Raised when a sandbox cannot be created or a skill run fails."""


class Sandbox(ABC):
    """Executes a skill in isolation."""

    @abstractmethod
    def run(self, args_json: str) -> str:
        """Run the skill with the given JSON arguments and return its output."""


@dataclass
class ProcessConfig:
    path: str
    timeout_ms: int = 0
    env: dict[str, str] = field(default_factory=dict)


def _kill(proc: subprocess.Popen) -> None:
    if _POSIX:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def _exit_reason(returncode: int) -> str:
    if returncode < 0:
        return f"terminated by signal {-returncode}"
    return f"exit status {returncode}"


class ProcessSandbox(Sandbox):
    """Runs an executable in a fresh temporary directory per call."""

    def __init__(self, config: ProcessConfig) -> None:
        if not config.path:
            raise SandboxError("process sandbox: path is required")
        try:
            os.stat(config.path)
        except OSError as exc:
            raise SandboxError(f"process sandbox: {exc}") from exc
        self.config = ProcessConfig(
            path=os.path.abspath(config.path),
            timeout_ms=config.timeout_ms,
            env=dict(config.env),
        )

    def run(self, args_json: str) -> str:
        trace = current_trace()
        span = start_span(
            None,
            trace.trace_id,
            trace.span_id,
            "sandbox.lifecycle",
            request_id=trace.request_id,
            runtime="exec",
        )
        started = time.monotonic()
        failure: BaseException | None = None
        try:
            return self._execute(args_json)
        except SandboxError as exc:
            failure = exc
            raise
        finally:
            observe_duration_ms(
                SANDBOX_EXEC_DURATION, (time.monotonic() - started) * 1000, {"runtime": "exec"}
            )
            span.end(failure, request_id=trace.request_id, runtime="exec")

    def _execute(self, args_json: str) -> str:
        timeout_ms = self.config.timeout_ms
        timeout_s = timeout_ms / 1000 if timeout_ms else _DEFAULT_TIMEOUT_S
        try:
            workdir = tempfile.mkdtemp(prefix="krill-")
        except OSError as exc:
            raise SandboxError(f"sandbox tmpdir: {exc}") from exc
        try:
            env = {"HOME": workdir, "TMPDIR": workdir, "PATH": _SAFE_PATH}
            env.update(self.config.env)
            try:
                proc = subprocess.Popen(
                    [self.config.path],
                    cwd=workdir,
                    env=env,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    close_fds=True,
                    start_new_session=_POSIX,
                )
            except OSError as exc:
                raise SandboxError(f"skill exec: {exc}") from exc
            with proc:
                try:
                    out, err = proc.communicate(args_json.encode("utf-8"), timeout=timeout_s)
                    reason = None if proc.returncode == 0 else _exit_reason(proc.returncode)
                except subprocess.TimeoutExpired:
                    _kill(proc)
                    out, err = proc.communicate()
                    reason = f"timed out after {timeout_s * 1000:.0f} ms"
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        if reason is not None:
            stderr = err.decode("utf-8", errors="replace").strip()
            if stderr:
                reason += ": " + stderr
            raise SandboxError(f"skill exec: {reason}")
        return out.decode("utf-8", errors="replace").strip()


@dataclass
class WasmConfig:
    path: str
    fuel: int = 0
    timeout_ms: int = 0
    env: dict[str, str] = field(default_factory=dict)


class WasmSandbox(Sandbox):
    """WebAssembly sandbox; no runtime is available, so every run fails."""

    def __init__(self, config: WasmConfig) -> None:
        try:
            os.stat(config.path)
        except OSError as exc:
            raise SandboxError(f"wasm: file {config.path!r} not found: {exc}") from exc
        self.config = config

    def run(self, args_json: str) -> str:
        raise SandboxError("wasm sandbox runtime is not available")


class NoopSandbox(Sandbox):
    """Echoes its input without executing anything."""

    def run(self, args_json: str) -> str:
        return '{"ok":true,"echo":' + args_json + "}"