"""Skill registry with progressive lazy loading of tool definitions.

Registered skills fall into two tiers. Eager skills are active from the
start of a conversation and their tool definitions are always sent to the
model. All other skills stay out of the request until they are activated.
A skill is activated explicitly, by tag, or automatically the first time the
model calls it by name, so every registered skill stays reachable while the
active tool set stays small.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from krill.metrics import SKILL_ACTIVATIONS
from krill.sandbox import (
    ProcessConfig,
    ProcessSandbox,
    Sandbox,
    SandboxError,
    WasmConfig,
    WasmSandbox,
)
from krill.tracecontext import current_trace
from krill.tracing import inc_counter, start_span

Executor = Callable[[str], str]
"""A builtin skill: takes the JSON arguments and returns the result text."""


def _default_parameters() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


class SkillError(Exception):
    """Raised for unknown skills, bad skill configuration and missing executors."""


@dataclass(frozen=True)
class ToolDef:
    """Function tool definition included in chat requests."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=_default_parameters)
    type: str = "function"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class SkillConfig:
    """Configuration of one skill."""

    name: str
    description: str = ""
    runtime: str = ""
    path: str = ""
    input_schema: str = ""
    tags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CoreConfig:
    """Runtime limits shared by all sandboxed skills."""

    skill_timeout_ms: int = 0
    wasm_fuel: int = 0


class LazyLoadResult(Enum):
    """What happened to the active set when a skill ran."""

    ALREADY_ACTIVE = 0
    LAZY_LOADED = 1
    EXEC_ERROR = 2


@dataclass
class _Entry:
    config: SkillConfig
    tool_def: ToolDef
    executor: Executor | None = None
    sandbox: Sandbox | None = None
    tags: set[str] = field(default_factory=set)


def _trace_ids() -> tuple[str, str, str]:
    info = current_trace()
    if info is None:
        return "", "", ""
    return info.trace_id, info.span_id, info.request_id


class Registry:
    """Thread-safe store of every registered skill."""

    def __init__(
        self,
        skills: Iterable[SkillConfig] = (),
        core: CoreConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        core = core if core is not None else CoreConfig()
        for config in skills:
            try:
                self._add(config, core)
            except (SkillError, SandboxError) as exc:
                raise SkillError(f"skill {config.name!r}: {exc}") from exc

    def _add(self, config: SkillConfig, core: CoreConfig) -> None:
        parameters = _default_parameters()
        if config.input_schema:
            try:
                parameters = json.loads(config.input_schema)
            except ValueError as exc:
                raise SkillError(f"invalid input schema: {exc}") from exc
        entry = _Entry(
            config=config,
            tool_def=ToolDef(name=config.name, description=config.description, parameters=parameters),
            tags=set(config.tags),
        )
        if config.runtime == "exec":
            entry.sandbox = ProcessSandbox(
                ProcessConfig(path=config.path, timeout_ms=core.skill_timeout_ms, env=dict(config.env))
            )
        elif config.runtime == "wasm":
            entry.sandbox = WasmSandbox(
                WasmConfig(
                    path=config.path,
                    fuel=core.wasm_fuel,
                    timeout_ms=core.skill_timeout_ms,
                    env=dict(config.env),
                )
            )
        elif config.runtime not in ("", "builtin"):
            # builtin and unset runtimes get their executor from register_builtin
            raise SkillError(f"unknown runtime {config.runtime!r}")
        with self._lock:
            self._entries[config.name] = entry

    def register_builtin(
        self,
        name: str,
        description: str,
        executor: Executor,
        schema: Mapping[str, Any] | None = None,
    ) -> None:
        """Add or replace a skill run by a native callable, keeping any known tags."""
        parameters = dict(schema) if schema is not None else _default_parameters()
        with self._lock:
            existing = self._entries.get(name)
            tags = set(existing.tags) if existing is not None else set()
            self._entries[name] = _Entry(
                config=SkillConfig(name=name, description=description, runtime="builtin"),
                tool_def=ToolDef(name=name, description=description, parameters=parameters),
                executor=executor,
                tags=tags,
            )
        set_logger = getattr(executor, "set_logger", None)
        if callable(set_logger):
            set_logger(self.logger)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def execute(self, name: str, args_json: str) -> str:
        """Run a skill with JSON arguments and return its result."""
        trace_id, parent_span_id, request_id = _trace_ids()
        span = start_span(None, trace_id, parent_span_id, "skill.execute", request_id=request_id, skill=name)
        error: BaseException | None = None
        try:
            with self._lock:
                entry = self._entries.get(name)
            if entry is None:
                raise SkillError(f"skill {name!r} not found")
            if entry.executor is not None:
                return entry.executor(args_json)
            if entry.sandbox is not None:
                return entry.sandbox.run(args_json)
            raise SkillError(f"skill {name!r} has no executor (misconfigured?)")
        except BaseException as exc:
            error = exc
            raise
        finally:
            span.end(error, request_id=request_id, skill=name)

    def get_def(self, name: str) -> ToolDef | None:
        """Return the tool definition of a skill, or None if it is unknown."""
        with self._lock:
            entry = self._entries.get(name)
            return None if entry is None else entry.tool_def

    def all_names(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def names_with_tag(self, tag: str) -> list[str]:
        with self._lock:
            return [name for name, entry in self._entries.items() if tag in entry.tags]


class View:
    """One conversation's projection of the registry with its own active set."""

    def __init__(
        self,
        registry: Registry,
        eager_skills: Iterable[str] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._active: dict[str, None] = {}
        for name in eager_skills:
            if registry.exists(name):
                self._active[name] = None
            else:
                self.logger.warning("eager skill not found in registry: %s", name)

    def active_tool_defs(self) -> list[ToolDef]:
        """Tool definitions of the active skills, to be sent with each request."""
        with self._lock:
            names = list(self._active)
        return [td for td in map(self.registry.get_def, names) if td is not None]

    def activate(self, name: str) -> bool:
        """Add a registered skill to the active set; False if it is unknown."""
        if not self.registry.exists(name):
            return False
        with self._lock:
            self._active[name] = None
        self.logger.info("skill activated: %s", name)
        inc_counter(SKILL_ACTIVATIONS, 1, {"skill": name})
        return True

    def activate_by_tag(self, tag: str) -> None:
        """Activate every registered skill carrying the tag."""
        names = self.registry.names_with_tag(tag)
        with self._lock:
            for name in names:
                self._active[name] = None
        if names:
            self.logger.info("skills activated by tag %s: %d", tag, len(names))
            inc_counter(SKILL_ACTIVATIONS, len(names), {"tag": tag})

    def is_active(self, name: str) -> bool:
        with self._lock:
            return name in self._active

    def execute(self, name: str, args_json: str) -> tuple[str, LazyLoadResult]:
        """Run any registered skill, promoting it to the active set on success.

        Failures of the skill are raised; the skill is then left as it was.
        """
        was_active = self.is_active(name)
        result = self.registry.execute(name, args_json)
        if not was_active and self.registry.exists(name):
            self.activate(name)
            return result, LazyLoadResult.LAZY_LOADED
        return result, LazyLoadResult.ALREADY_ACTIVE

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)