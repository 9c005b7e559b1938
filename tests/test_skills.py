import pytest

from krill.skills import (
    CoreConfig,
    LazyLoadResult,
    Registry,
    SkillConfig,
    SkillError,
    ToolDef,
    View,
)


def ok_executor(args_json):
    return "ok:" + args_json


def failing_executor(args_json):
    raise RuntimeError("boom")


def make_registry():
    skills = [
        SkillConfig(name="s1", description="S1", runtime="builtin", tags=("tag-a",)),
        SkillConfig(name="s2", description="S2", runtime="builtin", tags=("tag-a",)),
    ]
    registry = Registry(skills, CoreConfig())
    registry.register_builtin("s1", "S1", ok_executor, None)
    registry.register_builtin("s2", "S2", ok_executor, None)
    return registry


def test_registry_core_paths():
    registry = make_registry()
    assert registry.exists("s1")
    assert registry.count() == 2
    assert registry.get_def("s1") is not None
    assert sorted(registry.all_names()) == ["s1", "s2"]

    view = View(registry, ["s1"])
    assert view.is_active("s1")
    assert len(view.active_tool_defs()) == 1
    assert view.activate("s2")
    view.activate_by_tag("tag-a")
    assert view.active_count() == 2

    out, lazy = view.execute("s2", '{"x":1}')
    assert out == 'ok:{"x":1}'
    assert lazy in (LazyLoadResult.ALREADY_ACTIVE, LazyLoadResult.LAZY_LOADED)
    with pytest.raises(SkillError):
        view.execute("missing", "{}")


def test_unknown_runtime_fails():
    with pytest.raises(SkillError, match="unknown runtime"):
        Registry([SkillConfig(name="x", runtime="bad")], CoreConfig())


def test_activate_missing_and_misconfigured_entry():
    registry = Registry([SkillConfig(name="broken")])
    view = View(registry, [])
    assert view.activate("ghost") is False
    with pytest.raises(SkillError, match="no executor"):
        view.execute("broken", "{}")
    assert not view.is_active("broken")


def test_lazy_load_promotes_inactive_skill():
    registry = make_registry()
    view = View(registry, ["s1"])
    assert not view.is_active("s2")
    out, lazy = view.execute("s2", "{}")
    assert out == "ok:{}"
    assert lazy is LazyLoadResult.LAZY_LOADED
    assert view.is_active("s2")
    _, again = view.execute("s2", "{}")
    assert again is LazyLoadResult.ALREADY_ACTIVE


def test_failed_execution_does_not_activate():
    registry = Registry()
    registry.register_builtin("bad", "Bad", failing_executor)
    view = View(registry)
    with pytest.raises(RuntimeError, match="boom"):
        view.execute("bad", "{}")
    assert view.active_count() == 0


def test_eager_skill_missing_is_ignored():
    registry = make_registry()
    view = View(registry, ["s1", "nope"])
    assert view.active_count() == 1
    assert not view.is_active("nope")


def test_tool_definitions():
    registry = Registry(
        [SkillConfig(name="typed", description="Typed", input_schema='{"type":"object","required":["q"]}')]
    )
    typed = registry.get_def("typed")
    assert typed == ToolDef(name="typed", description="Typed", parameters={"type": "object", "required": ["q"]})
    registry.register_builtin("plain", "Plain", ok_executor)
    assert registry.get_def("plain").to_dict() == {
        "type": "function",
        "function": {
            "name": "plain",
            "description": "Plain",
            "parameters": {"type": "object", "properties": {}},
        },
    }
    assert registry.get_def("absent") is None


def test_invalid_input_schema_rejected():
    with pytest.raises(SkillError):
        Registry([SkillConfig(name="x", input_schema="{bad")])


def test_register_builtin_keeps_tags():
    registry = Registry([SkillConfig(name="t", tags=("group",))])
    registry.register_builtin("t", "T", ok_executor, {"type": "object"})
    assert registry.names_with_tag("group") == ["t"]
    assert registry.get_def("t").parameters == {"type": "object"}
    assert registry.execute("t", "1") == "ok:1"


def test_activate_by_tag_without_matches():
    registry = make_registry()
    view = View(registry)
    view.activate_by_tag("none")
    assert view.active_count() == 0


def test_logger_aware_executor_receives_logger():
    class Aware:
        def __init__(self):
            self.logger = None

        def __call__(self, args_json):
            return "aware"

        def set_logger(self, logger):
            self.logger = logger

    registry = Registry()
    aware = Aware()
    registry.register_builtin("aware", "Aware", aware)
    assert aware.logger is registry.logger
    assert registry.execute("aware", "{}") == "aware"


def test_exec_runtime_missing_path(tmp_path):
    missing = str(tmp_path / "missing")
    with pytest.raises(SkillError, match="skill 'x'"):
        Registry([SkillConfig(name="x", runtime="exec", path=missing)])