"""Tests for storycards.pipeline.runner: ScriptPipeline."""

import pytest

from storycards.pipeline import ScriptOutput, ScriptPipeline
from storycards.pipeline.runner import MAX_LOG_ENTRIES, sanitize_for_log


class Recorder:
    """Stage that records what it saw and adds one context key."""

    description = "records"

    def __init__(self, name: str, updates: dict | None = None) -> None:
        self.name = name
        self.updates = updates or {}
        self.seen: list[dict] = []

    async def execute(self, context: dict) -> ScriptOutput:
        self.seen.append(dict(context))
        return ScriptOutput(context_updates=self.updates)


class Boom:
    name = "boom"
    description = "always fails"

    async def execute(self, context: dict) -> ScriptOutput:
        raise RuntimeError("stage exploded")


class Mutator:
    name = "mutator"
    description = "mutates its input"

    async def execute(self, context: dict) -> ScriptOutput:
        context["items"].append("sneaky")
        return ScriptOutput()


class Leaky:
    name = "leaky"
    description = "returns an update that cannot be copied"

    async def execute(self, context: dict) -> ScriptOutput:
        return ScriptOutput(context_updates={"handle": (i for i in range(3))}, events=[{"type": "x"}])


# ---------------------------------------------------------------------------
# Ordering and registry
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_execution_order_by_order_then_registration(self) -> None:
        pipeline = ScriptPipeline()
        pipeline.register("c", Recorder("c"), 30)
        pipeline.register("a", Recorder("a"), 10)
        pipeline.register("b1", Recorder("b1"), 20)
        pipeline.register("b2", Recorder("b2"), 20)
        assert pipeline.execution_order == ["a", "b1", "b2", "c"]

    def test_reregister_replaces(self) -> None:
        pipeline = ScriptPipeline()
        first, second = Recorder("x"), Recorder("x")
        pipeline.register("x", first, 10)
        pipeline.register("y", Recorder("y"), 20)
        pipeline.register("x", second, 30)
        assert pipeline.execution_order == ["y", "x"]
        assert len(pipeline.list_scripts()) == 2

    def test_update_settings(self) -> None:
        pipeline = ScriptPipeline()
        pipeline.register("a", Recorder("a"), 10)
        pipeline.register("b", Recorder("b"), 20)
        assert pipeline.update_script_settings("a", order=99) is True
        assert pipeline.execution_order == ["b", "a"]
        assert pipeline.update_script_settings("a", enabled=False) is True
        assert pipeline.is_enabled("a") is False

    def test_unknown_names_return_false(self) -> None:
        pipeline = ScriptPipeline()
        assert pipeline.update_script_settings("ghost", enabled=True) is False
        assert pipeline.enable("ghost") is False
        assert pipeline.disable("ghost") is False
        assert pipeline.unregister("ghost") is False

    def test_apply_settings_skips_unknown(self) -> None:
        pipeline = ScriptPipeline()
        pipeline.register("a", Recorder("a"), 10)
        pipeline.apply_settings({"a": {"enabled": False, "order": 5}, "ghost": {"order": 1}})
        assert pipeline.list_scripts() == [
            {"name": "a", "description": "records", "order": 5, "enabled": False}
        ]


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------

class TestRun:
    async def test_updates_flow_to_later_stages(self) -> None:
        pipeline = ScriptPipeline()
        first = Recorder("first", {"weather": "rain"})
        second = Recorder("second")
        pipeline.register("first", first, 10)
        pipeline.register("second", second, 20)

        run = await pipeline.run_pipeline({"current_input": "hi"})
        assert second.seen[0]["weather"] == "rain"
        assert run.context == {"current_input": "hi", "weather": "rain"}
        assert [r.success for r in run.results] == [True, True]

    async def test_failing_stage_is_contained(self) -> None:
        pipeline = ScriptPipeline()
        a = Recorder("a", {"a": 1})
        c = Recorder("c", {"c": 3})
        pipeline.register("a", a, 10)
        pipeline.register("boom", Boom(), 20)
        pipeline.register("c", c, 30)

        run = await pipeline.run_pipeline({})
        assert c.seen[0] == {"a": 1}
        assert run.context == {"a": 1, "c": 3}
        failed = [r for r in run.results if not r.success]
        assert [(r.name, r.error) for r in failed] == [("boom", "stage exploded")]
        assert [e.success for e in run.logs] == [True, False, True]

    async def test_uncopyable_update_fails_only_its_stage(self) -> None:
        pipeline = ScriptPipeline()
        after = Recorder("after", {"after": True})
        pipeline.register("leaky", Leaky(), 10)
        pipeline.register("after", after, 20)

        run = await pipeline.run_pipeline({"n": 1})
        assert [(r.name, r.success) for r in run.results] == [("leaky", False), ("after", True)]
        assert after.seen == [{"n": 1}]
        assert run.context == {"n": 1, "after": True}
        assert run.events == []

    async def test_disabled_stage_skipped(self) -> None:
        pipeline = ScriptPipeline()
        a = Recorder("a", {"a": 1})
        pipeline.register("a", a, 10)
        pipeline.disable("a")
        run = await pipeline.run_pipeline({})
        assert a.seen == []
        assert run.results == []

    async def test_stage_cannot_mutate_shared_context(self) -> None:
        pipeline = ScriptPipeline()
        after = Recorder("after")
        pipeline.register("mutator", Mutator(), 10)
        pipeline.register("after", after, 20)
        original = {"items": ["sword"]}
        run = await pipeline.run_pipeline(original)
        assert original["items"] == ["sword"]
        assert after.seen[0]["items"] == ["sword"]
        assert run.context["items"] == ["sword"]


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------

class TestLogs:
    async def test_logs_tagged_per_run(self) -> None:
        pipeline = ScriptPipeline()
        pipeline.register("a", Recorder("a"), 10)
        first = await pipeline.run_pipeline({})
        second = await pipeline.run_pipeline({})
        assert second.turn_id > first.turn_id
        assert len(pipeline.get_logs_for_turn(first.turn_id)) == 1
        assert len(pipeline.get_logs()) == 2
        assert pipeline.get_logs(1)[0].turn_id == second.turn_id

    async def test_ring_log_is_bounded(self) -> None:
        pipeline = ScriptPipeline()
        pipeline.register("a", Recorder("a"), 10)
        pipeline.register("b", Recorder("b"), 20)
        for _ in range(MAX_LOG_ENTRIES):
            await pipeline.run_pipeline({})
        assert len(pipeline.get_logs(limit=1000)) == MAX_LOG_ENTRIES

    async def test_oldest_entries_evicted_first(self) -> None:
        pipeline = ScriptPipeline()
        pipeline.register("a", Recorder("a"), 10)
        first = await pipeline.run_pipeline({})
        for _ in range(MAX_LOG_ENTRIES - 1):
            await pipeline.run_pipeline({})
        assert len(pipeline.get_logs_for_turn(first.turn_id)) == 1

        last = await pipeline.run_pipeline({})
        assert pipeline.get_logs_for_turn(first.turn_id) == []
        assert len(pipeline.get_logs_for_turn(last.turn_id)) == 1
        assert pipeline.get_logs(limit=1000)[-1].turn_id == last.turn_id

    async def test_clear_logs(self) -> None:
        pipeline = ScriptPipeline()
        pipeline.register("a", Recorder("a"), 10)
        await pipeline.run_pipeline({})
        pipeline.clear_logs()
        assert pipeline.get_logs() == []

    async def test_long_strings_truncated_in_logs(self) -> None:
        pipeline = ScriptPipeline()
        pipeline.register("a", Recorder("a"), 10)
        run = await pipeline.run_pipeline({"current_response": "w" * 900})
        logged = run.logs[0].input["current_response"]
        assert logged == "w" * 500 + "..."
        assert run.context["current_response"] == "w" * 900


@pytest.mark.parametrize("value,expected", [
    ("short", "short"),
    ({"n": 1, "items": ("a", None)}, {"n": 1, "items": ["a", None]}),
    (object(), {"error": "Could not serialize for logging"}),
])
def test_sanitize_for_log(value, expected) -> None:
    assert sanitize_for_log(value) == expected
