"""Tests for the per-type step executors."""

from packetflow.engine import ExecutionContext
from packetflow.models import DataPacket

from conftest import HELLO_ITEM, make_flow


def _ctx(step_id: str = "step") -> ExecutionContext:
    return ExecutionContext("job-1", step_id)


def _step(flow, index):
    return flow.ordered_steps()[index]


class TestInputStep:
    """Tests for InputStepExecutor."""

    async def test_feed_item_becomes_packet(self, step_types):
        flow = make_flow(("input", "static_feed"))
        outcome = await step_types.get_executor("input").execute("job-1", _step(flow, 0), [], _ctx())

        assert outcome.ok
        assert len(outcome.packets) == 1
        assert outcome.packets[0].content["title"] == "Hello"
        assert outcome.packets[0].metadata["flow_step_id"] == "input-0"
        assert outcome.response["item_count"] == 1
        assert "items" not in outcome.response

    async def test_empty_feed_is_fatal(self, step_types):
        flow = make_flow(("input", "static_feed", {"settings": {"items": []}}))
        outcome = await step_types.get_executor("input").execute("job-1", _step(flow, 0), [], _ctx())

        assert outcome.fatal
        assert outcome.error.kind == "DataValidationError"
        assert outcome.packets == []

    async def test_nothing_new_leaves_array_unchanged(self, step_types):
        flow = make_flow(("input", "nothing_new"))
        outcome = await step_types.get_executor("input").execute("job-1", _step(flow, 0), [], _ctx())

        assert outcome.ok
        assert outcome.packets == []


class TestAIStep:
    """Tests for AIStepExecutor."""

    async def test_annotates_latest_packet(self, step_types):
        source = DataPacket.from_rss_items([HELLO_ITEM])
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai", {"prompt": "Shout it"}))

        outcome = await step_types.get_executor("ai").execute("job-1", _step(flow, 1), [source], _ctx())

        assert outcome.ok
        assert len(outcome.packets) == 2
        entry = outcome.packets[0]
        assert entry.content["ai_title"] == "HELLO"
        assert entry.content["ai_prompt"] == "Shout it"
        assert entry.original_id == "post-1"
        assert outcome.packets[1] == source
        assert outcome.request["parameters"]["packet_text"].startswith("Title: Hello")

    async def test_handler_failure_is_recorded_and_not_fatal(self, step_types):
        """A failing AI call still adds an entry and lets the flow continue."""
        source = DataPacket.from_rss_items([HELLO_ITEM])
        flow = make_flow(("input", "static_feed"), ("ai", "broken_ai"))

        outcome = await step_types.get_executor("ai").execute("job-1", _step(flow, 1), [source], _ctx())

        assert not outcome.ok
        assert not outcome.fatal
        assert outcome.error.kind == "HandlerExecutionError"
        assert len(outcome.packets) == 2
        assert outcome.packets[0].success is False
        assert "provider unavailable" in outcome.packets[0].content["ai_error"]

    async def test_unknown_handler_is_fatal(self, step_types):
        source = DataPacket.from_rss_items([HELLO_ITEM])
        flow = make_flow(("input", "static_feed"), ("ai", "gpt-nonexistent"))

        outcome = await step_types.get_executor("ai").execute("job-1", _step(flow, 1), [source], _ctx())

        assert outcome.fatal
        assert outcome.error.kind == "HandlerNotFound"
        assert outcome.packets == [source]


class TestUpdateStep:
    """Tests for UpdateStepExecutor."""

    async def test_updates_by_original_id(self, step_types, registry):
        source = DataPacket.from_rss_items([HELLO_ITEM])
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("update", "update_recorder"))

        outcome = await step_types.get_executor("update").execute("job-1", _step(flow, 2), [source], _ctx())

        assert outcome.ok
        assert registry.get("update_recorder").updated == ["post-1"]
        assert outcome.packets[0].content["update_result"] == {"updated": "post-1"}
        assert outcome.packets[0].step_type == "update"

    async def test_missing_original_id_dispatches_nothing(self, step_types, registry):
        source = DataPacket.from_handler_output({"title": "No id"}, handler="files")
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("update", "update_recorder"))

        outcome = await step_types.get_executor("update").execute("job-1", _step(flow, 2), [source], _ctx())

        assert outcome.fatal
        assert outcome.error.kind == "DataValidationError"
        assert outcome.packets == [source]
        assert registry.get("update_recorder").updated == []


class TestOutputStep:
    """Tests for OutputStepExecutor."""

    async def test_delivers_latest_packet(self, step_types, registry):
        source = DataPacket.from_rss_items([HELLO_ITEM])
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))

        outcome = await step_types.get_executor("output").execute("job-1", _step(flow, 1), [source], _ctx())

        assert outcome.ok
        assert registry.get("recorder").delivered[0]["title"] == "Hello"
        assert outcome.packets[0].content["output_result"] == {"delivered": "Hello"}
        assert outcome.packets[0].success

    async def test_failed_delivery_is_recorded_and_fatal(self, step_types, registry):
        registry.get("recorder").config["fail"] = True
        source = DataPacket.from_rss_items([HELLO_ITEM])
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))

        outcome = await step_types.get_executor("output").execute("job-1", _step(flow, 1), [source], _ctx())

        assert outcome.fatal
        assert len(outcome.packets) == 2
        assert outcome.packets[0].success is False
        assert outcome.packets[0].metadata["error"] == "Remote rejected the post"
