"""Shared fixtures and in-memory handlers for the engine tests."""

import asyncio
import tempfile
from pathlib import Path

import pytest

from packetflow.engine import HandlerDispatcher, JobOrchestrator, create_step_types
from packetflow.handlers import Handler, HandlerRegistry, ToolDefinition, ToolParameter
from packetflow.models import Flow, StepType
from packetflow.storage import Database, FlowStore, JobStore, ProcessedItemStore

PLUGINS_DIR = Path(__file__).resolve().parent.parent / "plugins"


# -------------------------------------------------------------------------
# Test Handlers
# -------------------------------------------------------------------------

class StaticFeedHandler(Handler):
    """Input handler serving the items passed in its ``items`` setting."""

    slug = "static_feed"
    handler_type = StepType.INPUT
    tools = [ToolDefinition(name="fetch_items")]

    async def handle_tool_call(self, tool_name, parameters, ctx):
        items = parameters.get("items", self.get_config("items", []))
        return {"success": True, "items": items, "feed_url": "memory://feed"}


class NothingNewHandler(Handler):
    """Input handler that never has anything new."""

    slug = "nothing_new"
    handler_type = StepType.INPUT
    tools = [ToolDefinition(name="fetch")]

    async def handle_tool_call(self, tool_name, parameters, ctx):
        return {"success": True, "message": "No new items"}


class UpperAI(Handler):
    """AI handler that upper-cases the title."""

    slug = "upper_ai"
    handler_type = StepType.AI
    tools = [ToolDefinition(name="annotate")]

    async def handle_tool_call(self, tool_name, parameters, ctx):
        return {
            "success": True,
            "data": {
                "ai_title": (parameters.get("title") or "").upper(),
                "ai_prompt": parameters.get("prompt"),
            },
        }


class BrokenAI(Handler):
    """AI handler whose provider is down."""

    slug = "broken_ai"
    handler_type = StepType.AI
    tools = [ToolDefinition(name="annotate")]

    async def handle_tool_call(self, tool_name, parameters, ctx):
        raise ConnectionError("provider unavailable")


class RecordingOutput(Handler):
    """Output handler that remembers what it delivered."""

    slug = "recorder"
    handler_type = StepType.OUTPUT
    tools = [ToolDefinition(name="deliver", parameters={
        "title": ToolParameter(required=True),
    })]

    def __init__(self, config=None):
        super().__init__(config)
        self.delivered: list[dict] = []

    async def handle_tool_call(self, tool_name, parameters, ctx):
        if self.get_config("fail"):
            return {"success": False, "error": "Remote rejected the post"}
        self.delivered.append(dict(parameters))
        return {"success": True, "data": {"delivered": parameters["title"]}}


class SlowOutput(Handler):
    """Output handler that takes ``delay`` seconds to deliver."""

    slug = "slow_output"
    handler_type = StepType.OUTPUT
    tools = [ToolDefinition(name="deliver")]

    def __init__(self, config=None):
        super().__init__(config)
        self.calls: list[str] = []

    async def handle_tool_call(self, tool_name, parameters, ctx):
        self.calls.append(ctx.job_id)
        await asyncio.sleep(float(self.setting(parameters, "delay", 0.5)))
        return {"success": True, "data": {"delivered": parameters.get("title")}}


class RecordingUpdate(Handler):
    """Update handler that remembers which ids it touched."""

    slug = "update_recorder"
    handler_type = StepType.UPDATE
    tools = [ToolDefinition(name="update", parameters={
        "original_id": ToolParameter(required=True),
    })]

    def __init__(self, config=None):
        super().__init__(config)
        self.updated: list[str] = []

    async def handle_tool_call(self, tool_name, parameters, ctx):
        self.updated.append(parameters["original_id"])
        return {"success": True, "data": {"updated": parameters["original_id"]}}


HELLO_ITEM = {
    "title": "Hello",
    "description": "Hello world, this is the first post.",
    "link": "https://example.com/hello",
    "guid": "post-1",
}


def make_flow(*steps, flow_id: str = "flow-1") -> Flow:
    """Build a flow from ``(step_type, slug)`` or ``(step_type, slug, extra)`` tuples."""
    step_dicts = []
    for position, entry in enumerate(steps):
        step_type, slug = entry[0], entry[1]
        extra = dict(entry[2]) if len(entry) > 2 else {}
        step = {
            "flow_step_id": f"{step_type}-{position}",
            "position": position,
            "step_type": step_type,
            "handler": {"slug": slug, "settings": extra.pop("settings", {})},
            **extra,
        }
        step_dicts.append(step)
    return Flow.model_validate({"id": flow_id, "name": f"Test {flow_id}", "steps": step_dicts})


# -------------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------------

@pytest.fixture
async def temp_db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        db = Database(db_path)
        await db.connect()
        yield db
        await db.close()


@pytest.fixture
async def stores(temp_db):
    """Create job, flow and processed-item stores."""
    return JobStore(temp_db), FlowStore(temp_db), ProcessedItemStore(temp_db)


@pytest.fixture
def registry():
    """Registry with the in-memory test handlers."""
    reg = HandlerRegistry()
    reg.register(StaticFeedHandler({"items": [HELLO_ITEM]}))
    reg.register(NothingNewHandler())
    reg.register(UpperAI())
    reg.register(BrokenAI())
    reg.register(RecordingOutput())
    reg.register(RecordingUpdate())
    reg.register(SlowOutput())
    return reg


@pytest.fixture
def step_types(registry):
    return create_step_types(HandlerDispatcher(registry))


@pytest.fixture
def orchestrator(stores, step_types):
    job_store, flow_store, processed_items = stores
    return JobOrchestrator(job_store, flow_store, step_types, processed_items=processed_items)
