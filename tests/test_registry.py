"""Tests for the handler registry and plugin loader."""

import textwrap

import pytest

from packetflow.errors import HandlerNotFound, RegistryError
from packetflow.handlers import Handler, HandlerLoader, HandlerRegistry, ToolDefinition
from packetflow.models import StepType

from conftest import PLUGINS_DIR, RecordingOutput, UpperAI


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_and_lookup(self):
        registry = HandlerRegistry()
        registry.register(UpperAI())

        assert "upper_ai" in registry
        assert len(registry) == 1
        assert registry.get("upper_ai").slug == "upper_ai"
        assert list(registry.get_by_type("ai")) == ["upper_ai"]
        assert registry.get_by_type(StepType.OUTPUT) == {}
        assert [t.name for t in registry.tools_for("upper_ai")] == ["annotate"]

    def test_require_checks_type(self):
        registry = HandlerRegistry()
        registry.register(UpperAI())

        assert registry.require("upper_ai", "ai").slug == "upper_ai"
        with pytest.raises(HandlerNotFound) as exc_info:
            registry.require("upper_ai", "output")
        assert exc_info.value.slug == "upper_ai"
        assert exc_info.value.kind == "HandlerNotFound"

    def test_duplicate_slug_rejected(self):
        registry = HandlerRegistry()
        registry.register(UpperAI())
        with pytest.raises(RegistryError):
            registry.register(UpperAI())

    def test_unknown_type_rejected(self):
        class Odd(Handler):
            slug = "odd"
            handler_type = "translate"
            tools = [ToolDefinition(name="go")]

            async def handle_tool_call(self, tool_name, parameters, ctx):
                return {"success": True}

        with pytest.raises(RegistryError):
            HandlerRegistry().register(Odd())

    def test_frozen_registry_is_append_only(self):
        registry = HandlerRegistry()
        registry.register(UpperAI())
        registry.freeze()

        assert registry.frozen
        with pytest.raises(RegistryError):
            registry.register(RecordingOutput())

    def test_describe(self):
        registry = HandlerRegistry()
        registry.register(RecordingOutput())
        [info] = registry.describe()

        assert info["slug"] == "recorder"
        assert info["type"] == "output"
        assert info["tools"][0]["parameters"]["title"]["required"] is True


class TestHandlerLoader:
    """Tests for plugin discovery."""

    async def test_load_bundled_plugins(self):
        registry = HandlerRegistry()
        loader = HandlerLoader(PLUGINS_DIR, registry)

        loaded = await loader.load_all()

        assert sorted(loaded) == ["export", "json_update", "keyword_annotator", "rss"]
        assert registry.require("rss", "input").get_config("timeout") == 10
        assert registry.require("export", "output").get_tool().name == "export_packet"
        await loader.unload_all()

    async def test_class_discovery_and_manifest_defaults(self, tmp_path):
        plugin = tmp_path / "shouter"
        plugin.mkdir()
        (plugin / "manifest.yaml").write_text(textwrap.dedent("""
            slug: shouter
            type: output
            version: 2.1.0
            config:
              volume:
                default: 11
        """))
        (plugin / "handler.py").write_text(textwrap.dedent("""
            from packetflow.handlers import Handler, ToolDefinition

            class Shouter(Handler):
                tools = [ToolDefinition(name="shout")]

                async def handle_tool_call(self, tool_name, parameters, ctx):
                    return {"success": True, "data": {"volume": self.get_config("volume")}}
        """))

        registry = HandlerRegistry()
        loaded = await HandlerLoader(tmp_path, registry).load_all()

        assert loaded == ["shouter"]
        handler = registry.require("shouter", "output")
        assert handler.version == "2.1.0"
        assert handler.get_config("volume") == 11

    async def test_broken_plugin_is_skipped(self, tmp_path):
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "handler.py").write_text("raise RuntimeError('nope')\n")
        (tmp_path / "_disabled").mkdir()

        registry = HandlerRegistry()
        assert await HandlerLoader(tmp_path, registry).load_all() == []
        assert len(registry) == 0

    async def test_missing_plugins_dir(self, tmp_path):
        loader = HandlerLoader(tmp_path / "nope", HandlerRegistry())
        assert await loader.load_all() == []
