"""
Export Handler

An output handler that writes the latest packet's fields to a file in
``output_dir``, as JSON or Markdown. Writes go through the execution
context so a failing call leaves nothing behind.
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path

from packetflow.handlers import Handler, ToolDefinition, ToolParameter
from packetflow.models import StepType

logger = logging.getLogger(__name__)

SETTING_KEYS = {"output_dir", "format"}


def _slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")[:60] or "packet"


class ExportHandler(Handler):
    """Writes packets to disk."""

    slug = "export"
    handler_type = StepType.OUTPUT
    display_name = "File Export"
    description = "Writes the latest packet to a JSON or Markdown file"

    tools = [
        ToolDefinition(
            name="export_packet",
            description="Write the packet fields to a file",
            parameters={
                "title": ToolParameter(description="Packet title"),
                "content": ToolParameter(description="Packet body"),
                "summary": ToolParameter(description="Packet summary"),
                "tags": ToolParameter(description="Packet tags"),
                "output_dir": ToolParameter(description="Target directory"),
                "format": ToolParameter(description="json or markdown"),
            },
        ),
    ]

    default_config = {"output_dir": "data/exports", "format": "json"}

    async def handle_tool_call(self, tool_name, parameters, ctx):
        fmt = str(self.setting(parameters, "format", "json")).lower()
        if fmt not in ("json", "markdown"):
            return {"success": False, "error": f"Unsupported export format: {fmt}"}

        fields = {k: v for k, v in parameters.items() if k not in SETTING_KEYS}
        if not fields.get("title") and not fields.get("content"):
            return {"success": False, "error": "Nothing to export: packet has no title or content"}

        output_dir = Path(self.setting(parameters, "output_dir", "data/exports"))
        name = f"{_slugify(fields.get('title') or fields.get('original_id') or '')}_{ctx.job_id[:8]}"

        if fmt == "json":
            path = output_dir / f"{name}.json"
            document = {**fields, "exported_at": datetime.utcnow().isoformat(), "job_id": ctx.job_id}
            text = json.dumps(document, indent=2, default=str)
        else:
            path = output_dir / f"{name}.md"
            text = self._to_markdown(fields)

        await ctx.write_file(path, text)
        ctx.logger.info(f"Exported packet to {path}")

        return {
            "success": True,
            "data": {"path": str(path), "format": fmt, "bytes": len(text.encode("utf-8"))},
        }

    def _to_markdown(self, fields: dict) -> str:
        lines = [f"# {fields.get('title') or 'Untitled'}", ""]
        if fields.get("ai_summary"):
            lines += [f"> {fields['ai_summary']}", ""]
        if fields.get("summary"):
            lines += [fields["summary"], ""]
        if fields.get("content"):
            lines += [fields["content"], ""]
        if fields.get("tags"):
            lines.append("**Tags:** " + ", ".join(fields["tags"]))
        if fields.get("ai_keywords"):
            lines.append("**Keywords:** " + ", ".join(fields["ai_keywords"]))
        if fields.get("source_url"):
            lines.append(f"**Source:** {fields['source_url']}")
        return "\n".join(lines).rstrip() + "\n"


def register(registry, config):
    registry.register(ExportHandler(config))
