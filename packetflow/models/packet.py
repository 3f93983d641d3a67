"""DataPacket model - the envelope threaded through every flow step."""

from datetime import datetime
from typing import Any, Optional, Sequence

from pydantic import BaseModel, Field

from ..errors import DataValidationError
from .enums import StepType

# Metadata keys copied from a source packet into every entry derived from it.
# Update steps depend on original_id surviving AI passthrough.
CARRY_OVER_KEYS = ("original_id", "source_url", "item_identifier")


def _now() -> str:
    return datetime.utcnow().isoformat()


class DataPacket(BaseModel):
    """
    One entry of a job's packet array.

    Packets are value objects: the helpers below return new packets rather
    than touching the receiver, so entries already in an array never change.

    Example:
        packet = DataPacket.from_rss_items(items, handler="rss", flow_step_id="fetch")
        packets = prepend_packet(packets, packet)
    """

    content: dict[str, Any] = Field(default_factory=dict)
    """
    Semantic fields: title, body, summary, tags, ``ai_*`` annotations,
    ``update_result`` / ``updated_at`` for update entries.
    """

    metadata: dict[str, Any] = Field(default_factory=dict)
    """
    Bookkeeping: step_type, handler, flow_step_id, success, created_at,
    source_type, processing_steps and the carry-over identifiers.
    """

    attachments: list[dict[str, Any]] = Field(default_factory=list)
    """Ordered auxiliary references, each ``{"kind": ..., "url": ...}``."""

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @classmethod
    def from_rss_items(
        cls,
        items: Sequence[dict[str, Any]],
        handler: str = "rss",
        flow_step_id: Optional[str] = None,
        feed_url: Optional[str] = None,
    ) -> "DataPacket":
        """
        Build an input entry from parsed feed items.

        Only the first item is used: one job carries one unit of content.

        Args:
            items: Parsed items (title, description, link, guid, pub_date, categories)
            handler: Slug of the handler that fetched the feed
            flow_step_id: Flow step that produced the items
            feed_url: URL of the feed itself

        Raises:
            DataValidationError: If the feed has no items or the first item is empty
        """
        if not items:
            where = f" {feed_url}" if feed_url else ""
            raise DataValidationError(f"Feed{where} returned no items", flow_step_id)

        item = items[0]
        title = (item.get("title") or "").strip()
        body = (item.get("description") or item.get("body") or "").strip()
        if not title and not body:
            raise DataValidationError("Feed item has neither title nor body", flow_step_id)

        link = item.get("link")
        identifier = item.get("guid") or link or title

        packet = cls(
            content={
                "title": title,
                "body": body,
                "summary": None,
                "tags": list(item.get("categories") or []),
            },
            metadata={
                "step_type": StepType.INPUT.value,
                "handler": handler,
                "flow_step_id": flow_step_id,
                "success": True,
                "created_at": _now(),
                "source_type": "rss",
                "source_url": link,
                "feed_url": feed_url,
                "original_id": identifier,
                "item_identifier": identifier,
                "date_created": item.get("pub_date"),
                "author": item.get("author"),
                "processing_steps": [],
            },
        )
        if link:
            packet = packet.add_attachment("link", link)
        return packet.add_processing_step(StepType.INPUT.value)

    @classmethod
    def from_handler_output(
        cls,
        output: dict[str, Any],
        handler: str,
        flow_step_id: Optional[str] = None,
        source_type: str = "handler",
    ) -> "DataPacket":
        """
        Build an input entry from a generic handler payload.

        Raises:
            DataValidationError: If the payload has neither title nor body
        """
        title = (output.get("title") or "").strip()
        body = (output.get("body") or output.get("content") or "").strip()
        if not title and not body:
            raise DataValidationError(
                f"Handler '{handler}' returned content without title or body",
                flow_step_id,
            )

        extra = output.get("metadata") or {}
        packet = cls(
            content={
                "title": title,
                "body": body,
                "summary": output.get("summary"),
                "tags": list(output.get("tags") or []),
            },
            metadata={
                **{k: extra[k] for k in CARRY_OVER_KEYS if k in extra},
                "step_type": StepType.INPUT.value,
                "handler": handler,
                "flow_step_id": flow_step_id,
                "success": True,
                "created_at": _now(),
                "source_type": source_type,
                "processing_steps": [],
            },
            attachments=list(output.get("attachments") or []),
        )
        return packet.add_processing_step(StepType.INPUT.value)

    @classmethod
    def from_ai_output(
        cls,
        annotations: dict[str, Any],
        source: Optional["DataPacket"],
        handler: str,
        flow_step_id: Optional[str] = None,
    ) -> "DataPacket":
        """
        Build an AI entry: the source packet's content plus the annotations.

        Args:
            annotations: Structured handler output merged over the source content
            source: Latest packet before the AI step (None for a flow starting on AI)
            handler: AI handler slug
            flow_step_id: The AI flow step
        """
        content = dict(source.content) if source else {}
        content.update(annotations)
        packet = cls(
            content=content,
            metadata={
                **(source.carry_over() if source else {}),
                "step_type": StepType.AI.value,
                "handler": handler,
                "flow_step_id": flow_step_id,
                "success": True,
                "created_at": _now(),
                "source_type": "ai_processed",
                "processing_steps": list(source.processing_steps) if source else [],
            },
            attachments=list(source.attachments) if source else [],
        )
        return packet.add_processing_step(StepType.AI.value)

    @classmethod
    def ai_failure(
        cls,
        error: str,
        source: Optional["DataPacket"],
        handler: str,
        flow_step_id: Optional[str] = None,
    ) -> "DataPacket":
        """
        Build the entry recorded when an AI call fails.

        The source content is kept so downstream steps still see the last
        good data.
        """
        content = dict(source.content) if source else {}
        content["ai_error"] = error
        return cls(
            content=content,
            metadata={
                **(source.carry_over() if source else {}),
                "step_type": StepType.AI.value,
                "handler": handler,
                "flow_step_id": flow_step_id,
                "success": False,
                "error": error,
                "created_at": _now(),
                "source_type": "ai_processed",
                "processing_steps": list(source.processing_steps) if source else [],
            },
        )

    @classmethod
    def update_result(
        cls,
        result: Any,
        source: "DataPacket",
        handler: str,
        flow_step_id: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> "DataPacket":
        """Build the entry recording an update of existing content."""
        metadata = {
            **source.carry_over(),
            "step_type": StepType.UPDATE.value,
            "handler": handler,
            "flow_step_id": flow_step_id,
            "success": success,
            "created_at": _now(),
            "processing_steps": list(source.processing_steps),
        }
        if error:
            metadata["error"] = error
        packet = cls(
            content={"update_result": result, "updated_at": _now()},
            metadata=metadata,
        )
        return packet.add_processing_step(StepType.UPDATE.value)

    @classmethod
    def output_result(
        cls,
        result: Any,
        source: Optional["DataPacket"],
        handler: str,
        flow_step_id: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> "DataPacket":
        """Build the entry recording a delivery (publish/export)."""
        metadata = {
            **(source.carry_over() if source else {}),
            "step_type": StepType.OUTPUT.value,
            "handler": handler,
            "flow_step_id": flow_step_id,
            "success": success,
            "created_at": _now(),
            "processing_steps": list(source.processing_steps) if source else [],
        }
        if error:
            metadata["error"] = error
        packet = cls(
            content={"output_result": result, "delivered_at": _now()},
            metadata=metadata,
        )
        return packet.add_processing_step(StepType.OUTPUT.value)

    # -------------------------------------------------------------------------
    # Copy-returning helpers
    # -------------------------------------------------------------------------

    def add_processing_step(self, step: str) -> "DataPacket":
        """Return a copy with ``step`` appended to the processing-step markers."""
        packet = self.model_copy(deep=True)
        packet.metadata["processing_steps"] = [*self.processing_steps, step]
        return packet

    def add_attachment(self, kind: str, url: str, **extra: Any) -> "DataPacket":
        """Return a copy with one more attachment (kind is image, file or link)."""
        packet = self.model_copy(deep=True)
        packet.attachments.append({"kind": kind, "url": url, **extra})
        return packet

    def carry_over(self) -> dict[str, Any]:
        """Metadata identifiers later steps need, e.g. ``original_id``."""
        return {k: self.metadata[k] for k in CARRY_OVER_KEYS if self.metadata.get(k) is not None}

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def content_for_ai(self) -> str:
        """Render the packet as plain text for an AI prompt."""
        parts = []
        if self.content.get("title"):
            parts.append(f"Title: {self.content['title']}")
        if self.content.get("summary"):
            parts.append(f"Summary: {self.content['summary']}")
        if self.content.get("body"):
            parts.append(f"Content: {self.content['body']}")
        if self.content.get("tags"):
            parts.append(f"Tags: {', '.join(self.content['tags'])}")
        if self.source_url:
            parts.append(f"Source: {self.source_url}")
        return "\n\n".join(parts)

    def content_for_output(self) -> dict[str, Any]:
        """Fields an output handler publishes."""
        return {
            "title": self.content.get("title", ""),
            "body": self.content.get("body", ""),
            "summary": self.content.get("summary"),
            "tags": list(self.content.get("tags") or []),
            "source_url": self.source_url,
            "attachments": list(self.attachments),
        }

    def validate_content(self) -> list[str]:
        """Return a list of problems; empty when the packet is usable."""
        errors = []
        if not self.has_content:
            errors.append("Packet must have either title or body")
        if not self.metadata.get("step_type"):
            errors.append("Packet metadata is missing step_type")
        return errors

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def has_content(self) -> bool:
        return bool(self.content.get("title") or self.content.get("body"))

    @property
    def step_type(self) -> Optional[str]:
        return self.metadata.get("step_type")

    @property
    def success(self) -> bool:
        return bool(self.metadata.get("success", True))

    @property
    def original_id(self) -> Optional[str]:
        value = self.metadata.get("original_id")
        return str(value) if value not in (None, "") else None

    @property
    def source_url(self) -> Optional[str]:
        return self.metadata.get("source_url")

    @property
    def processing_steps(self) -> list[str]:
        return list(self.metadata.get("processing_steps") or [])


# -----------------------------------------------------------------------------
# Packet array helpers
# -----------------------------------------------------------------------------

def prepend_packet(packets: Sequence[DataPacket], packet: DataPacket) -> list[DataPacket]:
    """Return a new array with ``packet`` at index 0; ``packets`` is left untouched."""
    return [packet, *packets]


def latest_packet(packets: Sequence[DataPacket]) -> Optional[DataPacket]:
    """The newest entry, or None for an empty array."""
    return packets[0] if packets else None
