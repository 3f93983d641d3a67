"""
RSS Handler

An input handler that:
1. Fetches an RSS 2.0 or Atom feed over HTTP
2. Parses its items
3. Skips items this flow step already ingested
4. Returns the remaining items, newest first, and marks the first one processed
"""

import logging
import xml.etree.ElementTree as ET
from typing import Optional

import httpx

from packetflow.errors import DataValidationError
from packetflow.handlers import Handler, ToolDefinition, ToolParameter
from packetflow.models import StepType

logger = logging.getLogger(__name__)

ATOM_NS = "{http://www.w3.org/2005/Atom}"


class RSSHandler(Handler):
    """Fetches feed items."""

    slug = "rss"
    handler_type = StepType.INPUT
    display_name = "RSS / Atom Feed"
    description = "Fetches a feed and emits the newest unseen item"
    version = "1.0.0"

    tools = [
        ToolDefinition(
            name="fetch_rss_item",
            description="Fetch the newest unprocessed item of a feed",
            parameters={
                "feed_url": ToolParameter(required=True, description="Feed URL"),
            },
        ),
    ]

    default_config = {
        "timeout": 10,
        "user_agent": "PacketFlow/0.1 (+feed reader)",
    }

    def __init__(self, config: Optional[dict] = None):
        super().__init__(config)
        # Tests swap in httpx.MockTransport here.
        self.transport: Optional[httpx.AsyncBaseTransport] = None

    async def handle_tool_call(self, tool_name, parameters, ctx):
        feed_url = parameters["feed_url"]

        try:
            xml_text = await self._fetch(feed_url, timeout=float(self.setting(parameters, "timeout", 10)))
        except httpx.HTTPError as e:
            logger.error(f"Error fetching feed {feed_url}: {e}")
            return {"success": False, "error": f"Could not fetch feed {feed_url}: {e}"}

        items = parse_feed(xml_text)
        if not items:
            ctx.logger.info(f"Feed {feed_url} has no items")
            return {"success": True, "items": [], "feed_url": feed_url}

        fresh = []
        for item in items:
            identifier = item.get("guid") or item.get("link") or item.get("title")
            if identifier and await ctx.has_processed("rss", identifier):
                continue
            fresh.append(item)

        if not fresh:
            ctx.logger.info(f"No new items in {feed_url} ({len(items)} already processed)")
            return {"success": True, "message": "No new items", "feed_url": feed_url}

        first = fresh[0]
        identifier = first.get("guid") or first.get("link") or first.get("title")
        if identifier:
            await ctx.mark_processed("rss", identifier)

        ctx.logger.info(f"Feed {feed_url}: {len(fresh)} new items, emitting '{first.get('title')}'")
        return {"success": True, "items": fresh, "feed_url": feed_url}

    async def _fetch(self, url: str, timeout: float) -> str:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=self.transport,
            follow_redirects=True,
            headers={"User-Agent": self.get_config("user_agent", "PacketFlow")},
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.text


def _text(elem: Optional[ET.Element]) -> Optional[str]:
    if elem is None or elem.text is None:
        return None
    return elem.text.strip()


def parse_feed(xml_text: str) -> list[dict]:
    """
    Parse RSS 2.0 ``channel/item`` or Atom ``entry`` elements.

    Raises:
        DataValidationError: If the document is not well-formed XML
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise DataValidationError(f"Feed is not valid XML: {e}")

    if root.tag == f"{ATOM_NS}feed":
        return [_parse_atom_entry(entry) for entry in root.findall(f"{ATOM_NS}entry")]

    channel = root.find("channel")
    elements = channel.findall("item") if channel is not None else root.findall(".//item")
    return [_parse_rss_item(item) for item in elements]


def _parse_rss_item(item: ET.Element) -> dict:
    return {
        "title": _text(item.find("title")),
        "description": _text(item.find("description")),
        "link": _text(item.find("link")),
        "guid": _text(item.find("guid")),
        "pub_date": _text(item.find("pubDate")),
        "author": _text(item.find("author")),
        "categories": [c.text.strip() for c in item.findall("category") if c.text],
    }


def _parse_atom_entry(entry: ET.Element) -> dict:
    link = None
    for link_elem in entry.findall(f"{ATOM_NS}link"):
        if link_elem.get("rel", "alternate") == "alternate":
            link = link_elem.get("href")
            break

    author = entry.find(f"{ATOM_NS}author")
    return {
        "title": _text(entry.find(f"{ATOM_NS}title")),
        "description": _text(entry.find(f"{ATOM_NS}summary")) or _text(entry.find(f"{ATOM_NS}content")),
        "link": link,
        "guid": _text(entry.find(f"{ATOM_NS}id")),
        "pub_date": _text(entry.find(f"{ATOM_NS}updated")) or _text(entry.find(f"{ATOM_NS}published")),
        "author": _text(author.find(f"{ATOM_NS}name")) if author is not None else None,
        "categories": [c.get("term") for c in entry.findall(f"{ATOM_NS}category") if c.get("term")],
    }


def register(registry, config):
    """Register the handler with the engine."""
    registry.register(RSSHandler(config))
