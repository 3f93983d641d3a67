"""
Keyword Annotator

A deterministic AI-step handler. It reads the packet text the engine passes
in and returns ``ai_*`` annotations shaped like a model response, so flows
can be built and tested without a provider.
"""

import logging
import math
import re
from collections import Counter

from packetflow.handlers import Handler, ToolDefinition, ToolParameter
from packetflow.models import StepType

logger = logging.getLogger(__name__)

STOPWORDS = frozenset("""
a about after all also an and any are as at be because been but by can could
did do does for from had has have he her his how i if in into is it its just
more most my no not of on one or our out over she so some such than that the
their them then there these they this to up us was we were what when which
who will with would you your
""".split())


class KeywordAnnotator(Handler):
    """Extracts keywords and a lead summary from packet text."""

    slug = "keyword_annotator"
    handler_type = StepType.AI
    display_name = "Keyword Annotator"
    version = "1.0.0"

    tools = [
        ToolDefinition(
            name="annotate_content",
            description="Annotate the latest packet with keywords and a summary",
            parameters={
                "packet_text": ToolParameter(description="Rendered packet text"),
                "prompt": ToolParameter(description="Step prompt, echoed back"),
                "max_keywords": ToolParameter(type="integer"),
            },
        ),
    ]

    default_config = {"max_keywords": 5, "words_per_minute": 200}

    async def handle_tool_call(self, tool_name, parameters, ctx):
        text = parameters.get("packet_text") or parameters.get("content") or ""
        if not text.strip():
            return {"success": False, "error": "No text to annotate"}

        body = parameters.get("content") or text
        words = re.findall(r"[a-zA-Z][a-zA-Z'-]+", body.lower())
        counts = Counter(w for w in words if w not in STOPWORDS and len(w) > 2)
        max_keywords = int(self.setting(parameters, "max_keywords", 5))
        keywords = [w for w, _ in counts.most_common(max_keywords)]

        sentences = re.split(r"(?<=[.!?])\s+", body.strip())
        summary = sentences[0] if sentences else ""

        word_count = len(words)
        avg_length = sum(len(w) for w in words) / word_count if word_count else 0
        wpm = int(self.get_config("words_per_minute", 200))

        annotations = {
            "ai_keywords": keywords,
            "ai_summary": summary,
            "ai_word_count": word_count,
            # 1-10, from average word length
            "complexity_score": max(1, min(10, round(avg_length - 2))),
            "estimated_completion_time": max(1, math.ceil(word_count / wpm)),
        }
        if parameters.get("prompt"):
            annotations["ai_prompt"] = parameters["prompt"]

        ctx.logger.info(f"Annotated {word_count} words, keywords={keywords}")
        return {"success": True, "data": annotations}


def register(registry, config):
    registry.register(KeywordAnnotator(config))
