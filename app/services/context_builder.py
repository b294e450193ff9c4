"""
Context Builder - Bounded generation context from a prompt and the catalog.

Derives capability hints from the prompt with an ordered keyword table, then
selects the catalog material whose declared hints intersect them.
"""

import base64
import binascii
import json
import re
from collections.abc import Sequence

from app.models.api import Attachment
from app.models.domain import ExemplarPattern, GenerationContext, TemplateSkeleton, Tip
from app.observability.logging import get_logger
from app.services.catalog import CatalogRepository

logger = get_logger(__name__)

# Ordered keyword -> hints table; earlier keywords contribute hints first
KEYWORD_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("http", ("n8n-nodes-base.httpRequest",)),
    ("api", ("n8n-nodes-base.httpRequest",)),
    ("google sheets", ("n8n-nodes-base.googleSheets",)),
    ("sheets", ("n8n-nodes-base.googleSheets",)),
    ("google docs", ("n8n-nodes-base.googleDocs",)),
    ("calendar", ("n8n-nodes-base.googleCalendar",)),
    ("telegram", ("n8n-nodes-base.telegram",)),
    ("chat", ("@n8n/n8n-nodes-langchain.chatTrigger", "@n8n/n8n-nodes-langchain.agent")),
    ("ai", ("@n8n/n8n-nodes-langchain.agent", "@n8n/n8n-nodes-langchain.lmChatOpenAi")),
    ("schedule", ("n8n-nodes-base.scheduleTrigger",)),
    ("webhook", ("n8n-nodes-base.webhook",)),
    ("email", ("n8n-nodes-base.gmail",)),
    ("database", ("n8n-nodes-base.postgres",)),
)

BASELINE_HINTS: tuple[str, ...] = (
    "n8n-nodes-base.set",
    "n8n-nodes-base.merge",
    "n8n-nodes-base.if",
)

MAX_PATTERNS = 10
MAX_TIPS = 5
MAX_TEMPLATES = 3

TEXT_ATTACHMENT_LIMIT = 4000

SYSTEM_PROMPT = (
    "You are an expert n8n workflow architect. Produce a complete, importable n8n "
    "workflow as a single JSON object with \"name\", \"nodes\" and \"connections\". "
    "Every node needs a unique name, a type, a typeVersion, a position and its "
    "parameters. Use the node patterns below for exact configurations."
)

_KEYWORD_PATTERNS = tuple(
    (re.compile(rf"\b{re.escape(keyword)}\b"), hints) for keyword, hints in KEYWORD_HINTS
)


def derive_hints(prompt: str) -> tuple[str, ...]:
    """
    Capability hints for a prompt.

    Keywords match on word boundaries of the lower-cased prompt. Hints keep
    first-seen order with duplicates collapsed; the baseline utility hints
    are always appended.
    """
    text = prompt.lower()
    hints: dict[str, None] = {}
    for pattern, keyword_hints in _KEYWORD_PATTERNS:
        if pattern.search(text):
            for hint in keyword_hints:
                hints.setdefault(hint, None)
    for hint in BASELINE_HINTS:
        hints.setdefault(hint, None)
    return tuple(hints)


def _declares(declared: Sequence[str], wanted: set[str]) -> bool:
    """Catalog entries without declared hints are general-purpose."""
    return not declared or bool(wanted.intersection(declared))


class ContextBuilder:
    """Assembles a GenerationContext from the read-only catalog."""

    def __init__(
        self,
        catalog: CatalogRepository,
        max_patterns: int = MAX_PATTERNS,
        max_tips: int = MAX_TIPS,
        max_templates: int = MAX_TEMPLATES,
    ) -> None:
        self.catalog = catalog
        self.max_patterns = max_patterns
        self.max_tips = max_tips
        self.max_templates = max_templates

    async def build(
        self, prompt: str, attachments: Sequence[Attachment] = ()
    ) -> GenerationContext:
        """
        Build the context for one generation call.

        Raises:
            PersistenceError: Catalog unavailable
        """
        hints = derive_hints(prompt)
        wanted = set(hints)
        rank = {hint: index for index, hint in enumerate(hints)}

        patterns = await self.catalog.find_patterns(hints)
        patterns = sorted(patterns, key=lambda p: rank.get(p.node_type, len(rank)))
        selected_patterns = tuple(patterns[: self.max_patterns])

        tips = await self.catalog.find_tips()
        selected_tips = tuple(t for t in tips if _declares(t.hints, wanted))[: self.max_tips]

        templates = await self.catalog.find_templates()
        selected_templates = tuple(t for t in templates if _declares(t.hints, wanted))[
            : self.max_templates
        ]

        logger.debug(
            "generation_context_built",
            hints=list(hints),
            patterns=len(selected_patterns),
            tips=len(selected_tips),
            templates=len(selected_templates),
        )

        return GenerationContext(
            user_prompt=render_user_prompt(prompt, attachments),
            hints=hints,
            patterns=selected_patterns,
            tips=selected_tips,
            templates=selected_templates,
            system_context=render_system_context(
                selected_patterns, selected_tips, selected_templates
            ),
        )


def render_system_context(
    patterns: Sequence[ExemplarPattern],
    tips: Sequence[Tip],
    templates: Sequence[TemplateSkeleton],
) -> str:
    """System message: instructions plus the selected catalog material."""
    sections = [SYSTEM_PROMPT]

    if patterns:
        nodes = [
            {
                "type": p.node_type,
                "name": p.node_name,
                "config": p.node_config,
                "use_case": p.use_case,
            }
            for p in patterns
        ]
        sections.append("Available Node Patterns:\n" + json.dumps(nodes, indent=2))

    if tips:
        sections.append(
            "Optimization Tips:\n" + "\n".join(f"{t.title}: {t.content}" for t in tips)
        )

    if templates:
        examples = [
            {"name": t.name, "structure": t.workflow_json, "use_cases": list(t.use_cases)}
            for t in templates
        ]
        sections.append("Template Examples:\n" + json.dumps(examples, indent=2))

    return "\n\n".join(sections)


def render_user_prompt(prompt: str, attachments: Sequence[Attachment] = ()) -> str:
    """User message: the request plus any attachments."""
    parts = [
        f"Generate a complete n8n workflow for: {prompt}",
        "Use the provided node patterns for exact configurations. Respond with valid JSON only.",
    ]
    for attachment in attachments:
        parts.append(_render_attachment(attachment))
    return "\n\n".join(parts)


def _render_attachment(attachment: Attachment) -> str:
    header = f"Attached file: {attachment.name} ({attachment.mime_type})"
    if not (attachment.mime_type.startswith("text/") or attachment.mime_type == "application/json"):
        return header
    try:
        text = base64.b64decode(attachment.data, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.info("attachment_not_decodable", name=attachment.name)
        return header
    return f"{header}\n{text[:TEXT_ATTACHMENT_LIMIT]}"
