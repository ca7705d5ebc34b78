"""Seed the working message list from the session's active branch.

When ``Settings.convert_html_to_markdown`` is on, HTML in older turns is
rewritten as Markdown, which is far cheaper in tokens. The newest
``html_to_markdown_keep_last`` turns keep their original markup.
"""

from __future__ import annotations

import logging
import re

from markdownify import ATX, MarkdownConverter

from ...chat import branch_navigator
from ...chat.message_model import MessageContent, MessageNode, full_text_of, has_non_text_parts
from ..engine import ContextProcessor
from ..types import PipelineContext, ProcessableMessage

LOGGER = logging.getLogger(__name__)

PROCESSOR_ID = "threadloom:session-loader"
PRIORITY = 100
COMPRESSED_IDS_KEY = "compressed_node_ids"

_HTML_TAG_RE = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
_HTML_COMMENT_RE = re.compile(r"<!--[\s\S]*?-->")
_EMPTY_LINK_RE = re.compile(r"!?\[\]\(\s*\)")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_LINES_RE = re.compile(r"\n{3,}")

__all__ = [
    "PROCESSOR_ID",
    "PRIORITY",
    "COMPRESSED_IDS_KEY",
    "load_session_history",
    "html_to_markdown",
    "create_processor",
]


def load_session_history(context: PipelineContext) -> None:
    session = context.session
    if session is None:
        context.log("warn", "No session supplied; history not loaded", processor_id=PROCESSOR_ID)
        return

    path = branch_navigator.get_active_path(session)
    hidden = _compressed_node_ids(path)
    converter = _converter_for(context)
    keep_last = max(0, context.settings.html_to_markdown_keep_last) if converter else 0
    messages: list[ProcessableMessage] = []
    skipped_blank = 0
    converted = 0
    for index, node in enumerate(path):
        if node.id in hidden:
            continue
        if not _has_content(node):
            skipped_blank += 1
            continue
        content = node.content
        if converter is not None and len(path) - index > keep_last:
            content = _convert_content(content, converter, node_id=node.id)
            if content != node.content:
                converted += 1
        messages.append(
            ProcessableMessage(
                role=node.role,
                content=content,
                source_type="session_history",
                source_id=node.id,
                source_index=index,
            )
        )

    context.messages = messages
    context.log(
        "info",
        f"Loaded {len(messages)} history message(s)",
        processor_id=PROCESSOR_ID,
        details={
            "path_length": len(path),
            "skipped_blank": skipped_blank,
            "hidden": len(hidden),
            "html_converted": converted,
        },
    )


def html_to_markdown(text: str, converter: MarkdownConverter | None = None) -> str:
    """Convert ``text`` to Markdown when it looks like HTML; return it unchanged otherwise."""

    if not _HTML_TAG_RE.search(text):
        return text
    markdown = (converter or _markdown_converter()).convert(text)
    return _tidy_markdown(markdown)


def _markdown_converter() -> MarkdownConverter:
    # Model-facing output, so no Markdown escaping.
    return MarkdownConverter(
        heading_style=ATX,
        strong_em_symbol="*",
        escape_asterisks=False,
        escape_underscores=False,
        escape_misc=False,
        sub_symbol="<sub>",
        sup_symbol="<sup>",
    )


def _tidy_markdown(markdown: str) -> str:
    markdown = _HTML_COMMENT_RE.sub("", markdown)
    markdown = _EMPTY_LINK_RE.sub("", markdown)
    markdown = _TRAILING_SPACE_RE.sub("", markdown)
    markdown = _BLANK_LINES_RE.sub("\n\n", markdown)
    return markdown.strip()


def _converter_for(context: PipelineContext) -> MarkdownConverter | None:
    settings = context.settings
    if settings is None or not settings.convert_html_to_markdown:
        return None
    return _markdown_converter()


def _convert_content(content: MessageContent, converter: MarkdownConverter, *, node_id: str) -> MessageContent:
    try:
        if isinstance(content, str):
            return html_to_markdown(content, converter)
        return tuple(
            part.with_text(html_to_markdown(part.text, converter)) if part.type == "text" and part.text else part
            for part in content
        )
    except Exception:  # noqa: BLE001 - keep the original markup on converter failure
        LOGGER.warning("HTML to Markdown conversion failed for node %s", node_id, exc_info=True)
        return content


def _has_content(node: MessageNode) -> bool:
    if has_non_text_parts(node.content):
        return True
    text = full_text_of(node.content)
    return bool(text and text.strip())


def _compressed_node_ids(path: list[MessageNode]) -> set[str]:
    hidden: set[str] = set()
    for node in path:
        ids = node.metadata.get(COMPRESSED_IDS_KEY)
        if ids:
            hidden.update(str(node_id) for node_id in ids)
    return hidden


def create_processor() -> ContextProcessor:
    return ContextProcessor(
        id=PROCESSOR_ID,
        name="Session loader",
        priority=PRIORITY,
        execute=load_session_history,
        description="Loads the active branch of the session as the initial message list.",
    )
