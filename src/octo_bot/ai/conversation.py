"""Convert stored conversation history into provider-neutral chat messages."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from octo_bot.core.types import MessageRole
from octo_bot.storage.models import ChatMessage

if TYPE_CHECKING:
    from octo_bot.channels.models import Attachment

_TEXT_PREFIXES = ("text/",)
_TEXT_TYPES = frozenset({
    "application/json", "application/xml", "application/javascript",
    "application/x-yaml", "application/sql", "application/x-sh",
    "application/xhtml+xml", "application/csv",
})

# Tool results are replayed to the model as user turns
_ROLE_MAP = {
    MessageRole.USER: "user",
    MessageRole.ASSISTANT: "assistant",
    MessageRole.SYSTEM: "system",
    MessageRole.TOOL: "user",
}


def _is_text_media_type(media_type: str) -> bool:
    return media_type.startswith(_TEXT_PREFIXES) or media_type in _TEXT_TYPES


def describe_attachment(att: Attachment) -> str:
    """Render an attachment as prompt text: text files inline, others as metadata."""
    if _is_text_media_type(att.media_type):
        text_content = att.data.decode("utf-8", errors="replace")
        return f"[File: {att.filename}]\n{text_content}"
    size_kb = len(att.data) / 1024
    return f"[File: {att.filename} ({att.media_type}, {size_kb:.1f} KB), content not shown]"


def build_user_content(content: str, attachments: list[Attachment] | None = None) -> str:
    parts = [content] if content else []
    parts.extend(describe_attachment(att) for att in attachments or [])
    return "\n\n".join(parts)


def build_messages(
    history: list[ChatMessage],
    content: str,
    attachments: list[Attachment] | None = None,
) -> list[dict[str, Any]]:
    """History (chronological) followed by the new user turn."""
    messages: list[dict[str, Any]] = [
        {"role": _ROLE_MAP[record.role], "content": record.content} for record in history
    ]
    messages.append({"role": "user", "content": build_user_content(content, attachments)})
    return messages
