"""Text helpers: sender names, inbound message flattening, reply cleanup, Telegram HTML."""

from __future__ import annotations

import html
import re
from typing import Any, Sequence

from markdown_it import MarkdownIt
from markdown_it.token import Token
from telegram import Message, MessageEntity

_LEADING_LABEL = re.compile(r"^\s*\[[^\]]*\]:\s*")
_TAG = re.compile(r"<[^>]+>")
MAX_QUOTED_REPLY_CHARS = 2000

# Raw HTML in model output is treated as text; only the parser emits tags.
_MARKDOWN = MarkdownIt("commonmark", {"html": False}).enable("strikethrough")
# Telegram accepts a small tag subset; everything else is flattened to text.
_INLINE_TAGS = {"strong": "b", "em": "i", "s": "s"}


def clean_ai_response(text: str) -> str:
    """Drop a leading `[speaker]:` label some models echo back, and trim."""
    return _LEADING_LABEL.sub("", text, count=1).strip()


def format_name(entity: Any, fallback: str = "User") -> str:
    """Display name for a Telegram user or chat: title, full name, then (@username)."""
    if entity is None:
        return fallback
    parts: list[str] = []
    title = getattr(entity, "title", None)
    if title:
        parts.append(f'"{title}"')
    full = f"{getattr(entity, 'first_name', None) or ''} {getattr(entity, 'last_name', None) or ''}".strip()
    if full:
        parts.append(full)
    username = getattr(entity, "username", None)
    if username:
        parts.append(f"(@{username})" if parts else f"@{username}")
    return " ".join(parts) if parts else fallback


def _utf16_slice(encoded: bytes, start: int, end: int) -> str:
    return encoded[start * 2 : end * 2].decode("utf-16-le")


def format_entities(text: str, entities: Sequence[MessageEntity] | None) -> str:
    """Re-inline text links and code blocks that Telegram delivers out of band."""
    if not entities:
        return text
    encoded = text.encode("utf-16-le")
    total = len(encoded) // 2
    last = 0
    out: list[str] = []
    for entity in sorted(entities, key=lambda e: e.offset):
        if entity.offset < last:
            continue
        end = entity.offset + entity.length
        out.append(_utf16_slice(encoded, last, entity.offset))
        chunk = _utf16_slice(encoded, entity.offset, end)
        if entity.type == MessageEntity.TEXT_LINK:
            out.append(f"[{chunk}]({entity.url})")
        elif entity.type == MessageEntity.PRE:
            out.append(f"\n```{entity.language or ''}\n{chunk}\n```\n")
        else:
            out.append(chunk)
        last = end
    out.append(_utf16_slice(encoded, last, total))
    return "".join(out)


def format_message_text(message: Message) -> str:
    result = ""
    if message.text:
        result += format_entities(message.text, message.entities)
    if message.caption:
        if result:
            result += "\n\n"
        result += format_entities(message.caption, message.caption_entities)
    return result


def origin_name(origin: Any) -> str:
    if origin is None:
        return ""
    origin_type = getattr(origin, "type", "")
    if origin_type == "user":
        return format_name(origin.sender_user)
    if origin_type == "hidden_user":
        return str(origin.sender_user_name)
    if origin_type == "chat":
        return format_name(origin.sender_chat)
    if origin_type == "channel":
        return format_name(origin.chat)
    return ""


def format_message(message: Message | None) -> str:
    """Flatten a Telegram message (forward, quoted reply, photos, text) into prompt text."""
    if message is None:
        return ""
    lines: list[str] = []
    if message.forward_origin:
        lines.append(f"**Forwarded from: {origin_name(message.forward_origin)}**")

    replied = message.reply_to_message
    if replied is not None:
        lines.append(f"> **Replying to: {format_name(replied.from_user)}**")
        lines.append(">")
        if replied.forward_origin:
            lines.append(f"> Forwarded from: {origin_name(replied.forward_origin)}")
            lines.append(">")
        if replied.photo:
            lines.append("> Photos:")
            lines.append(
                f"> The message includes {len(replied.photo)} pictures (this client cannot display pictures)."
            )
            lines.append(">")
        replied_text = format_message_text(replied)
        if replied_text:
            quoted = replied_text.replace("\n", "\n> ").strip()[:MAX_QUOTED_REPLY_CHARS]
            lines.append(f'> "{quoted}"')
        lines.append("")

    if message.photo:
        lines.append(
            f"Photos: The message includes {len(message.photo)} pictures (this client cannot display pictures)."
        )
    text = format_message_text(message)
    if text:
        lines.append(text.strip())
    return "\n".join(lines)


def _render_inline(children: Sequence[Token]) -> str:
    out: list[str] = []
    for token in children:
        kind = token.type
        if kind == "text":
            out.append(html.escape(token.content, quote=False))
        elif kind in ("softbreak", "hardbreak"):
            out.append("\n")
        elif kind == "code_inline":
            out.append(f"<code>{html.escape(token.content, quote=False)}</code>")
        elif kind == "link_open":
            href = str(token.attrGet("href") or "")
            out.append(f'<a href="{html.escape(href)}">')
        elif kind == "link_close":
            out.append("</a>")
        elif kind.endswith("_open") and token.tag in _INLINE_TAGS:
            out.append(f"<{_INLINE_TAGS[token.tag]}>")
        elif kind.endswith("_close") and token.tag in _INLINE_TAGS:
            out.append(f"</{_INLINE_TAGS[token.tag]}>")
        elif kind == "image":
            out.append(_render_inline(token.children or []))
        else:
            out.append(html.escape(token.content, quote=False))
    return "".join(out)


def to_telegram_html(text: str) -> str:
    """Markdown to the HTML subset Telegram accepts.

    Tags come from the parser's token stream, so they always nest properly;
    unmatched emphasis markers stay as literal text.
    """
    out: list[str] = []
    # None marks a bullet list, otherwise the next ordered-list number.
    lists: list[int | None] = []
    for token in _MARKDOWN.parse(text):
        kind = token.type
        if kind == "inline":
            out.append(_render_inline(token.children or []))
        elif kind == "heading_open":
            out.append("<b>")
        elif kind == "heading_close":
            out.append("</b>\n\n")
        elif kind == "paragraph_close":
            out.append("\n" if token.hidden else "\n\n")
        elif kind == "bullet_list_open":
            lists.append(None)
        elif kind == "ordered_list_open":
            lists.append(int(token.attrGet("start") or 1))
        elif kind in ("bullet_list_close", "ordered_list_close"):
            lists.pop()
            if not lists:
                out.append("\n")
        elif kind == "list_item_open":
            indent = "  " * (len(lists) - 1)
            number = lists[-1]
            if number is None:
                out.append(f"{indent}• ")
            else:
                out.append(f"{indent}{number}. ")
                lists[-1] = number + 1
        elif kind in ("fence", "code_block"):
            body = html.escape(token.content.rstrip("\n"), quote=False)
            language = token.info.strip().split()[0] if token.info.strip() else ""
            if language:
                out.append(f'<pre><code class="language-{html.escape(language)}">{body}</code></pre>\n\n')
            else:
                out.append(f"<pre>{body}</pre>\n\n")
        elif kind == "blockquote_open":
            out.append("<blockquote>")
        elif kind == "blockquote_close":
            out.append("</blockquote>\n\n")
        elif kind == "hr":
            out.append("---\n\n")
        elif kind == "html_block":
            out.append(html.escape(token.content, quote=False))
    rendered = re.sub(r"\s+</blockquote>", "</blockquote>", "".join(out))
    return re.sub(r"\n{3,}", "\n\n", rendered).strip()


def html_to_plain(text: str) -> str:
    """Strip tags from rendered HTML, for when Telegram rejects the markup."""
    return html.unescape(_TAG.sub("", text))
