"""
Telegram Formatting Helpers

Telegram's HTML parse mode accepts a small tag set (b, i, s, code, pre,
a). LLM output is markdown, so it is converted here, and long replies
are split under Telegram's message size limit.
"""

import re
from typing import List

MAX_MESSAGE_LENGTH = 4000

_CODE_BLOCK_RE = re.compile(r"```[a-zA-Z0-9_+-]*\n?(.*?)```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`\n]+)`")
_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
_TAG_RE = re.compile(r"</?[a-zA-Z][^>]*>")


def escape_html(text: str) -> str:
    """Escape the three characters Telegram HTML mode reserves."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def strip_html(text: str) -> str:
    """Remove tags and unescape entities for a plain-text fallback."""
    plain = _TAG_RE.sub("", text)
    return plain.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")


def markdown_to_telegram_html(text: str) -> str:
    """
    Convert common markdown to Telegram HTML.

    Code blocks and inline code are protected with placeholders so their
    contents are escaped but never formatted.
    """
    placeholders: List[str] = []

    def _stash(html: str) -> str:
        placeholders.append(html)
        return f"\x00{len(placeholders) - 1}\x00"

    text = _CODE_BLOCK_RE.sub(lambda m: _stash(f"<pre>{escape_html(m.group(1).rstrip())}</pre>"), text)
    text = _INLINE_CODE_RE.sub(lambda m: _stash(f"<code>{escape_html(m.group(1))}</code>"), text)
    text = _LINK_RE.sub(
        lambda m: _stash(f'<a href="{escape_html(m.group(2))}">{escape_html(m.group(1))}</a>'),
        text,
    )

    text = escape_html(text)

    lines = []
    for line in text.split("\n"):
        heading = re.match(r"^#{1,6}\s+(.*)$", line)
        if heading:
            line = f"<b>{heading.group(1).strip()}</b>"
        elif re.match(r"^\s*[-*+]\s+", line):
            line = re.sub(r"^(\s*)[-*+]\s+", r"\1• ", line)
        lines.append(line)
    text = "\n".join(lines)

    text = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", text)
    text = re.sub(r"__(.+?)__", r"<b>\1</b>", text)
    text = re.sub(r"(?<![\w*])\*(?!\s)([^*\n]+?)\*(?![\w*])", r"<i>\1</i>", text)
    text = re.sub(r"(?<![\w_])_(?!\s)([^_\n]+?)_(?![\w_])", r"<i>\1</i>", text)
    text = re.sub(r"~~(.+?)~~", r"<s>\1</s>", text)

    return re.sub(r"\x00(\d+)\x00", lambda m: placeholders[int(m.group(1))], text)


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """
    Split text into chunks of at most max_length characters.

    Splits on newlines first; a single line longer than the limit is split
    on spaces, and a single word longer than the limit is hard-cut.
    """
    if len(text) <= max_length:
        return [text]

    chunks: List[str] = []
    current = ""

    def _flush():
        nonlocal current
        if current:
            chunks.append(current)
            current = ""

    for line in text.split("\n"):
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) <= max_length:
            current = candidate
            continue

        _flush()
        if len(line) <= max_length:
            current = line
            continue

        for word in line.split(" "):
            while len(word) > max_length:
                _flush()
                chunks.append(word[:max_length])
                word = word[max_length:]
            candidate = f"{current} {word}" if current else word
            if len(candidate) <= max_length:
                current = candidate
            else:
                _flush()
                current = word

    _flush()
    return chunks
