"""Markdown to Telegram HTML conversion.

Telegram's HTML mode understands a small tag set (b, i, s, code, pre, a,
blockquote). Code spans are cut out first so their contents are escaped but
never reformatted, then restored after the inline rules ran.
"""

from __future__ import annotations

import re

_CODE_BLOCK = re.compile(r"```([\w+-]*)\n?(.*?)```", re.DOTALL)
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_PLACEHOLDER = re.compile(r"\x00(CB|IC)(\d+)\x00")

_INLINE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\*\*(.+?)\*\*"), r"<b>\1</b>"),
    (re.compile(r"(?<![\w*])\*(?!\s)(.+?)(?<!\s)\*(?![\w*])"), r"<i>\1</i>"),
    (re.compile(r"(?<!\w)_(.+?)_(?!\w)"), r"<i>\1</i>"),
    (re.compile(r"~~(.+?)~~"), r"<s>\1</s>"),
    (re.compile(r"^#{1,6}\s+(.+)$", re.MULTILINE), r"<b>\1</b>"),
    (re.compile(r"^&gt;\s?(.+)$", re.MULTILINE), r"<blockquote>\1</blockquote>"),
)
_LINK = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")


def escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def markdown_to_telegram_html(markdown: str) -> str:
    """Convert common Markdown to the subset of HTML Telegram accepts."""

    code_blocks: list[str] = []
    inline_codes: list[str] = []

    def _stash_block(match: re.Match[str]) -> str:
        language, code = match.group(1), match.group(2).removesuffix("\n")
        escaped = escape_html(code)
        if language:
            code_blocks.append(f'<pre><code class="language-{language}">{escaped}</code></pre>')
        else:
            code_blocks.append(f"<pre>{escaped}</pre>")
        return f"\x00CB{len(code_blocks) - 1}\x00"

    def _stash_inline(match: re.Match[str]) -> str:
        inline_codes.append(f"<code>{escape_html(match.group(1))}</code>")
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = _CODE_BLOCK.sub(_stash_block, markdown)
    text = _INLINE_CODE.sub(_stash_inline, text)
    text = escape_html(text)

    for pattern, replacement in _INLINE_RULES:
        text = pattern.sub(replacement, text)
    text = _LINK.sub(
        lambda match: f'<a href="{match.group(2).replace(chr(34), "&quot;")}">{match.group(1)}</a>',
        text,
    )
    text = text.replace("</blockquote>\n<blockquote>", "\n")

    def _restore(match: re.Match[str]) -> str:
        stash = code_blocks if match.group(1) == "CB" else inline_codes
        return stash[int(match.group(2))]

    return _PLACEHOLDER.sub(_restore, text)
