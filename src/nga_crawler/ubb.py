"""
UBB (bracket tag) to HTML conversion.

The converter scans left to right. Inline tags (b, i, u, s, del) are tracked
on a stack; a closer that does not match the innermost open tag is kept as
literal text, and tags still open at the end of a segment are closed.
Block tags (code, url, img, list, quote) consume everything up to their
matching closer, counting nested same-name tags so an inner ``[quote]``
does not end the outer one. A block tag without a closer is kept as text.

Output is not yet safe to render; it always goes through HtmlSanitizer.
"""

import html
import re
from typing import List, Optional, Tuple

from .url_policy import SafeUrlPolicy


SIMPLE_TAGS = {
    "b": "strong",
    "i": "em",
    "u": "u",
    "s": "s",
    "del": "del",
}

BLOCK_TAGS = frozenset({"code", "url", "img", "list", "quote"})

LINK_REL = "nofollow noopener noreferrer"

_TAG = re.compile(r"\[(/?)([a-z]+)(?:=([^\]]+))?\]", re.IGNORECASE)
_LIST_ITEM = re.compile(r"\[\*\]", re.IGNORECASE)


def escape_text(text: str) -> str:
    return html.escape(text, quote=True)


def escape_with_breaks(text: str) -> str:
    if not text:
        return ""
    return escape_text(text).replace("\n", "<br>")


class UbbConverter:
    """Convert forum bracket markup into an HTML fragment."""

    def __init__(self, url_policy: Optional[SafeUrlPolicy] = None):
        self.url_policy = url_policy or SafeUrlPolicy()

    def convert(self, text: str) -> str:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        return self._convert_segment(text)

    def _convert_segment(self, text: str) -> str:
        output: List[str] = []
        stack: List[str] = []
        offset = 0
        length = len(text)

        while offset < length:
            bracket = text.find("[", offset)
            if bracket < 0:
                output.append(escape_with_breaks(text[offset:]))
                break

            output.append(escape_with_breaks(text[offset:bracket]))

            match = _TAG.match(text, bracket)
            if match is None:
                output.append("[")
                offset = bracket + 1
                continue

            full_tag = match.group(0)
            is_closing = match.group(1) == "/"
            name = match.group(2).lower()
            argument = match.group(3)
            tag_end = match.end()

            if not is_closing and name in BLOCK_TAGS:
                consumed = self._consume_block(text, tag_end, name)
                if consumed is None:
                    output.append(escape_with_breaks(full_tag))
                    offset = tag_end
                    continue

                inner, after = consumed
                raw_segment = text[bracket:after]
                output.append(self._render_block(name, argument, inner, raw_segment))
                offset = after
                continue

            if name in SIMPLE_TAGS:
                html_tag = SIMPLE_TAGS[name]
                if not is_closing:
                    stack.append(html_tag)
                    output.append(f"<{html_tag}>")
                elif stack and stack[-1] == html_tag:
                    stack.pop()
                    output.append(f"</{html_tag}>")
                else:
                    output.append(escape_with_breaks(full_tag))
            else:
                output.append(escape_with_breaks(full_tag))

            offset = tag_end

        while stack:
            output.append(f"</{stack.pop()}>")

        return "".join(output)

    @staticmethod
    def _consume_block(text: str, start: int, name: str) -> Optional[Tuple[str, int]]:
        """
        Find the closer matching a block tag opened just before ``start``.

        Returns:
            (inner text, offset just past the closer), or None when the
            block is never closed
        """
        pattern = re.compile(r"\[(/?)" + re.escape(name) + r"(?:=[^\]]+)?\]", re.IGNORECASE)
        depth = 1
        for match in pattern.finditer(text, start):
            if match.group(1) == "/":
                depth -= 1
                if depth == 0:
                    return text[start:match.start()], match.end()
            else:
                depth += 1
        return None

    def _render_block(self, name: str, argument: Optional[str], inner: str, raw_segment: str) -> str:
        if name == "code":
            return f"<pre><code>{escape_text(inner)}</code></pre>"
        if name == "quote":
            return f"<blockquote>{self._convert_segment(inner)}</blockquote>"
        if name == "list":
            return self._render_list(inner, argument)
        if name == "url":
            return self._render_url(inner, argument, raw_segment)
        return self._render_img(inner, raw_segment)

    def _render_url(self, inner: str, argument: Optional[str], raw_segment: str) -> str:
        href = self.url_policy.normalize(argument if argument is not None else inner)
        if href is None:
            return escape_with_breaks(raw_segment)
        return (
            f'<a href="{escape_text(href)}" rel="{LINK_REL}" target="_blank">'
            f"{escape_with_breaks(inner)}</a>"
        )

    def _render_img(self, inner: str, raw_segment: str) -> str:
        src = self.url_policy.normalize(inner)
        if src is None:
            return escape_with_breaks(raw_segment)
        return f'<img src="{escape_text(src)}" alt="" loading="lazy" referrerpolicy="no-referrer">'

    def _render_list(self, inner: str, argument: Optional[str]) -> str:
        list_tag = "ol" if (argument or "").strip().lower() == "1" else "ul"
        items = [part for part in _LIST_ITEM.split(inner) if part.strip()]
        if not items:
            items = [inner]
        rendered = "".join(f"<li>{self._convert_segment(item)}</li>" for item in items)
        return f"<{list_tag}>{rendered}</{list_tag}>"
