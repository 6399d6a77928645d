from __future__ import annotations

import re
from html.parser import HTMLParser

_BLOCK_TAGS = frozenset(
    {"p", "div", "li", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "article", "section"}
)
_LINE_BREAK_TAGS = frozenset({"br", "hr"})
_SKIPPED_TAGS = frozenset({"script", "style"})

_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")
_BLANK_LINE_RE = re.compile(r"\n{3,}")
_INLINE_SPACE_RE = re.compile(r"[ \t]{2,}")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([.,!?;:])")


def _collapse_blank_lines(text: str) -> str:
    """Replace runs of three or more newlines with exactly two."""
    return _BLANK_LINE_RE.sub("\n\n", text)


class _ParagraphTextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._buf: list[str] = []
        self._skip_depth = 0  # inside script/style

    def handle_starttag(self, tag: str, attrs) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth += 1
        elif self._skip_depth == 0 and tag in _LINE_BREAK_TAGS:
            self._buf.append("\n")

    def handle_startendtag(self, tag: str, attrs) -> None:
        if self._skip_depth == 0 and tag in _LINE_BREAK_TAGS:
            self._buf.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIPPED_TAGS:
            if self._skip_depth > 0:
                self._skip_depth -= 1
        elif self._skip_depth == 0 and tag in _BLOCK_TAGS:
            self._buf.append("\n\n")

    def handle_data(self, data: str) -> None:
        if self._skip_depth == 0:
            self._buf.append(data)

    def get_text(self) -> str:
        return "".join(self._buf)


def html_to_plain_text(html: str) -> str:
    """Convert article HTML into paragraph-preserving plain text for RSVP playback.

    Block-level closing tags become blank-line paragraph breaks, ``br``/``hr``
    become single newlines, and script/style bodies are dropped.
    """
    if not html:
        return ""
    parser = _ParagraphTextExtractor()
    parser.feed(html)
    parser.close()
    text = parser.get_text().replace("\xa0", " ")

    text = _TRAILING_SPACE_RE.sub("\n", text)
    text = _collapse_blank_lines(text)
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", text)
    return text.strip()
