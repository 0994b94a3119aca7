"""Raw artifact extractor: pulls a markup document out of a payload.

Attempts, in order:
  1. the named JSON string field (escape sequences reversed)
  2. a fenced block tagged with the artifact language (```html)
  3. a bare <!DOCTYPE ...><root>...</root> block, only once it is closed

None means "not available yet", never an error.
"""

from __future__ import annotations

import re

from docstream.stream.parser import string_field


def fenced_block(text: str, language: str) -> str | None:
    """Body of the first ```<language> fence, up to its closing fence or the end."""
    opener = re.search(
        rf"(?:^|\n)[ \t]*```[ \t]*{re.escape(language)}[ \t]*\r?\n", text, re.IGNORECASE
    )
    if opener is None:
        return None
    closing = re.compile(r"\n[ \t]*```").search(text, opener.end() - 1)
    body = text[opener.end() : closing.start()] if closing else text[opener.end() :]
    return body.strip() or None


def tagged_block(text: str, root: str) -> str | None:
    """A complete ``<root>...</root>`` block, including a leading doctype."""
    pattern = rf"(?:<!DOCTYPE\s[^>]*>\s*)?<{re.escape(root)}(?:\s[^>]*)?>[\s\S]*</{re.escape(root)}\s*>"
    match = re.search(pattern, text, re.IGNORECASE)
    return match.group(0) if match else None


def extract_raw(
    fragment: str, field: str, language: str = "html", root: str | None = None
) -> str | None:
    """Return the markup artifact carried by ``fragment``, or None."""
    if not fragment:
        return None

    value = string_field(fragment, field)
    if value and value.strip():
        return value

    value = fenced_block(fragment, language)
    if value:
        return value

    return tagged_block(fragment, root or language)
