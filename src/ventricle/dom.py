"""
HTML query capability used by the extractor and the anchor lookup.

Everything outside this module talks to Document and Node only; BeautifulSoup
and its soupsieve CSS engine stay behind this seam.
"""

import re
from typing import List, Optional

from bs4 import BeautifulSoup, Tag

_WHITESPACE = re.compile(r"\s+")

TEXT_ATTRIBUTES = {"innertext", "text", "textcontent"}
INNER_HTML_ATTRIBUTES = {"innerhtml", "html"}
OUTER_HTML_ATTRIBUTES = {"outerhtml"}


class Node:
    """A single matched element."""

    def __init__(self, tag: Tag):
        self._tag = tag

    def text(self) -> str:
        """Visible text with whitespace runs collapsed and trimmed."""
        return _WHITESPACE.sub(" ", self._tag.get_text()).strip()

    def inner_html(self) -> str:
        return self._tag.decode_contents().strip()

    def outer_html(self) -> str:
        return str(self._tag).strip()

    def attr(self, name: str) -> Optional[str]:
        value = self._tag.get(name)
        if value is None:
            return None
        # bs4 returns multi-valued attributes (class, rel) as lists
        if isinstance(value, list):
            value = " ".join(value)
        return value.strip()

    def matches(self, selector: str) -> bool:
        return self._tag.css.match(selector)

    def query(self, selector: str) -> List["Node"]:
        """Descendants matching ``selector`` in document order."""
        return [Node(tag) for tag in self._tag.select(selector)]

    def query_self_or_descendant(self, selector: str) -> Optional["Node"]:
        """The node itself if it matches, else its first matching descendant."""
        if self.matches(selector):
            return self
        found = self._tag.select_one(selector)
        return Node(found) if found is not None else None

    def __repr__(self) -> str:
        return f"Node(<{self._tag.name}>)"


class Document:
    """A parsed HTML page."""

    def __init__(self, soup: BeautifulSoup):
        self._soup = soup

    @classmethod
    def parse(cls, html: str) -> "Document":
        return cls(BeautifulSoup(html, "html.parser"))

    def query(self, selector: str) -> List[Node]:
        return [Node(tag) for tag in self._soup.select(selector)]

    def first(self, selector: str) -> Optional[Node]:
        tag = self._soup.select_one(selector)
        return Node(tag) if tag is not None else None


def read_attribute(node: Node, attribute: str) -> Optional[str]:
    """Read ``attribute`` from a node; empty results come back as None.

    ``innerText``/``text``/``textContent`` read visible text, ``innerHtml``/
    ``html`` the inner markup, ``outerHtml`` the element itself. Any other
    name is looked up as a literal DOM attribute. Matching is case-insensitive
    for the special names only.
    """
    attr = attribute.strip()
    lower = attr.lower()
    if lower in TEXT_ATTRIBUTES:
        value = node.text()
    elif lower in INNER_HTML_ATTRIBUTES:
        value = node.inner_html()
    elif lower in OUTER_HTML_ATTRIBUTES:
        value = node.outer_html()
    else:
        value = node.attr(attr)
    return value or None
