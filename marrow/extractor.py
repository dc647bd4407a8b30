"""
Snapshot extraction from a loaded page.

Produces the cleaned HTML and a compact structure digest the mapper feeds to
the model. The digest is computed from the rendered HTML with selectolax, so
it is cheap and works identically on a live page or saved markup.
"""

import json
import re
from typing import Dict, Optional

from selectolax.parser import HTMLParser, Node

from .exceptions import PageNotReady


HTML_CHAR_BUDGET = 15000

NOISE_TAGS = "script, style, svg, noscript, template, link[rel='stylesheet']"

COUNTED = {
    "links": "a[href]",
    "buttons": "button, [role='button'], input[type='submit'], input[type='button']",
    "inputs": "input:not([type='hidden']), select, textarea",
    "forms": "form",
    "headings": "h1, h2, h3, h4, h5, h6",
    "images": "img",
    "lists": "ul, ol",
    "tables": "table",
    "iframes": "iframe",
    "landmarks": "header, nav, main, aside, footer, [role='navigation'], [role='main'], [role='banner'], [role='contentinfo']",
    "data_attributes": "[data-testid], [data-test], [data-qa], [data-id]",
}


def clean_html(html: str) -> str:
    """Strip non-structural noise (scripts, styles, inline SVG)."""
    tree = HTMLParser(html)
    for tag in tree.css(NOISE_TAGS):
        tag.decompose()
    return tree.html or ""


def truncate_html(html: str, budget: int = HTML_CHAR_BUDGET) -> str:
    return html[:budget]


def structure_counts(html: str) -> Dict[str, int]:
    tree = HTMLParser(html)
    return {name: len(tree.css(selector)) for name, selector in COUNTED.items()}


def summarize_structure(html: str, max_depth: int = 3, max_children: int = 8) -> str:
    """
    Build a JSON digest of the page: element counts, landmarks, the first
    headings, and the DOM tree below <body> cut at ``max_depth`` levels and
    ``max_children`` children per node.
    """
    tree = HTMLParser(html)
    for tag in tree.css(NOISE_TAGS):
        tag.decompose()

    title_node = tree.css_first("title")
    headings = [
        f"{h.tag}: {_truncate(h.text(strip=True), 80)}"
        for h in tree.css("h1, h2, h3")[:10]
        if h.text(strip=True)
    ]
    landmarks = [_describe(n) for n in tree.css(COUNTED["landmarks"])[:10]]

    root = tree.body
    summary = {
        "title": _truncate(title_node.text(strip=True), 120) if title_node else "",
        "counts": {name: len(tree.css(selector)) for name, selector in COUNTED.items()},
        "landmarks": landmarks,
        "headings": headings,
        "tree": _digest(root, max_depth, max_children) if root is not None else None,
    }
    return json.dumps(summary, indent=1)


def _digest(node: Node, depth: int, max_children: int) -> Dict:
    entry: Dict = {"node": _describe(node)}
    if depth <= 0:
        return entry

    children = [c for c in node.iter() if c.tag and c.tag[0] not in "-_"]
    if children:
        entry["children"] = [_digest(c, depth - 1, max_children) for c in children[:max_children]]
        if len(children) > max_children:
            entry["more"] = len(children) - max_children
    return entry


def _describe(node: Node) -> str:
    """Compact css-like label: tag#id.class1.class2[data-testid][role]."""
    attrs = node.attributes
    label = node.tag
    if attrs.get("id"):
        label += f"#{attrs['id']}"
    classes = (attrs.get("class") or "").split()
    if classes:
        label += "".join(f".{c}" for c in classes[:2])
    for key in ("data-testid", "role", "aria-label", "name"):
        if attrs.get(key):
            label += f'[{key}="{_truncate(attrs[key], 40)}"]'
    return label


def _truncate(text: Optional[str], max_len: int) -> str:
    """Truncate text to max length."""
    text = re.sub(r"\s+", " ", text or "").strip()
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


class ContextExtractor:
    """Reads a navigated page without mutating it."""

    async def get_clean_html(self, page) -> str:
        """Full rendered HTML minus noise tags. Callers apply the char budget."""
        self._ensure_ready(page)
        return clean_html(await page.content())

    async def get_structure_summary(self, page) -> str:
        self._ensure_ready(page)
        return summarize_structure(await page.content())

    @staticmethod
    def _ensure_ready(page):
        if page is None:
            raise PageNotReady("Page is undefined")
        url = getattr(page, "url", "")
        if not url or url == "about:blank":
            raise PageNotReady("Page has not been navigated yet")
