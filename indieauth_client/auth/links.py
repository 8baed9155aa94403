"""Link relation extraction from HTTP headers and HTML.

Two sources of ``rel`` links are used during endpoint discovery:
- The ``Link`` response header (RFC 8288)
- ``<link rel=... href=...>`` tags in an HTML page

The HTML scanner is incremental: it is fed the document chunk by chunk and
reports ``done`` as soon as every wanted relation has been seen, so callers
can stop reading the body early. No document tree is built.
"""

import re
from collections.abc import Iterable
from html.parser import HTMLParser
from urllib.parse import urljoin

# One link-value: <uri> followed by any number of ;param[=value] pieces.
# Quoted values may contain commas and semicolons.
_LINK_VALUE_RE = re.compile(
    r'<(?P<uri>[^>]*)>(?P<params>(?:\s*;\s*[^;,"]*(?:"(?:[^"\\]|\\.)*"[^;,"]*)*)*)'
)
_LINK_PARAM_RE = re.compile(
    r';\s*(?P<name>[^\s;,=]+)\s*(?:=\s*(?:"(?P<quoted>(?:[^"\\]|\\.)*)"|(?P<token>[^;,\s]*)))?'
)

# Chunk size used when scanning an already-loaded HTML string
HTML_CHUNK_SIZE = 4096


def parse_link_header(value: str, base_url: str | None = None) -> dict[str, str]:
    """Parse a Link header into a mapping of relation name to URI.

    A link may declare several space-separated relation types; each maps to
    the link's URI. When a relation appears more than once the first
    occurrence wins.

    Args:
        value: The raw Link header value (multiple headers joined by commas)
        base_url: URL that relative URIs are resolved against

    Returns:
        Dictionary of lowercase relation names to URIs
    """
    links: dict[str, str] = {}

    for match in _LINK_VALUE_RE.finditer(value):
        uri = match.group("uri").strip()
        if base_url:
            uri = urljoin(base_url, uri)

        rels: list[str] = []
        for param in _LINK_PARAM_RE.finditer(match.group("params")):
            if param.group("name").lower() != "rel":
                continue
            rel_value = param.group("quoted")
            if rel_value is None:
                rel_value = param.group("token") or ""
            rels = rel_value.replace('\\"', '"').split()
            # Only the first rel parameter of a link counts (RFC 8288 3.3)
            break

        for rel in rels:
            rel = rel.lower()
            if rel not in links:
                links[rel] = uri

    return links


class HtmlLinkScanner(HTMLParser):
    """Incremental scanner for ``<link rel=... href=...>`` tags.

    Feed it HTML with ``feed()``; once ``done`` is True the remaining input
    can be discarded. ``done`` means every relation in ``until`` (all of
    ``rels`` by default) has been seen; other relations are collected only
    if they appear before that point.

    Usage:
        scanner = HtmlLinkScanner(["authorization_endpoint"])
        for chunk in chunks:
            scanner.feed(chunk)
            if scanner.done:
                break
        scanner.links  # {"authorization_endpoint": "https://..."}
    """

    def __init__(
        self,
        rels: Iterable[str],
        base_url: str | None = None,
        until: Iterable[str] | None = None,
    ):
        super().__init__(convert_charrefs=True)
        self.wanted = [r.lower() for r in rels]
        self.until = [r.lower() for r in until] if until is not None else self.wanted
        self.base_url = base_url
        self.links: dict[str, str] = {}

    @property
    def done(self) -> bool:
        return all(rel in self.links for rel in self.until)

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag != "link" or self.done:
            return

        values = dict(attrs)
        href = values.get("href")
        rel_attr = values.get("rel")
        if href is None or not rel_attr:
            return

        if self.base_url:
            href = urljoin(self.base_url, href)

        for rel in rel_attr.lower().split():
            if rel in self.wanted and rel not in self.links:
                self.links[rel] = href


def _chunked(html: str) -> Iterable[str]:
    for start in range(0, len(html), HTML_CHUNK_SIZE):
        yield html[start : start + HTML_CHUNK_SIZE]


def scan_html_links(
    chunks: str | Iterable[str],
    rels: Iterable[str],
    base_url: str | None = None,
) -> dict[str, str]:
    """Scan HTML for the first ``<link>`` of each wanted relation.

    Reading stops as soon as every relation has been found.

    Args:
        chunks: The HTML document, whole or as an iterable of text chunks
        rels: Relation names to look for
        base_url: URL that relative hrefs are resolved against

    Returns:
        Mapping of the relations found to their hrefs
    """
    scanner = HtmlLinkScanner(rels, base_url=base_url)
    source = _chunked(chunks) if isinstance(chunks, str) else chunks

    for chunk in source:
        scanner.feed(chunk)
        if scanner.done:
            break

    scanner.close()
    return scanner.links


def find_html_link(chunks: str | Iterable[str], rel: str) -> str | None:
    """Return the href of the first ``<link>`` whose rel includes ``rel``."""
    return scan_html_links(chunks, [rel]).get(rel.lower())
