from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx
from bs4 import BeautifulSoup, Comment
from markdownify import markdownify

from .config import Config

logger = logging.getLogger(__name__)

# Page chrome that never belongs in an article body
_DROP_TAGS = ("script", "style", "noscript", "iframe", "svg", "template", "form", "button")
_DROP_SELECTORS = (
    "nav", "header", "footer", "aside",
    "[role=navigation]", "[role=banner]", "[role=contentinfo]",
    ".breadcrumb", ".breadcrumbs", ".toc", ".table-of-contents",
    ".edit-this-page", ".pagination-nav", ".theme-doc-footer",
    "[aria-hidden=true]",
)

_MD_HEADING = re.compile(r"^#\s+(.+?)\s*#*\s*$", re.MULTILINE)


def prune_html(html: str) -> str:
    """Drop scripts, comments and navigation chrome from an article fragment."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(list(_DROP_TAGS)):
        tag.decompose()
    for c in soup.find_all(string=lambda s: isinstance(s, Comment)):
        c.extract()
    for sel in _DROP_SELECTORS:
        for el in soup.select(sel):
            el.decompose()
    body = soup.body
    return body.decode_contents() if body is not None else str(soup)


def html_to_markdown(html: str, *, heading_style: str = "atx", strip: bool = True) -> str:
    if not html:
        return ""
    md = markdownify(prune_html(html), heading_style=heading_style.lower(), bullets="-")
    return md.strip() if strip else md


def clean_markdown(md: str) -> str:
    """Right-trim lines and collapse runs of blank lines; code fences are left alone."""
    if not md:
        return md
    cleaned: list[str] = []
    blank = False
    in_fence = False
    for ln in md.splitlines():
        ln = ln.rstrip()
        if ln.lstrip().startswith("```"):
            in_fence = not in_fence
        if not in_fence and ln.strip() == "":
            if not blank:
                cleaned.append("")
            blank = True
            continue
        cleaned.append(ln)
        blank = False
    return "\n".join(cleaned).strip() + "\n"


def _yaml_scalar(value: Any) -> str:
    text = str(value)
    if text == "" or re.search(r"[:#\[\]{},&*!|>'\"%@`]|^\s|\s$", text):
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return text


def add_frontmatter(markdown: str, metadata: Optional[Dict[str, Any]] = None, **fields: Any) -> str:
    """
    Prefix a YAML frontmatter block (title, url, index, ...). None values are
    skipped; markdown that already starts with frontmatter is returned as-is.
    """
    meta = {**(metadata or {}), **fields}
    meta = {k: v for k, v in meta.items() if v is not None}
    if not meta or markdown.startswith("---\n"):
        return markdown
    lines = ["---"] + [f"{k}: {_yaml_scalar(v)}" for k, v in meta.items()] + ["---", ""]
    return "\n".join(lines) + markdown


def title_from_markdown(md: str) -> Optional[str]:
    m = _MD_HEADING.search(md or "")
    return m.group(1).strip() if m else None


class MarkdownSourceFetcher:
    """
    Some documentation hosts serve the raw source next to the rendered page
    (``/docs/intro`` -> ``/docs/intro.md``). Fetch it with httpx; any failure
    returns None so the caller falls back to DOM extraction.
    """

    def __init__(self, cfg: Config, client: Optional[httpx.AsyncClient] = None):
        self.suffix = cfg.markdown_source_suffix or ".md"
        self.timeout_s = cfg.page_timeout_ms / 1000.0
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={
                "User-Agent": cfg.user_agent,
                "Accept": "text/markdown, text/plain, */*",
            },
            follow_redirects=True,
            timeout=self.timeout_s,
        )

    def source_url(self, url: str) -> str:
        parts = urlsplit(url)
        path = parts.path.rstrip("/") or "/index"
        if not path.endswith(self.suffix):
            path += self.suffix
        return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))

    async def fetch(self, url: str) -> Optional[Tuple[str, Optional[str]]]:
        md_url = self.source_url(url)
        try:
            resp = await self._client.get(md_url)
        except httpx.HTTPError as e:
            logger.warning("[md-source] fetch failed %s: %s", md_url, e)
            return None
        if resp.status_code >= 400:
            logger.warning("[md-source] %s returned HTTP %s", md_url, resp.status_code)
            return None
        ctype = resp.headers.get("content-type", "")
        if "html" in ctype:
            # Host rendered an HTML page for the .md path; not a source file.
            logger.debug("[md-source] %s served %s; ignoring", md_url, ctype)
            return None
        content = resp.text
        if not content.strip():
            return None
        title = title_from_markdown(content)
        logger.info("[md-source] using %s (%d chars, title=%s)", md_url, len(content), title or "-")
        return content, title

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
