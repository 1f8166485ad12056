from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import tldextract

logger = logging.getLogger(__name__)

# Bundled public-suffix snapshot only; never reach out to the network for it.
_TLD_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())

# ========== Environment helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)


# ========== Domain helpers ==========

def get_base_domain(host: str) -> str:
    """
    Return registrable domain (eTLD+1); fall back to host if unknown.
    """
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("www."):
        host = host[4:]
    try:
        ext = _TLD_EXTRACT(host)
        if ext.domain and ext.suffix:
            return f"{ext.domain}.{ext.suffix}"
    except Exception:
        logger.debug("tldextract failed for %s", host, exc_info=True)
    return host

def host_matches(host: str, domains: Iterable[str]) -> bool:
    """True if host equals one of the domains or is a subdomain of one."""
    host = (host or "").lower()
    for d in domains:
        d = (d or "").strip().lower()
        if not d:
            continue
        if host == d or host.endswith("." + d):
            return True
    return False


# ========== URL helpers ==========

_NON_HTTP_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")

def is_http_url(url: str) -> bool:
    try:
        s = urlparse(url).scheme.lower()
    except ValueError:
        return False
    return s in {"http", "https"}

def normalize_url(url: str) -> str:
    """
    Canonical form used for dedupe and state keys:
    lowercase scheme/host, default port dropped, fragment dropped,
    query params sorted, trailing slash stripped (except the root path).
    Unparseable input is returned unchanged.
    """
    url = (url or "").strip()
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return url
    if not parsed.scheme or not parsed.netloc:
        return url

    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    netloc = host
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        netloc = f"{host}:{port}"

    path = parsed.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    return urlunparse((scheme, netloc, path, "", query, ""))

def normalize_for_entry_comparison(url: str) -> str:
    """Entry points compare equal regardless of trailing slash, query or hash."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    if not parsed.scheme:
        return url
    path = parsed.path.rstrip("/")
    return urlunparse((parsed.scheme.lower(), (parsed.netloc or "").lower(), path, "", "", ""))

def resolve_link(href: str, base_url: str) -> Optional[str]:
    """Resolve an href against the page URL; None for non-http(s) targets."""
    href = (href or "").strip()
    if not href or href.lower().startswith(_NON_HTTP_PREFIXES):
        return None
    try:
        resolved = urljoin(base_url, href)
    except ValueError:
        return None
    return resolved if is_http_url(resolved) else None


# ========== Text helpers ==========

def slugify(text: str, max_len: int = 80) -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9\-_.]+", "-", text)
    text = re.sub(r"-{2,}", "-", text).strip("-._")
    if len(text) > max_len:
        text = text[:max_len].rstrip("-._")
    return text or "untitled"

_TITLE_SEPARATORS = (" | ", " - ", " – ", " — ", " :: ", " • ", " / ")

def clean_title(title: Optional[str]) -> str:
    """Strip a trailing site name ("Overview | Docs" -> "Overview")."""
    if not title or not isinstance(title, str):
        return ""
    cleaned = title.strip()
    for sep in _TITLE_SEPARATORS:
        if sep in cleaned:
            first = cleaned.split(sep)[0].strip()
            if len(first) >= 2:
                cleaned = first
                break
    if len(cleaned) < 2 and len(title.strip()) >= 2:
        return title.strip()
    return cleaned

def title_from_url(url: str) -> str:
    """Fallback section title from the last path segment ("getting-started" -> "Getting Started")."""
    try:
        parts = [p for p in urlparse(url).path.split("/") if p]
    except ValueError:
        parts = []
    if not parts:
        return "Section"
    return " ".join(w[:1].upper() + w[1:] for w in parts[-1].split("-") if w) or "Section"


# ========== File I/O ==========

def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> None:
    """
    Write text atomically using a NamedTemporaryFile and os.replace on the same filesystem.
    Readers never observe a partially written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", encoding=encoding, dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp", delete=False
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
