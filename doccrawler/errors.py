"""
Failure taxonomy for the crawler.

Every failure that reaches the orchestrator is reduced to an ErrorCategory and a
fixed RetryPolicy. Errors raised by our own code carry a machine-readable
``category``; anything coming out of the browser layer (Playwright, in-page
scripts) is classified from its type name and message text instead.
"""
from __future__ import annotations

import errno
import re
import traceback
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorCategory(str, Enum):
    IGNORABLE_JS = "IGNORABLE_JS"
    RETRYABLE_NETWORK = "RETRYABLE_NETWORK"
    RETRYABLE_TIMEOUT = "RETRYABLE_TIMEOUT"
    RETRYABLE_BROWSER = "RETRYABLE_BROWSER"
    PERMANENT_HTTP = "PERMANENT_HTTP"
    PERMANENT_VALIDATION = "PERMANENT_VALIDATION"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay_ms: int
    backoff_multiplier: float
    max_delay_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


NO_RETRY = RetryPolicy(max_attempts=1, base_delay_ms=0, backoff_multiplier=1, max_delay_ms=0)

RETRY_POLICIES: Dict[ErrorCategory, RetryPolicy] = {
    ErrorCategory.RETRYABLE_NETWORK: RetryPolicy(5, 2000, 1.5, 30000),
    ErrorCategory.RETRYABLE_TIMEOUT: RetryPolicy(3, 5000, 2, 60000),
    ErrorCategory.RETRYABLE_BROWSER: RetryPolicy(3, 10000, 2, 60000),
}

RETRYABLE_CATEGORIES = frozenset(RETRY_POLICIES)


# ========== Exceptions ==========

class ScraperError(Exception):
    """Base error; ``category`` short-circuits text classification when set."""

    code = "SCRAPER_ERROR"
    category: Optional[ErrorCategory] = None

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        *,
        category: Optional[ErrorCategory] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: Dict[str, Any] = dict(details or {})
        self.timestamp = datetime.now(timezone.utc)
        if category is not None:
            self.category = category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category.value if self.category else None,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "stack": _format_stack(self),
        }


class ValidationError(ScraperError):
    code = "VALIDATION_ERROR"
    category = ErrorCategory.PERMANENT_VALIDATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class NetworkError(ScraperError):
    code = "NETWORK_ERROR"

    def __init__(self, message: str, url: str, original: Any = None, *, category: Optional[ErrorCategory] = None):
        super().__init__(
            message,
            details={"url": url, "original_error": _message_of(original)},
            category=category,
        )
        self.url = url
        self.original = original


class HttpStatusError(ScraperError):
    """Main-document response with status >= 400."""

    code = "HTTP_ERROR"

    def __init__(self, status: int, url: Optional[str] = None):
        if status in (408, 504):
            category = ErrorCategory.RETRYABLE_TIMEOUT
        elif status in (429, 502, 503):
            category = ErrorCategory.RETRYABLE_NETWORK
        elif 400 <= status < 500:
            category = ErrorCategory.PERMANENT_HTTP
        else:
            category = ErrorCategory.UNKNOWN
        super().__init__(f"HTTP {status}", details={"status": status, "url": url}, category=category)
        self.status = status
        self.url = url


class NavigationError(ScraperError):
    """All navigation strategies failed; category follows the last underlying failure."""

    code = "NAVIGATION_ERROR"

    def __init__(self, message: str, url: str, last_error: Any = None):
        category = categorize(last_error) if last_error is not None else ErrorCategory.RETRYABLE_NETWORK
        super().__init__(
            message,
            details={"url": url, "last_error": _message_of(last_error)},
            category=category,
        )
        self.url = url
        self.last_error = last_error


class FileOperationError(ScraperError):
    code = "FILE_ERROR"

    def __init__(self, message: str, file_path: str, operation: str):
        super().__init__(message, details={"file_path": str(file_path), "operation": operation})


class BrowserError(ScraperError):
    code = "BROWSER_ERROR"
    category = ErrorCategory.RETRYABLE_BROWSER

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class ImageLoadError(ScraperError):
    code = "IMAGE_LOAD_ERROR"

    def __init__(self, message: str, url: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"url": url, **(details or {})})


class ProcessingError(ScraperError):
    code = "PROCESSING_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


# ========== Classification ==========

_IGNORABLE_JS = re.compile(
    r"ResizeObserver loop"
    r"|attempted to hard navigate to the same URL"
    r"|Navigation cancelled by a newer navigation"
    r"|Script error\.?$"
    r"|Non-Error promise rejection",
    re.IGNORECASE,
)
_TIMEOUT = re.compile(r"timeout|timed out", re.IGNORECASE)
_NETWORK = re.compile(
    r"ECONNRESET|ECONNREFUSED|ENOTFOUND|ETIMEDOUT|EAI_AGAIN|EPIPE"
    r"|net::ERR_(?:NETWORK_CHANGED|INTERNET_DISCONNECTED|CONNECTION_\w+|NAME_NOT_RESOLVED|ADDRESS_UNREACHABLE|TUNNEL_CONNECTION_FAILED)"
    r"|socket hang up|connection reset|connection refused|network changed|network error|\bnetwork\b(?!idle)"
    r"|\bHTTP\s*50[23]\b",
    re.IGNORECASE,
)
_BROWSER = re.compile(
    r"browser (?:has been )?closed|target (?:page, context or browser )?(?:has been )?closed"
    r"|page creation failed|failed to (?:create|open) page|failed to acquire browser|browser acquisition"
    r"|page crashed|browser disconnected",
    re.IGNORECASE,
)
_PERMANENT_HTTP = re.compile(r"\bHTTP\s*4\d\d\b", re.IGNORECASE)
_VALIDATION = re.compile(r"content not found|invalid selector|invalid url", re.IGNORECASE)
_SYSTEM = re.compile(r"ENOSPC|EMFILE|ENOMEM|no space left|too many open files|out of memory", re.IGNORECASE)
_SYSTEM_ERRNOS = {errno.ENOSPC, errno.EMFILE, errno.ENFILE, errno.ENOMEM}


def _message_of(err: Any) -> Optional[str]:
    if err is None:
        return None
    if isinstance(err, BaseException):
        return str(err) or type(err).__name__
    return str(err)


def _describe(err: Any) -> str:
    if isinstance(err, BaseException):
        return f"{type(err).__name__}: {err}"
    return str(err)


def categorize(err: Any) -> ErrorCategory:
    """
    Map a failure to its category. Structured ``category`` wins; otherwise
    patterns are checked in a fixed order because their surface text overlaps
    ("HTTP 504 Gateway Timeout" is a timeout, not a 5xx network failure).
    """
    structured = getattr(err, "category", None)
    if isinstance(structured, ErrorCategory):
        return structured

    text = _describe(err)

    if _IGNORABLE_JS.search(text):
        return ErrorCategory.IGNORABLE_JS
    if _TIMEOUT.search(text) or isinstance(err, httpx.TimeoutException):
        return ErrorCategory.RETRYABLE_TIMEOUT
    if _NETWORK.search(text) or isinstance(err, (ConnectionError, httpx.NetworkError)):
        return ErrorCategory.RETRYABLE_NETWORK
    if _BROWSER.search(text):
        return ErrorCategory.RETRYABLE_BROWSER
    if _PERMANENT_HTTP.search(text):
        return ErrorCategory.PERMANENT_HTTP
    if isinstance(err, ValidationError) or _VALIDATION.search(text):
        return ErrorCategory.PERMANENT_VALIDATION
    if (
        _SYSTEM.search(text)
        or isinstance(err, MemoryError)
        or (isinstance(err, OSError) and err.errno in _SYSTEM_ERRNOS)
    ):
        return ErrorCategory.SYSTEM_ERROR
    return ErrorCategory.UNKNOWN


def is_retryable(err: Any) -> bool:
    return categorize(err) in RETRYABLE_CATEGORIES


def is_ignorable(err: Any) -> bool:
    return categorize(err) is ErrorCategory.IGNORABLE_JS


def get_retry_strategy(err: Any) -> RetryPolicy:
    return policy_for(categorize(err))


def policy_for(category: ErrorCategory) -> RetryPolicy:
    return RETRY_POLICIES.get(category, NO_RETRY)


# ========== Serialisation ==========

def _format_stack(err: BaseException) -> Optional[str]:
    if err.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(err), err, err.__traceback__))


def format_error(err: Any) -> Dict[str, Any]:
    """Serialise any exception (or plain value) into a JSON-friendly dict."""
    if isinstance(err, ScraperError):
        return err.to_dict()
    now = datetime.now(timezone.utc).isoformat()
    if isinstance(err, BaseException):
        return {
            "name": type(err).__name__,
            "message": str(err),
            "category": categorize(err).value,
            "timestamp": now,
            "stack": _format_stack(err),
        }
    return {"name": "Error", "message": str(err), "timestamp": now}


def error_message(err: Any) -> str:
    """Reduce a failure to the single string persisted in crawl state."""
    return _message_of(err) or "Unknown error"
