"""
Shared helpers for the Portus / Payslip4U automation.

Holds the exception hierarchy raised along the authentication chain, the
request wrapper that turns transport failures into TransportError, and the
debug logging helpers used to inspect cookies and headers while walking the
portals.
"""

import functools
import logging
import os

import requests

# --- Constants ---
DEBUG_FILE_PREFIX = "debug_"
SENSITIVE_HEADERS = ('cookie', 'set-cookie', 'authorization', 'proxy-authorization')


# --- Exceptions ---

class PortusError(Exception):
    """Base class for every failure surfaced by the payslip chain."""
    pass


class TransportError(PortusError):
    """Network, timeout or connection failure on an HTTP call."""
    pass


class FormNotFound(PortusError):
    """The expected form was missing from a page, or matched more than once."""

    def __init__(self, selector, match_count, url=None):
        self.selector = selector
        self.match_count = match_count
        self.url = url
        where = f" on {url}" if url else ""
        super().__init__(
            f"Expected exactly one form matching '{selector}'{where}, found {match_count}"
        )


class AuthenticationFailed(PortusError):
    """A login completed but the logged-in cookie was not sent back."""

    def __init__(self, portal):
        self.portal = portal
        super().__init__(f"Could not log in to {portal}")


class MalformedResponse(PortusError):
    """A successful response whose body lacks the expected structure."""
    pass


class NoDocumentsAvailable(PortusError):
    """The document listing came back empty."""
    pass


class UnexpectedContentType(PortusError):
    """The document endpoint did not answer with a PDF."""

    def __init__(self, content_type, expected):
        self.content_type = content_type
        self.expected = expected
        super().__init__(f"Unrecognized download content: {content_type!r} (expected {expected})")


# --- Request Handling ---

def safe_request_handler(func):
    """Decorator for consistent error handling in HTTP requests.

    Any requests.exceptions.RequestException raised by the wrapped call is
    logged and re-raised as TransportError with the original as its cause.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except requests.exceptions.RequestException as e:
            logging.error(f"Network error in {func.__name__}: {e}")
            raise TransportError(f"Network error in {func.__name__}: {e}") from e
    return wrapper


# --- Logging Helpers ---

def log_session_cookies(session, title="Session Cookies"):
    """Logs the cookies currently stored in a requests.Session (values redacted)."""
    if not logging.getLogger().isEnabledFor(logging.DEBUG):
        return
    logging.debug(f"--- {title} ---")
    if session.cookies:
        for cookie in session.cookies:
            logging.debug(
                f"  Name: {cookie.name}, Domain: {cookie.domain}, "
                f"Path: {cookie.path}, Expires: {cookie.expires}"
            )
    else:
        logging.debug("  Session holds no cookies.")
    logging.debug("-" * (len(title) + 8))


def log_response_headers(response, title="Response Headers"):
    """Logs the headers received in a server response."""
    if not logging.getLogger().isEnabledFor(logging.DEBUG):
        return
    logging.debug(f"--- {title} (Status: {response.status_code}) ---")
    if not response.headers:
        logging.debug("  (No headers received in response)")
    for key, value in response.headers.items():
        logging.debug(f"  {key}: {redact_header(key, value)}")
    logging.debug("-" * (len(title) + 8))


def log_request_headers(headers_dict, title="Request Headers", session=None):
    """Logs a dictionary of request headers, redacting sensitive ones."""
    if not logging.getLogger().isEnabledFor(logging.DEBUG):
        return
    logging.debug(f"--- {title} ---")
    if session is not None and session.headers:
        for key, value in session.headers.items():
            logging.debug(f"  (session) {key}: {redact_header(key, value)}")
    if headers_dict:
        for key, value in headers_dict.items():
            logging.debug(f"  {key}: {redact_header(key, value)}")
    logging.debug("-" * (len(title) + 8))


def redact_header(name, value):
    if name.lower() in SENSITIVE_HEADERS:
        return f"[{name.title()} Present - Redacted]"
    return value


def save_content_to_file(content, filename, debug_dir=None):
    """Saves a page body for later inspection.

    Only debug dumps are written here, and only when a debug directory is
    configured. Write failures are logged rather than raised so a broken
    debug directory never masks the error being diagnosed.

    Args:
        content (str): Body to write
        filename (str): File name, prefixed with DEBUG_FILE_PREFIX if missing
        debug_dir (str, optional): Target directory; nothing is written if None

    Returns:
        str: The written path, or None if nothing was written
    """
    if not debug_dir:
        return None
    if not filename.startswith(DEBUG_FILE_PREFIX):
        filename = DEBUG_FILE_PREFIX + filename

    path = os.path.join(debug_dir, filename)
    try:
        os.makedirs(debug_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        logging.info(f"--- Saved debug content to: {path} ---")
        return path
    except OSError as e:
        logging.error(f"--- ERROR: Could not write debug file '{path}': {e} ---")
        return None
