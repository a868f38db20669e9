"""
Portus / Payslip4U Interaction

Walks the authentication chain between the Portus OpenBenefits portal and
the Payslip4U payslip portal, then lists and downloads payslips:

    1. GET the Portus root page and lift the ASP.NET login form
    2. POST the credentials and check for the Portus logged-in cookie
    3. GET the SAML hand-off page and lift the SSOLogin form
    4. POST the assertion to Payslip4U and check for its logged-in cookie
    5. GET the JSON document listing
    6. Stream the first listed document to a PDF file

Every public step runs the whole chain below it on each call; nothing about
being logged in is remembered between calls.

State lives in a caller-owned PayslipSession, which keeps one cookie jar per
portal. Steps sharing a PayslipSession are serialised by its lock; separate
PayslipSession objects do not interfere with each other.
"""

import logging
import os
import re
import tempfile
import threading
from urllib.parse import urljoin

import requests
from dateutil import parser as date_parser

from portus_common import (
    AuthenticationFailed,
    FormNotFound,
    MalformedResponse,
    NoDocumentsAvailable,
    TransportError,
    UnexpectedContentType,
    log_request_headers,
    log_response_headers,
    log_session_cookies,
    safe_request_handler,
    save_content_to_file,
)
from portus_config import default_config
from portus_forms import extract_form, resolve_form_action

# --- Constants ---
PDF_CONTENT_TYPE = 'application/pdf'
JSON_ACCEPT = 'application/json, text/plain, */*'
DOWNLOAD_CHUNK_SIZE = 64 * 1024
PARTIAL_SUFFIX = '.part'
DOCUMENT_REQUIRED_KEYS = ('ID', 'DocumentType', 'Created')


class Credentials:
    """Portus username and password. Read-only once created."""

    __slots__ = ('_username', '_password')

    def __init__(self, username, password):
        self._username = username
        self._password = password

    @property
    def username(self):
        return self._username

    @property
    def password(self):
        return self._password

    def __repr__(self):
        return f"Credentials(username={self._username!r}, password='***')"


class Document:
    """One entry of the Payslip4U document listing."""

    def __init__(self, document_id, document_type, created_at, raw=None):
        self.id = document_id
        self.document_type = document_type
        self.created_at = created_at
        self.raw = raw or {}

    @classmethod
    def from_listing(cls, entry):
        """Builds a Document from a raw listing entry.

        Raises:
            MalformedResponse: If ID, DocumentType or Created is missing or unparseable
        """
        if not isinstance(entry, dict):
            raise MalformedResponse(f"Document entry is not an object: {entry!r}")

        missing = [key for key in DOCUMENT_REQUIRED_KEYS if entry.get(key) in (None, '')]
        if missing:
            raise MalformedResponse(f"Document entry is missing {', '.join(missing)}: {entry!r}")

        try:
            created_at = date_parser.isoparse(str(entry['Created']))
        except ValueError as e:
            raise MalformedResponse(f"Unparseable document creation date {entry['Created']!r}: {e}") from e

        return cls(entry['ID'], str(entry['DocumentType']), created_at, raw=entry)

    def __repr__(self):
        return (f"Document(id={self.id!r}, document_type={self.document_type!r}, "
                f"created_at={self.created_at.isoformat()!r})")


class DownloadResult:
    """A payslip that has been fully written to disk."""

    def __init__(self, file_path, document=None):
        self.file_path = file_path
        self.document = document

    def __repr__(self):
        return f"DownloadResult(file_path={self.file_path!r})"


# --- Session Setup ---

def _build_portus_headers(config):
    return {
        'User-Agent': config['user_agent'],
        'Upgrade-Insecure-Requests': '1',
    }


def _build_payslip4u_headers(config):
    return {
        'User-Agent': config['user_agent'],
    }


def setup_session(headers, config):
    """Creates and configures one requests session."""
    session = requests.Session()
    session.headers.update(headers)
    if config.get('proxies'):
        session.proxies.update(config['proxies'])
    return session


class PayslipSession:
    """Caller-owned state for one account: credentials and one cookie jar per portal.

    The primary and secondary requests sessions never share cookies. The
    re-entrant lock lets a chain step call the steps below it while keeping
    a second chain on the same PayslipSession waiting.
    """

    def __init__(self, credentials, config=None):
        self.credentials = credentials
        self.config = config or default_config()
        self.primary = setup_session(_build_portus_headers(self.config), self.config)
        self.secondary = setup_session(_build_payslip4u_headers(self.config), self.config)
        self.lock = threading.RLock()

    def close(self):
        self.primary.close()
        self.secondary.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False


def create_session(username, password, config=None):
    """Convenience constructor for a PayslipSession."""
    return PayslipSession(Credentials(username, password), config)


# --- Request Helpers ---

@safe_request_handler
def _make_get_request(session, url, timeout, headers=None, stream=False):
    """Makes a GET request, following redirects."""
    log_request_headers(headers, f"GET Request Headers for {url}", session)
    logging.debug(f"GET URL: {url}")
    return session.get(url, headers=headers, timeout=timeout, stream=stream, allow_redirects=True)


@safe_request_handler
def _make_post_request(session, url, payload, timeout, headers=None):
    """Makes a form-encoded POST request, following redirects."""
    log_request_headers(headers, f"POST Request Headers for {url}", session)
    logging.debug(f"POST URL: {url} (fields: {sorted(payload)})")
    return session.post(url, data=payload, headers=headers, timeout=timeout, allow_redirects=True)


def _has_logged_in_cookie(response, cookie_name):
    """Checks the Cookie header sent with the final request of an exchange.

    The header is split into 'name=value' entries and the login counts as
    successful only if one entry is named exactly cookie_name.
    """
    cookie_header = response.request.headers.get('Cookie') if response.request is not None else None
    if not cookie_header:
        logging.info("No cookies were sent on the follow-up request.")
        return False

    for cookie in cookie_header.split(';'):
        cookie_name_sent = cookie.strip().split('=', 1)[0].strip()
        if cookie_name_sent == cookie_name:
            return True
    return False


def _portus_url(session, path=''):
    return urljoin(session.config['portus_base_url'], path)


def _payslip4u_url(session, path=''):
    return urljoin(session.config['payslip4u_base_url'], path)


# --- Authentication Chain ---

def _get_portus_login_form(session):
    """Fetches the Portus root page and lifts its login form, attributes included."""
    config = session.config
    url = _portus_url(session)
    logging.info(f"--- Step 1: Fetching Portus login page: {url} ---")

    response = _make_get_request(session.primary, url, config['timeout'])
    log_response_headers(response, "Portus Login Page Response Headers")

    try:
        form = extract_form(response.text, config['portus_login_form_selector'],
                            include_attribs=True, page_url=response.url)
    except FormNotFound:
        save_content_to_file(response.text, "portus_login_page.html", config.get('debug_dir'))
        raise
    return form, response.url


def login_primary(session):
    """
    Logs in to Portus with the session's credentials.

    Args:
        session (PayslipSession): The caller's session

    Returns:
        bool: True if the Portus logged-in cookie was sent back after the login POST

    Raises:
        TransportError: On any network failure
        FormNotFound: If the login page does not carry exactly one login form
    """
    with session.lock:
        config = session.config
        form, page_url = _get_portus_login_form(session)

        fields = dict(form.fields)
        fields[config['portus_username_field']] = session.credentials.username
        fields[config['portus_password_field']] = session.credentials.password

        action_url = resolve_form_action(page_url, form.action)
        logging.info(f"--- Step 2: Submitting Portus login form to: {action_url} ---")
        response = _make_post_request(session.primary, action_url, fields, config['timeout'])
        log_response_headers(response, "Portus Login Response Headers")
        log_session_cookies(session.primary, "Portus Session Cookies")

        is_logged_in = _has_logged_in_cookie(response, config['portus_logged_in_cookie'])
        if is_logged_in:
            logging.info("Portus login successful.")
        else:
            logging.warning(f"Portus login failed: cookie '{config['portus_logged_in_cookie']}' not present.")
        return is_logged_in


def get_secondary_login_form(session):
    """
    Logs in to Portus and lifts the Payslip4U SSO form from the hand-off page.

    Returns:
        Form: The SSO assertion fields (normally just SAMLResponse)

    Raises:
        AuthenticationFailed: If the Portus login returned False
        FormNotFound: If the hand-off page does not carry exactly one SSO form,
            meaning the Portus session is not in the expected state
    """
    with session.lock:
        config = session.config
        if not login_primary(session):
            raise AuthenticationFailed("Portus")

        url = _portus_url(session, config['portus_sso_uri'])
        logging.info(f"--- Step 3: Fetching Payslip4U hand-off page: {url} ---")
        response = _make_get_request(session.primary, url, config['timeout'])
        log_response_headers(response, "SSO Hand-off Response Headers")

        try:
            return extract_form(response.text, config['portus_sso_form_selector'], page_url=response.url)
        except FormNotFound:
            logging.error("Correct Payslip4U login form not received.")
            save_content_to_file(response.text, "sso_handoff_page.html", config.get('debug_dir'))
            raise


def login_secondary(session):
    """
    Replays the SSO assertion against Payslip4U.

    Returns:
        bool: True if the Payslip4U logged-in cookie was sent back after the POST
    """
    with session.lock:
        config = session.config
        form = get_secondary_login_form(session)

        url = _payslip4u_url(session, config['payslip4u_sso_login_uri'])
        logging.info(f"--- Step 4: Submitting SSO assertion to Payslip4U: {url} ---")
        response = _make_post_request(session.secondary, url, form.fields, config['timeout'])
        log_response_headers(response, "Payslip4U Login Response Headers")
        log_session_cookies(session.secondary, "Payslip4U Session Cookies")

        is_logged_in = _has_logged_in_cookie(response, config['payslip4u_logged_in_cookie'])
        if is_logged_in:
            logging.info("Payslip4U login successful.")
        else:
            logging.warning(f"Payslip4U login failed: cookie '{config['payslip4u_logged_in_cookie']}' not present.")
        return is_logged_in


# --- Documents ---

def _fetch_document_entries(session):
    """Logs in to Payslip4U and returns the raw 'Documents' entries of the listing."""
    config = session.config
    if not login_secondary(session):
        raise AuthenticationFailed("Payslip4U")

    url = _payslip4u_url(session, config['payslip4u_documents_uri'])
    logging.info(f"--- Step 5: Fetching document listing: {url} ---")
    response = _make_get_request(session.secondary, url, config['timeout'], headers={'Accept': JSON_ACCEPT})
    log_response_headers(response, "Document Listing Response Headers")

    try:
        body = response.json()
    except ValueError as e:
        save_content_to_file(response.text, "document_listing.txt", config.get('debug_dir'))
        raise MalformedResponse(f"Could not retrieve payslips: listing is not JSON (status {response.status_code})") from e

    if not isinstance(body, dict) or 'Documents' not in body:
        save_content_to_file(response.text, "document_listing.json", config.get('debug_dir'))
        raise MalformedResponse(f"Could not retrieve payslips: no 'Documents' in listing (status {response.status_code})")

    entries = body['Documents']
    if not isinstance(entries, list):
        raise MalformedResponse(f"'Documents' is not a list: {type(entries).__name__}")

    logging.info(f"Found {len(entries)} documents.")
    return entries


def list_documents(session):
    """
    Lists the documents available on Payslip4U, in the order the portal returns them.

    Every entry must carry ID, DocumentType and Created; a single broken
    entry makes the whole listing malformed. download_latest only checks the
    entry it downloads.

    Returns:
        list[Document]

    Raises:
        AuthenticationFailed: If the Payslip4U login returned False
        MalformedResponse: If the listing body is not JSON, lacks 'Documents',
            or holds an incomplete entry
    """
    with session.lock:
        return [Document.from_listing(entry) for entry in _fetch_document_entries(session)]


def document_file_name(document, suffixes):
    """Builds '<YYYY-MM-DD>-<suffix>.pdf' for a document.

    Unknown document types use the raw type as the suffix, with path
    separators replaced so the name stays a single file name.
    """
    suffix = suffixes.get(document.document_type, document.document_type)
    suffix = re.sub(r'[\\/]+', '-', suffix).strip()
    return f"{document.created_at.strftime('%Y-%m-%d')}-{suffix}.pdf"


def _media_type(content_type):
    return (content_type or '').split(';', 1)[0].strip().lower()


def _stream_to_file(response, file_path):
    """Streams a response body to file_path via a private temporary '.part' file.

    The temporary file is unique to this call, so concurrent downloads of the
    same name never write into each other's file. The final path only appears
    once the file has been written and closed; on any failure this call's
    temporary file is removed and the error propagates.
    """
    directory, file_name = os.path.split(file_path)
    fd, partial_path = tempfile.mkstemp(prefix=file_name + '.', suffix=PARTIAL_SUFFIX, dir=directory or None)
    bytes_written = 0
    try:
        with os.fdopen(fd, 'wb') as f:
            try:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        bytes_written += len(chunk)
            except requests.exceptions.RequestException as e:
                logging.error(f"Network error while streaming {response.url}: {e}")
                raise TransportError(f"Network error while streaming document: {e}") from e
        os.replace(partial_path, file_path)
    except BaseException:
        if os.path.exists(partial_path):
            os.remove(partial_path)
        raise

    logging.info(f"Wrote {bytes_written} bytes to {file_path}")
    return file_path


def download_latest(session, output_dir=None):
    """
    Downloads the first document of the Payslip4U listing as a PDF.

    The listing order is trusted as newest first; no sorting happens here.

    Args:
        session (PayslipSession): The caller's session
        output_dir (str, optional): Target directory, defaults to the configured one

    Returns:
        DownloadResult: Holds the path of the fully written file

    Raises:
        NoDocumentsAvailable: If the listing is empty
        MalformedResponse: If the first listed entry lacks ID, DocumentType or Created
        UnexpectedContentType: If the document endpoint does not answer with a PDF
    """
    with session.lock:
        config = session.config
        entries = _fetch_document_entries(session)
        if not entries:
            raise NoDocumentsAvailable("No payslip available")

        document = Document.from_listing(entries[0])
        output_dir = output_dir or config['output_dir']
        os.makedirs(output_dir, exist_ok=True)
        file_path = os.path.join(output_dir, document_file_name(document, config['document_type_suffixes']))

        url = _payslip4u_url(session, config['payslip4u_document_uri_template'].format(document_id=document.id))
        logging.info(f"--- Step 6: Downloading {document!r} from {url} ---")

        response = _make_get_request(session.secondary, url, config['timeout'],
                                     headers={'Accept': PDF_CONTENT_TYPE}, stream=True)
        with response:
            log_response_headers(response, "Document Download Response Headers")
            content_type = response.headers.get('Content-Type')
            if _media_type(content_type) != PDF_CONTENT_TYPE:
                logging.error(f"Unrecognized download content: {content_type}")
                raise UnexpectedContentType(content_type, PDF_CONTENT_TYPE)

            _stream_to_file(response, file_path)

        return DownloadResult(file_path, document)


# --- Facade ---

class PortusInteract:
    """Object interface over the chain, owning a single PayslipSession.

    Example:
        with PortusInteract(username='jdoe', password='secret') as portus:
            result = portus.download_latest()
    """

    def __init__(self, username, password, config=None):
        self.session = create_session(username, password, config)

    def login_primary(self):
        return login_primary(self.session)

    def get_secondary_login_form(self):
        return get_secondary_login_form(self.session)

    def login_secondary(self):
        return login_secondary(self.session)

    def list_documents(self):
        return list_documents(self.session)

    def download_latest(self, output_dir=None):
        return download_latest(self.session, output_dir)

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False
