"""
Pytest fixtures simulating the Portus and Payslip4U portals.

A requests transport adapter is mounted on both sessions of a PayslipSession,
so redirects, the cookie jar and the Cookie header all go through the real
requests machinery; only the network is replaced.
"""

import io
import json
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from portus_config import (
    PORTUS_PASSWORD_FIELD,
    PORTUS_USERNAME_FIELD,
    default_config,
)
from portus_interact import create_session

VALID_USERNAME = "jdoe"
VALID_PASSWORD = "correct-horse"
SAML_ASSERTION = "PHNhbWxwOlJlc3BvbnNlPg=="
PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n%%EOF\n"

PORTUS_HOST = "portusonline.net"
PAYSLIP4U_HOST = "www.payslip4u.co.uk"

PORTUS_LOGIN_PAGE = f"""<!DOCTYPE html>
<html>
<head><title>Portus OpenBenefits</title></head>
<body>
<form name="aspnetForm" method="post" action="./Default.aspx?ReturnUrl=%2fOpenBenefits%2f" id="aspnetForm">
  <input type="hidden" name="__VIEWSTATE" id="__VIEWSTATE" value="dDwtMTA4NzM2NjQ2Mzs7Pg==" />
  <input type="hidden" name="__VIEWSTATEGENERATOR" id="__VIEWSTATEGENERATOR" value="CA0B0334" />
  <input type="hidden" name="__EVENTVALIDATION" id="__EVENTVALIDATION" value="/wEWBAKM54rGBgLNu8" />
  <div class="login">
    <input name="{PORTUS_USERNAME_FIELD}" type="text" id="UserName" />
    <input name="{PORTUS_PASSWORD_FIELD}" type="password" id="Password" />
    <input type="submit" name="ctl01$ctl00$SiteContentPlaceHolder$ContentMainBody$ctlLogin$Login" value="Log In" />
  </div>
</form>
</body>
</html>
"""

PORTUS_HOME_PAGE = """<!DOCTYPE html>
<html><body><h1>Welcome to OpenBenefits</h1><a href="readdata/samlresponse.aspx?n=Payslip4U">Payslips</a></body></html>
"""

PORTUS_SSO_PAGE = f"""<!DOCTYPE html>
<html>
<body onload="document.forms[0].submit()">
<form id="SSOLogin" method="post" action="https://{PAYSLIP4U_HOST}/Employee/saml/OpenBet">
  <input type="hidden" name="SAMLResponse" value="{SAML_ASSERTION}" />
  <noscript><input type="submit" value="Continue" /></noscript>
</form>
</body>
</html>
"""

PAYSLIP4U_HOME_PAGE = """<!DOCTYPE html>
<html><body><div ng-app="employeePortal"></div></body></html>
"""

PAYSLIP4U_ERROR_PAGE = """<!DOCTYPE html>
<html><body><p>Your session could not be established.</p></body></html>
"""

DEFAULT_DOCUMENTS = [
    {"ID": 5012, "DocumentType": "Payslip Main", "Created": "2016-03-24T00:00:00"},
    {"ID": 4987, "DocumentType": "Payslip Main", "Created": "2016-02-25T00:00:00"},
    {"ID": 4410, "DocumentType": "P60", "Created": "2015-04-30T09:15:00"},
]


class BrokenStream(io.BytesIO):
    """Response body that drops the connection after the first read."""

    def read(self, *args, **kwargs):
        if self.tell() > 0:
            raise requests.exceptions.ConnectionError("Connection reset by peer")
        return super().read(16)


class InterruptedStream(io.BytesIO):
    """Response body that runs a callback between its first and second read."""

    def __init__(self, data, on_pause):
        super().__init__(data)
        self.on_pause = on_pause

    def read(self, *args, **kwargs):
        if self.tell() == 0:
            return super().read(16)
        if self.on_pause is not None:
            on_pause, self.on_pause = self.on_pause, None
            on_pause()
        return super().read(*args, **kwargs)


def build_response(request, status=200, body=b"", headers=None, raw=None):
    if isinstance(body, str):
        body = body.encode("utf-8")
    response = requests.Response()
    response.status_code = status
    response.reason = "OK" if status < 400 else "Error"
    response.headers = CaseInsensitiveDict(headers or {})
    response.raw = raw if raw is not None else io.BytesIO(body)
    response.url = request.url
    response.request = request
    response.encoding = get_encoding_from_headers(response.headers)
    return response


def html_response(request, body, status=200):
    return build_response(request, status, body, {"Content-Type": "text/html; charset=utf-8"})


def redirect_response(request, location):
    return build_response(request, 302, b"", {"Location": location, "Content-Type": "text/html; charset=utf-8"})


def json_response(request, payload, status=200):
    return build_response(request, status, json.dumps(payload), {"Content-Type": "application/json; charset=utf-8"})


def sent_cookie_names(request):
    header = request.headers.get("Cookie") or ""
    return {entry.strip().split("=", 1)[0] for entry in header.split(";") if entry.strip()}


class PortalAdapter(BaseAdapter):
    """Transport adapter routing one requests.Session into the simulator."""

    def __init__(self, simulator, session):
        super().__init__()
        self.simulator = simulator
        self.session = session

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        self.simulator.requests.append(request)
        self.simulator.timeouts.append(timeout)
        return self.simulator.handle(request, self)

    def set_cookie(self, request, name, value):
        self.session.cookies.set(name, value, domain=urlsplit(request.url).hostname, path="/")

    def close(self):
        pass


class PortalSimulator:
    """In-memory Portus + Payslip4U with switches for the failure modes."""

    def __init__(self):
        self.requests = []
        self.timeouts = []
        self.documents = [dict(document) for document in DEFAULT_DOCUMENTS]
        self.listing_body = None
        self.document_content_type = "application/pdf"
        self.pdf_bytes = PDF_BYTES
        self.broken_download = False
        self.on_download_pause = None
        self.sso_form_missing = False
        self.sso_assertion = SAML_ASSERTION
        self.accepted_assertion = SAML_ASSERTION
        self.transport_failures = {}

    def attach(self, payslip_session):
        for session in (payslip_session.primary, payslip_session.secondary):
            adapter = PortalAdapter(self, session)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        return payslip_session

    def requests_to(self, method, path):
        return [r for r in self.requests if r.method == method and urlsplit(r.url).path == path]

    def handle(self, request, adapter):
        parts = urlsplit(request.url)
        if parts.path in self.transport_failures:
            raise self.transport_failures[parts.path]
        if parts.hostname == PORTUS_HOST:
            return self._handle_portus(request, adapter, parts.path)
        if parts.hostname == PAYSLIP4U_HOST:
            return self._handle_payslip4u(request, adapter, parts.path)
        raise requests.exceptions.ConnectionError(f"Unknown host {parts.hostname}")

    def _handle_portus(self, request, adapter, path):
        if request.method == "GET" and path == "/OpenBenefits/":
            return html_response(request, PORTUS_LOGIN_PAGE)

        if request.method == "POST" and path == "/OpenBenefits/Default.aspx":
            fields = {k: v[0] for k, v in parse_qs(request.body or "", keep_blank_values=True).items()}
            if (fields.get(PORTUS_USERNAME_FIELD) == VALID_USERNAME and
                    fields.get(PORTUS_PASSWORD_FIELD) == VALID_PASSWORD and
                    fields.get("__VIEWSTATE")):
                adapter.set_cookie(request, ".Staffcare", "C0FFEE1234")
                return redirect_response(request, "Home.aspx")
            adapter.set_cookie(request, "ASP.NET_SessionId", "anon42")
            return html_response(request, PORTUS_LOGIN_PAGE)

        if request.method == "GET" and path == "/OpenBenefits/Home.aspx":
            return html_response(request, PORTUS_HOME_PAGE)

        if request.method == "GET" and path == "/OpenBenefits/readdata/samlresponse.aspx":
            if ".Staffcare" not in sent_cookie_names(request) or self.sso_form_missing:
                return html_response(request, PORTUS_LOGIN_PAGE)
            return html_response(request, PORTUS_SSO_PAGE.replace(SAML_ASSERTION, self.sso_assertion))

        return html_response(request, "<html><body>Not Found</body></html>", status=404)

    def _handle_payslip4u(self, request, adapter, path):
        if request.method == "POST" and path == "/Employee/saml/OpenBet":
            fields = {k: v[0] for k, v in parse_qs(request.body or "").items()}
            if fields.get("SAMLResponse") == self.accepted_assertion:
                adapter.set_cookie(request, "XSRF-TOKEN", "xsrf-9f8e7d")
                return redirect_response(request, "/Employee/Home")
            return html_response(request, PAYSLIP4U_ERROR_PAGE)

        if request.method == "GET" and path == "/Employee/Home":
            return html_response(request, PAYSLIP4U_HOME_PAGE)

        logged_in = "XSRF-TOKEN" in sent_cookie_names(request)

        if request.method == "GET" and path == "/api/EmployeePortal":
            if not logged_in:
                return json_response(request, {"Message": "Authorization has been denied for this request."}, 401)
            if self.listing_body is not None:
                return build_response(request, 200, self.listing_body, {"Content-Type": "application/json"})
            return json_response(request, {"Employee": {"Name": "J Doe"}, "Documents": self.documents})

        if request.method == "GET" and path.startswith("/api/Document/"):
            if not logged_in:
                return json_response(request, {"Message": "Authorization has been denied for this request."}, 401)
            headers = {"Content-Type": self.document_content_type}
            if self.broken_download:
                return build_response(request, 200, headers=headers, raw=BrokenStream(self.pdf_bytes))
            if self.on_download_pause is not None:
                on_pause, self.on_download_pause = self.on_download_pause, None
                return build_response(request, 200, headers=headers, raw=InterruptedStream(self.pdf_bytes, on_pause))
            return build_response(request, 200, self.pdf_bytes, headers)

        return html_response(request, "<html><body>Not Found</body></html>", status=404)


@pytest.fixture
def portal():
    return PortalSimulator()


@pytest.fixture
def portal_config(tmp_path):
    config = default_config()
    config["output_dir"] = str(tmp_path / "payslips")
    return config


@pytest.fixture
def make_session(portal, portal_config):
    """Factory for PayslipSessions wired to the simulated portals."""
    sessions = []

    def factory(username=VALID_USERNAME, password=VALID_PASSWORD):
        session = portal.attach(create_session(username, password, portal_config))
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


@pytest.fixture
def payslip_session(make_session):
    return make_session()
