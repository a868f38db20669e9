"""
Configuration for the Portus / Payslip4U downloader.

Settings come from, in order of precedence: command-line arguments,
environment variables (a .env file is loaded first), config.ini, and the
built-in defaults below. The portal constants (form ids, field names, cookie
names, endpoint paths) live here too so a portal change only needs a
configuration update.
"""

import argparse
import configparser
import logging
import os
import sys
import tempfile

from dotenv import load_dotenv

# --- Portal Constants ---
PORTUS_BASE_URL = "https://portusonline.net/OpenBenefits/"
PORTUS_LOGGED_IN_COOKIE = ".Staffcare"
PORTUS_LOGIN_FORM_SELECTOR = "#aspnetForm"
PORTUS_USERNAME_FIELD = "ctl01$ctl00$SiteContentPlaceHolder$ContentMainBody$ctlLogin$UserName"
PORTUS_PASSWORD_FIELD = "ctl01$ctl00$SiteContentPlaceHolder$ContentMainBody$ctlLogin$Password"
PORTUS_SSO_URI = "readdata/samlresponse.aspx?n=Payslip4U"
PORTUS_SSO_FORM_SELECTOR = "#SSOLogin"

PAYSLIP4U_BASE_URL = "https://www.payslip4u.co.uk/"
PAYSLIP4U_LOGGED_IN_COOKIE = "XSRF-TOKEN"
PAYSLIP4U_SSO_LOGIN_URI = "Employee/saml/OpenBet"
PAYSLIP4U_DOCUMENTS_URI = "api/EmployeePortal"
PAYSLIP4U_DOCUMENT_URI_TEMPLATE = "api/Document/{document_id}"

DOCUMENT_TYPE_SUFFIXES = {
    'Payslip Main': 'OpenBet',
}

DEFAULT_REQUEST_TIMEOUT = 10
DEFAULT_CONFIG_FILE = "config.ini"
USER_AGENT = ('Mozilla/5.0 (Linux; Android 4.4.2; Nexus 4 Build/KOT49H) AppleWebKit/537.36 '
              '(KHTML, like Gecko) Chrome/48.0.2564.23 Mobile Safari/537.36')

REQUIRED_SETTINGS = {
    'username': 'PORTUS_USERNAME',
    'password': 'PORTUS_PASSWORD',
}


def create_parser():
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        description='Log in to Portus, follow the Payslip4U hand-off and download the latest payslip',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Download the latest payslip into the temp directory
  portus-payslip

  # List the available documents
  portus-payslip --list

  # Only check that the Portus credentials work
  portus-payslip --check-login
        """
    )
    parser.add_argument('--username', help='Portus username (overrides PORTUS_USERNAME env var)')
    parser.add_argument('--password', help='Portus password (overrides PORTUS_PASSWORD env var)')
    parser.add_argument('--output-dir', help='Directory the payslip PDF is written to (overrides PORTUS_OUTPUT_DIR)')
    parser.add_argument('--timeout', type=float, help='Request timeout in seconds (overrides PORTUS_TIMEOUT)')
    parser.add_argument('--config', default=DEFAULT_CONFIG_FILE, help='Path to config.ini (default: config.ini)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--list', action='store_true', help='List available documents instead of downloading')
    mode.add_argument('--check-login', action='store_true', help='Only log in to Portus and report the result')
    return parser


def default_config():
    """Returns the built-in configuration, without credentials."""
    return {
        'username': None,
        'password': None,
        'portus_base_url': PORTUS_BASE_URL,
        'portus_logged_in_cookie': PORTUS_LOGGED_IN_COOKIE,
        'portus_login_form_selector': PORTUS_LOGIN_FORM_SELECTOR,
        'portus_username_field': PORTUS_USERNAME_FIELD,
        'portus_password_field': PORTUS_PASSWORD_FIELD,
        'portus_sso_uri': PORTUS_SSO_URI,
        'portus_sso_form_selector': PORTUS_SSO_FORM_SELECTOR,
        'payslip4u_base_url': PAYSLIP4U_BASE_URL,
        'payslip4u_logged_in_cookie': PAYSLIP4U_LOGGED_IN_COOKIE,
        'payslip4u_sso_login_uri': PAYSLIP4U_SSO_LOGIN_URI,
        'payslip4u_documents_uri': PAYSLIP4U_DOCUMENTS_URI,
        'payslip4u_document_uri_template': PAYSLIP4U_DOCUMENT_URI_TEMPLATE,
        'document_type_suffixes': dict(DOCUMENT_TYPE_SUFFIXES),
        'timeout': DEFAULT_REQUEST_TIMEOUT,
        'user_agent': USER_AGENT,
        'output_dir': tempfile.gettempdir(),
        'debug_dir': None,
        'proxies': None,
    }


def load_config_file(config_file=DEFAULT_CONFIG_FILE):
    """Load configuration from an ini file.

    Returns:
        configparser.ConfigParser: Loaded configuration object (empty if the file is absent)
    """
    config = configparser.ConfigParser(interpolation=None)
    if config_file and os.path.exists(config_file):
        logging.info(f"Loading configuration from {config_file}")
        config.read(config_file)
    return config


def _get_proxy_config(user, password, host, port=8080):
    """Builds the proxy dictionary if credentials are provided."""
    if not host:
        return None
    if not user or not password:
        logging.warning("PORTUS_PROXY_USER or PORTUS_PROXY_PASS not set. No proxy used.")
        return None

    proxy_url = f"http://{user}:{password}@{host}:{port}"
    logging.info(f"Proxy configured: {proxy_url.split('@')[1]}")
    return {'http': proxy_url, 'https': proxy_url}


def _parse_timeout(value):
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        logging.error(f"Invalid timeout value: {value!r}")
        sys.exit(1)
    if timeout <= 0:
        logging.error(f"Timeout must be positive, got {timeout}")
        sys.exit(1)
    return timeout


def _validate_required_config(config):
    """Exits if any required setting is missing."""
    missing_vars = [env for key, env in REQUIRED_SETTINGS.items() if not config.get(key)]
    if missing_vars:
        logging.error(f"Missing required environment variables: {', '.join(missing_vars)}")
        sys.exit(1)


def get_config(args=None):
    """Reads and validates configuration from config file, environment variables, and command-line arguments.

    Priority order: command-line args > environment variables > config file > defaults

    Args:
        args: Parsed command-line arguments from argparse, or None

    Returns:
        dict: Configuration dictionary with all required settings
    """
    load_dotenv()

    config_parser = load_config_file(getattr(args, 'config', DEFAULT_CONFIG_FILE))
    config = default_config()

    def setting(env_var, section, option, fallback):
        return (os.environ.get(env_var) or
                config_parser.get(section, option, fallback=None) or
                fallback)

    config.update({
        'username': (getattr(args, 'username', None) or
                     setting('PORTUS_USERNAME', 'portus', 'username', None)),
        'password': (getattr(args, 'password', None) or
                     setting('PORTUS_PASSWORD', 'portus', 'password', None)),
        'portus_base_url': setting('PORTUS_BASE_URL', 'portus', 'base_url', config['portus_base_url']),
        'portus_logged_in_cookie': setting('PORTUS_LOGGED_IN_COOKIE', 'portus', 'logged_in_cookie',
                                           config['portus_logged_in_cookie']),
        'payslip4u_base_url': setting('PAYSLIP4U_BASE_URL', 'payslip4u', 'base_url', config['payslip4u_base_url']),
        'payslip4u_logged_in_cookie': setting('PAYSLIP4U_LOGGED_IN_COOKIE', 'payslip4u', 'logged_in_cookie',
                                              config['payslip4u_logged_in_cookie']),
        'output_dir': (getattr(args, 'output_dir', None) or
                       setting('PORTUS_OUTPUT_DIR', 'download', 'output_dir', config['output_dir'])),
        'debug_dir': setting('PORTUS_DEBUG_DIR', 'download', 'debug_dir', None),
    })

    timeout = getattr(args, 'timeout', None)
    if timeout is None:
        timeout = setting('PORTUS_TIMEOUT', 'download', 'timeout', config['timeout'])
    config['timeout'] = _parse_timeout(timeout)

    config['proxies'] = _get_proxy_config(
        setting('PORTUS_PROXY_USER', 'proxy', 'user', None),
        setting('PORTUS_PROXY_PASS', 'proxy', 'pass', None),
        setting('PORTUS_PROXY_HOST', 'proxy', 'host', None),
    )

    _validate_required_config(config)
    return config
