"""
Login form extraction for server-rendered portal pages.

Both portals hand their state around in HTML forms: the Portus login page
carries the ASP.NET view state next to the credential inputs, and the SSO
hand-off page carries the SAML assertion in a hidden input. This module pulls
such a form out of a page as a plain name -> value mapping.
"""

import logging
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from portus_common import FormNotFound


class Form:
    """A form lifted from a page: its submit target and its input fields."""

    def __init__(self, fields, action=None, attribs=None):
        """
        Args:
            fields (dict): Input name -> current value
            action (str, optional): The form's action attribute, if captured
            attribs (dict, optional): All attributes of the form element
        """
        self.fields = fields
        self.action = action
        self.attribs = attribs or {}

    def __repr__(self):
        return f"Form(action={self.action!r}, fields={sorted(self.fields)!r})"


def extract_form(html_content, form_selector, include_attribs=False, page_url=None):
    """
    Extracts the single form matching form_selector from an HTML page.

    Args:
        html_content (str): The page source
        form_selector (str): CSS selector for the form, e.g. '#aspnetForm'
        include_attribs (bool): Also capture the form's own attributes
        page_url (str, optional): Where the page came from, used in errors

    Returns:
        Form: fields holds every named input, with '' for inputs lacking a value

    Raises:
        FormNotFound: If zero or more than one element matches the selector
    """
    soup = BeautifulSoup(html_content or "", 'html.parser')
    matches = soup.select(form_selector)
    if len(matches) != 1:
        logging.warning(f"Form '{form_selector}' matched {len(matches)} elements, expected exactly 1.")
        raise FormNotFound(form_selector, len(matches), page_url)

    form_tag = matches[0]
    fields = {}
    for input_tag in form_tag.find_all('input'):
        name = input_tag.get('name')
        # Browsers never submit unnamed inputs
        if not name:
            continue
        fields[name] = input_tag.get('value') or ''

    logging.info(f"Extracted form '{form_selector}' with {len(fields)} fields.")
    logging.debug(f"Form '{form_selector}' field names: {sorted(fields)}")

    if not include_attribs:
        return Form(fields)

    attribs = dict(form_tag.attrs)
    return Form(fields, action=attribs.get('action'), attribs=attribs)


def resolve_form_action(page_url, action):
    """Resolves a form action against the URL of the page that carried it.

    An empty or missing action posts back to the page itself.
    """
    if not action:
        return page_url
    return urljoin(page_url, action)
