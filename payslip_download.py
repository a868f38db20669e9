#!/usr/bin/env python3
"""
Payslip Download Script

Logs in to Portus, follows the SSO hand-off into Payslip4U and downloads the
most recent payslip as a PDF.

Usage Examples:
    # Download the latest payslip
    portus-payslip

    # List the available documents
    portus-payslip --list

    # Check that the Portus credentials are accepted
    portus-payslip --check-login --username jdoe

Environment Variables:
    PORTUS_USERNAME, PORTUS_PASSWORD: Portus credentials
    PORTUS_OUTPUT_DIR: Where the PDF is written (default: system temp directory)
    PORTUS_TIMEOUT: Request timeout in seconds (default: 10)
    PORTUS_DEBUG_DIR: Where unexpected pages are dumped for inspection
"""

import logging
import sys

from portus_common import PortusError
from portus_config import create_parser, get_config
from portus_interact import PortusInteract


def configure_logging(debug=False):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def run_check_login(portus):
    if portus.login_primary():
        print("Portus login successful.")
        return 0
    print("Portus login failed.")
    return 1


def run_list(portus):
    documents = portus.list_documents()
    if not documents:
        print("No documents available.")
    for document in documents:
        print(f"{document.created_at.strftime('%Y-%m-%d')}\t{document.document_type}\t{document.id}")
    return 0


def run_download(portus, output_dir):
    result = portus.download_latest(output_dir)
    print(result.file_path)
    return 0


def main(argv=None):
    """Main entry point for the script."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.debug)
    logging.info("Application started.")

    config = get_config(args)

    try:
        with PortusInteract(config['username'], config['password'], config) as portus:
            if args.check_login:
                return run_check_login(portus)
            if args.list:
                return run_list(portus)
            return run_download(portus, config['output_dir'])
    except PortusError as e:
        logging.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
