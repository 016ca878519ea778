"""
Utility functions for the reply service API.
"""

import hmac
import io
import logging
from typing import Optional

import qrcode

logger = logging.getLogger(__name__)


def verify_api_token(authorization: Optional[str], expected: str) -> bool:
    """
    Verify a bearer token from the Authorization header.

    Args:
        authorization: Raw Authorization header value ("Bearer <token>")
        expected: Configured API_TOKEN

    Returns:
        True if the token matches, False otherwise
    """
    if not authorization:
        logger.info("Missing Authorization header")
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        logger.info("Malformed Authorization header")
        return False

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(token.strip().encode("utf-8"), expected.encode("utf-8"))
    logger.debug(f"API token verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def render_pairing_qr(code: str) -> str:
    """Render a pairing code as an ASCII QR code for terminal scanning."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.make()
    buf = io.StringIO()
    qr.print_ascii(out=buf, invert=True)
    return buf.getvalue()
