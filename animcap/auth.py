"""
Optional API key check for the render endpoints.

When ANIMCAP_API_KEY is unset the service runs open (local development);
when set, every render request must carry the key in X-Animcap-API-Key.
"""

import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from animcap.config import get_settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Animcap-API-Key"


def _reject(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": API_KEY_HEADER},
    )


async def verify_api_key(
    api_key: Optional[str] = Header(None, alias=API_KEY_HEADER),
) -> None:
    """
    FastAPI dependency guarding render endpoints.

    Raises:
        HTTPException: 401 if the key is configured and the header is missing or wrong
    """
    expected_key = get_settings().animcap_api_key
    if not expected_key:
        return

    if not api_key:
        logger.warning(f"Render request without {API_KEY_HEADER} header")
        raise _reject("Missing API key")

    if not secrets.compare_digest(api_key.encode(), expected_key.encode()):
        logger.warning("Render request with invalid API key")
        raise _reject("Invalid API key")
