"""
Media store: resolves attachment keys to URLs.

Uploads happen outside the messaging core; clients send the key the upload
service returned and the message stores the resolved URL.
"""

import logging
from typing import Optional

from chatcore.config import settings

logger = logging.getLogger(__name__)


class MediaStore:
    """Resolve attachment keys against a base URL."""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url if base_url is not None else settings.MEDIA_BASE_URL).rstrip("/")

    def resolve_url(self, key: str) -> str:
        """
        Resolve a media key to its public URL.

        Absolute URLs are passed through unchanged.
        """
        if key.startswith(("http://", "https://", "/")):
            return key
        url = f"{self.base_url}/{key.lstrip('/')}"
        logger.debug(f"Resolved media key {key} to {url}")
        return url
