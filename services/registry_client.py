"""Public image registry client for latest-version lookups."""

from functools import cmp_to_key
from typing import Any, Dict, List, Optional

import httpx
import structlog

from config import settings
from services.versioning import compare_versions, is_clean_semver

logger = structlog.get_logger()


def select_latest_tag(tags: List[str]) -> Optional[str]:
    """Pick the highest clean major.minor.patch tag, ignoring suffixed and floating tags."""
    clean_tags = [tag for tag in tags if is_clean_semver(tag)]
    if not clean_tags:
        return None
    return max(clean_tags, key=cmp_to_key(compare_versions))


class RegistryClient:
    """Client for the Docker Hub repository tags API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        page_size: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.registry_url).rstrip("/")
        self.timeout = timeout or settings.registry_timeout
        self.page_size = page_size or settings.registry_page_size
        self.client = client

    def _tags_url(self, image: str) -> str:
        repository = image if "/" in image else f"library/{image}"
        return f"{self.base_url}/{repository}/tags"

    async def _fetch_tags(self, image: str) -> Dict[str, Any]:
        params = {"page_size": self.page_size, "ordering": "last_updated"}
        if self.client is not None:
            response = await self.client.get(self._tags_url(image), params=params, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.get(self._tags_url(image), params=params)
        response.raise_for_status()
        return response.json()

    async def get_latest_version(self, image: str) -> Optional[str]:
        """
        Return the highest clean semantic version among recently updated tags.

        None means "cannot determine", either because the registry is
        unreachable or because no clean tag exists in the fetched page.
        """
        try:
            data = await self._fetch_tags(image)
        except httpx.TimeoutException:
            logger.warning("Registry lookup timed out", image=image, timeout=self.timeout)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Registry lookup failed", image=image, error=str(e))
            return None

        results = data.get("results") if isinstance(data, dict) else None
        tags = [
            entry["name"] for entry in results or []
            if isinstance(entry, dict) and isinstance(entry.get("name"), str)
        ]
        latest = select_latest_tag(tags)
        if latest is None:
            logger.info("No clean version tag found", image=image, tags_seen=len(tags))
        return latest


# Global registry client instance
registry_client = RegistryClient()
