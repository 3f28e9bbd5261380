"""Installed-version resolution for running components."""

import base64
import binascii
import json
import re
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from config import settings
from services.container_backends import async_docker_call, docker_locator
from services.health_probes import http_get

logger = structlog.get_logger()

IMAGE_TAG_VERSION = re.compile(r":(\d+\.\d+[\w.-]*)$")
VERSION_LABELS = ("org.opencontainers.image.version", "version")


def version_from_image_reference(image: Optional[str]) -> Optional[str]:
    """Version embedded in the image tag, e.g. "n8nio/n8n:1.70.3" -> "1.70.3"."""
    if not image:
        return None
    match = IMAGE_TAG_VERSION.search(image)
    return match.group(1) if match else None


def version_from_labels(labels: Optional[Dict[str, str]]) -> Optional[str]:
    for label in VERSION_LABELS:
        value = (labels or {}).get(label)
        if value:
            return value
    return None


def version_from_meta_blob(html: str, meta_name: str, release_prefix: str) -> Optional[str]:
    """Decode a base64 JSON meta tag and strip the release prefix ("n8n@1.70.3")."""
    match = re.search(rf'name="{re.escape(meta_name)}"\s+content="([^"]+)"', html)
    if not match:
        return None
    try:
        decoded = json.loads(base64.b64decode(match.group(1)).decode())
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    release = decoded.get("release") if isinstance(decoded, dict) else None
    if isinstance(release, str) and release.startswith(release_prefix):
        return release[len(release_prefix):] or None
    return None


class VersionResolver:
    """
    Resolve the running version of a component from the first source that has it:

    1. the running container's image tag,
    2. the image's version label,
    3. a self-description blob embedded in the component's root page.

    Every step fails independently; an unresolvable version is None, not an error.
    """

    def __init__(
        self,
        engine_provider: Optional[Callable[[], Awaitable[Any]]] = None,
        client: Optional[httpx.AsyncClient] = None,
        scrape_timeout: Optional[float] = None
    ):
        self.engine_provider = engine_provider or docker_locator.get
        self.client = client
        self.scrape_timeout = scrape_timeout or settings.version_scrape_timeout

    async def from_container(self, container_name: str) -> Optional[str]:
        """Steps 1 and 2, both backed by the local engine."""
        engine = await self.engine_provider()
        if engine is None:
            return None

        try:
            inspect = await async_docker_call(engine.inspect_container, container_name)
        except Exception as e:
            logger.debug("Container inspect failed", container=container_name, error=str(e))
            return None

        version = version_from_image_reference((inspect.get("Config") or {}).get("Image"))
        if version:
            return version

        try:
            image = await async_docker_call(engine.inspect_image, inspect["Image"])
            return version_from_labels((image.get("Config") or {}).get("Labels"))
        except Exception as e:
            logger.debug("Image label lookup failed", container=container_name, error=str(e))
            return None

    async def from_page(self, url: str, meta_name: str, release_prefix: str) -> Optional[str]:
        """Step 3, best-effort scrape of the component's own HTML."""
        try:
            response = await http_get(url, self.scrape_timeout, self.client)
        except httpx.HTTPError as e:
            logger.debug("Version scrape failed", url=url, error=str(e))
            return None
        if not response.is_success:
            return None
        return version_from_meta_blob(response.text, meta_name, release_prefix)

    async def resolve(
        self,
        container_name: Optional[str] = None,
        page_url: Optional[str] = None,
        meta_name: Optional[str] = None,
        release_prefix: str = ""
    ) -> Optional[str]:
        if container_name:
            version = await self.from_container(container_name)
            if version:
                return version

        if page_url and meta_name:
            version = await self.from_page(page_url, meta_name, release_prefix)
            if version:
                return version

        logger.debug("Version could not be resolved", container=container_name, url=page_url)
        return None
