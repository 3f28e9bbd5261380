"""Pytest configuration and shared fakes.

Provides:
- In-memory stand-ins for the cache, audit sink and registry
- A fake docker engine that tracks containers by name
"""

import copy
import itertools
from typing import Any, Dict, List, Optional

import docker
import pytest


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


class FakeCache:
    """Dict-backed cache with the CacheService get/set surface."""

    def __init__(self, fail: bool = False):
        self.data: Dict[str, Any] = {}
        self.fail = fail
        self.gets = 0
        self.sets = 0

    async def get(self, key: str, default: Any = None) -> Any:
        self.gets += 1
        if self.fail:
            raise ConnectionError("cache unreachable")
        return self.data.get(key, default)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self.sets += 1
        if self.fail:
            raise ConnectionError("cache unreachable")
        self.data[key] = value
        return True

    async def delete(self, key: str) -> bool:
        if self.fail:
            raise ConnectionError("cache unreachable")
        return self.data.pop(key, None) is not None


class RecordingAudit:
    """Audit sink that keeps every event in memory."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def __call__(self, **event):
        self.events.append(event)

    @property
    def actions(self) -> List[str]:
        return [event["action"] for event in self.events]


class FakeRegistry:
    """Registry client returning a fixed latest version."""

    def __init__(self, latest: Optional[str] = "2.0.0"):
        self.latest = latest
        self.calls: List[str] = []

    async def get_latest_version(self, image: str) -> Optional[str]:
        self.calls.append(image)
        return self.latest


class FakeDockerEngine:
    """Subset of docker.APIClient used by the backends, tracking containers by name."""

    def __init__(self):
        self.containers_by_name: Dict[str, Dict[str, Any]] = {}
        self.images: Dict[str, Dict[str, Any]] = {}
        self.pulls: List[str] = []
        self.calls: List[str] = []
        self.fail_on: Dict[str, Exception] = {}
        self.pull_events: List[Dict[str, Any]] = [{"status": "Download complete"}]
        self._ids = itertools.count(1)

    def add_container(self, name: str, image: str, image_id: str = "sha256:old", **overrides) -> Dict[str, Any]:
        container = {
            "Id": f"id-{next(self._ids)}",
            "Name": f"/{name}",
            "Image": image_id,
            "Config": {
                "Image": image,
                "Env": ["N8N_PORT=5678", "TZ=UTC"],
                "ExposedPorts": {"5678/tcp": {}},
            },
            "HostConfig": {"RestartPolicy": {"Name": "unless-stopped"}, "Binds": ["n8n_data:/home/node"]},
            "NetworkSettings": {"Networks": {"rcc_default": {"Aliases": ["n8n", name]}}},
            "State": {"Running": True},
            "Status": "Up 3 hours",
        }
        container.update(overrides)
        self.containers_by_name[name] = container
        return container

    def _maybe_fail(self, step: str):
        self.calls.append(step)
        if step in self.fail_on:
            raise self.fail_on[step]

    def _get(self, name: str) -> Dict[str, Any]:
        for key, container in self.containers_by_name.items():
            if key == name or container["Id"] == name:
                return container
        raise docker.errors.NotFound(f"No such container: {name}")

    def ping(self):
        return True

    def inspect_container(self, name: str) -> Dict[str, Any]:
        self._maybe_fail("inspect")
        return copy.deepcopy(self._get(name))

    def inspect_image(self, image_id: str) -> Dict[str, Any]:
        self._maybe_fail("inspect_image")
        if image_id not in self.images:
            raise docker.errors.ImageNotFound(f"No such image: {image_id}")
        return self.images[image_id]

    def pull(self, repository: str, tag: Optional[str] = None, stream: bool = False, decode: bool = False):
        self._maybe_fail("pull")
        self.pulls.append(f"{repository}:{tag}")
        return iter(self.pull_events)

    def stop(self, name: str, timeout: Optional[int] = None):
        self._maybe_fail("stop")
        self._get(name)["State"]["Running"] = False

    def rename(self, name: str, new_name: str):
        self._maybe_fail("rename")
        container = self._get(name)
        del self.containers_by_name[name]
        container["Name"] = f"/{new_name}"
        self.containers_by_name[new_name] = container

    def create_container_from_config(self, config: Dict[str, Any], name: Optional[str] = None) -> Dict[str, Any]:
        self._maybe_fail("create")
        container = {
            "Id": f"id-{next(self._ids)}",
            "Name": f"/{name}",
            "Image": "sha256:new",
            "Config": {
                "Image": config["Image"],
                "Env": config.get("Env"),
                "ExposedPorts": config.get("ExposedPorts"),
            },
            "HostConfig": config.get("HostConfig"),
            "NetworkingConfig": config.get("NetworkingConfig"),
            "State": {"Running": False},
            "Status": "Created",
        }
        self.containers_by_name[name] = container
        return {"Id": container["Id"], "Warnings": []}

    def start(self, container_id: str):
        self._maybe_fail("start")
        self._get(container_id)["State"]["Running"] = True

    def remove_container(self, name: str, force: bool = False):
        self._maybe_fail("remove")
        container = self._get(name)
        del self.containers_by_name[container["Name"].lstrip("/")]

    def containers(self, all: bool = False) -> List[Dict[str, Any]]:
        return [
            {"Names": [c["Name"]], "Status": c["Status"]}
            for c in self.containers_by_name.values()
        ]


def engine_provider(engine: Any):
    """Async provider returning a fixed engine (or None)."""
    async def provide():
        return engine
    return provide


class StaticLocator:
    """Docker locator that always hands out the same engine."""

    def __init__(self, engine: Any):
        self.get = engine_provider(engine)


class FakeTokenProvider:
    async def get_token(self, resource: Optional[str] = None) -> str:
        return "token-123"


def app_definition(containers: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Container App resource as returned by the management API."""
    return {
        "name": "rcc-n8n",
        "properties": {
            "configuration": {"ingress": {"targetPort": 5678}},
            "template": {"containers": containers, "scale": {"minReplicas": 1}},
        },
    }


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def fake_engine():
    engine = FakeDockerEngine()
    engine.add_container("rcc-n8n", "n8nio/n8n:1.70.3")
    return engine
