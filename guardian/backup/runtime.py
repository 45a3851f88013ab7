"""
Container runtime access.

DockerRuntime is the capability the lifecycle controller drives:
get_state / stop / start, plus discovery and mount listing for the CLI.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import docker
import requests
from docker.errors import DockerException, NotFound


logger = logging.getLogger(__name__)

STATE_NOT_FOUND = 'not_found'
STATE_UNKNOWN = 'unknown'


class RuntimeCommandError(Exception):
    """Raised when a runtime command fails."""
    pass


class RuntimeTimeout(RuntimeCommandError):
    """Raised when a runtime command is not acknowledged in time."""
    pass


@dataclass(frozen=True)
class ContainerInfo:
    name: str
    image: str
    state: str


@dataclass(frozen=True)
class MountInfo:
    source: str
    destination: str
    type: str


class DockerRuntime:
    """
    Docker Engine adapter built on the docker SDK.
    """

    def __init__(self, client=None, api_timeout: int = 60):
        """
        Args:
            client: Existing docker client (tests inject a mock)
            api_timeout: HTTP timeout for calls to the daemon, in seconds
        """
        self.api_timeout = api_timeout
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=self.api_timeout)
            except DockerException as e:
                raise RuntimeCommandError(f"Docker is not available: {e}")
        return self._client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (RuntimeCommandError, DockerException, requests.exceptions.RequestException) as e:
            logger.error("Docker daemon is not running or not accessible: %s", e)
            return False

    def get_state(self, name: str) -> str:
        """Return the runtime status string ('running', 'exited', ...) or 'not_found'."""
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return STATE_NOT_FOUND
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.warning("Cannot read state of %s: %s", name, e)
            return STATE_UNKNOWN
        return container.status

    def stop(self, name: str, timeout: int):
        """
        Request a graceful stop.

        Raises:
            RuntimeTimeout: If the daemon does not acknowledge within the API timeout
            RuntimeCommandError: If the stop request fails
        """
        try:
            self.client.containers.get(name).stop(timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise RuntimeTimeout(f"Stop of {name} not acknowledged: {e}")
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeCommandError(f"Failed to stop {name}: {e}")

    def start(self, name: str):
        """
        Start a stopped container.

        Raises:
            RuntimeCommandError: If the start request fails
        """
        try:
            self.client.containers.get(name).start()
        except requests.exceptions.Timeout as e:
            raise RuntimeTimeout(f"Start of {name} not acknowledged: {e}")
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeCommandError(f"Failed to start {name}: {e}")

    def list_containers(self, name_filter: Optional[str] = None) -> List[ContainerInfo]:
        """
        List all containers, optionally those whose name or image contains name_filter.

        Raises:
            RuntimeCommandError: If the daemon cannot be queried
        """
        try:
            containers = self.client.containers.list(all=True)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeCommandError(f"Failed to list containers: {e}")

        needle = (name_filter or '').lower()
        found = []
        for container in containers:
            tags = getattr(container.image, 'tags', None) or []
            image = tags[0] if tags else container.attrs.get('Config', {}).get('Image', '')
            if needle and needle not in container.name.lower() and needle not in image.lower():
                continue
            found.append(ContainerInfo(name=container.name, image=image, state=container.status))

        return sorted(found, key=lambda c: c.name)

    def get_mounts(self, name: str) -> List[MountInfo]:
        """
        Raises:
            RuntimeCommandError: If the container does not exist or cannot be inspected
        """
        try:
            container = self.client.containers.get(name)
        except NotFound:
            raise RuntimeCommandError(f"Container {name} not found")
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeCommandError(f"Failed to inspect {name}: {e}")

        return [
            MountInfo(
                source=m.get('Source', ''),
                destination=m.get('Destination', ''),
                type=m.get('Type', '')
            )
            for m in container.attrs.get('Mounts', [])
        ]
