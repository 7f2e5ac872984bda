"""Docker management for Moltbot instances."""

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
import logging
import subprocess
from pathlib import Path
from typing import Generator, Optional, Set

from .errors import DependencyError, RuntimeActionError
from .instance import InstanceRecord, container_name
from .template import TemplateManager
from ..config import Config

logger = logging.getLogger(__name__)


class DockerManager:
    """Runs instances as docker compose projects; inspects state with the Docker SDK.

    Each instance is addressed by project ``moltbot-<name>`` and container
    ``moltbot-gateway-<name>``, so repeated calls for the same name always
    reach the same unit.
    """

    def __init__(self, client=None, template_manager: Optional[TemplateManager] = None):
        """
        Initialize Docker manager and test connection.

        Args:
            client: Docker SDK client (created from the environment when omitted)
            template_manager: Renders per-instance compose documents

        Raises:
            DependencyError: If Docker daemon is not available
        """
        if client is None:
            try:
                client = docker.from_env()
                client.ping()
            except DockerException as e:
                raise DependencyError(f"Docker daemon not available: {e}")
        self.client = client
        self.template_manager = template_manager or TemplateManager()

    def up(self, record: InstanceRecord) -> str:
        """
        Ensure the instance's gateway is running (docker compose up -d).

        Returns:
            Combined compose output

        Raises:
            RuntimeActionError: If docker compose fails or times out
        """
        return self._compose(record, ["up", "-d", Config.GATEWAY_SERVICE])

    def down(self, record: InstanceRecord) -> str:
        """
        Ensure the instance's project is stopped (docker compose down).

        Stopping an already stopped project succeeds.

        Raises:
            RuntimeActionError: If docker compose fails or times out
        """
        return self._compose(record, ["down"])

    def is_running(self, name: str) -> bool:
        """Whether the gateway container for an instance name is running."""
        try:
            container = self.client.containers.get(container_name(name))
        except NotFound:
            return False
        return container.status == "running"

    def running_names(self) -> Set[str]:
        """Names of all running containers, from a single listing."""
        return {c.name for c in self.client.containers.list()}

    def published_ports(self) -> Set[int]:
        """Host ports currently published by any running container."""
        ports = set()
        for container in self.client.containers.list():
            for bindings in (container.ports or {}).values():
                for binding in bindings or []:
                    host_port = binding.get("HostPort")
                    if host_port and host_port.isdigit():
                        ports.add(int(host_port))
        return ports

    def image_exists(self, ref: str) -> bool:
        try:
            self.client.images.get(ref)
        except ImageNotFound:
            return False
        return True

    def build(self, ref: str, context: Path):
        """
        Build the runtime image from a Dockerfile in context.

        Raises:
            DependencyError: If the context has no Dockerfile
            RuntimeActionError: If docker build fails
        """
        context = Path(context)
        dockerfile = context / "Dockerfile"
        if not dockerfile.is_file():
            raise DependencyError(f"Cannot build {ref}: no Dockerfile in {context}")

        logger.info("Building Docker image: %s", ref)
        result = subprocess.run(
            [
                "docker", "build",
                "--build-arg", f"CLAWDBOT_DOCKER_APT_PACKAGES={Config.APT_PACKAGES}",
                "-t", ref,
                "-f", str(dockerfile),
                str(context),
            ],
            timeout=Config.DOCKER_BUILD_TIMEOUT,
        )
        if result.returncode != 0:
            raise RuntimeActionError(f"docker build failed for {ref} (exit {result.returncode})")

    def ensure_network(self, name: str = Config.NETWORK_NAME):
        """Create the shared network if it does not exist yet."""
        if self.client.networks.list(names=[name]):
            return
        logger.debug("Creating network %s", name)
        self.client.networks.create(name, driver="bridge")

    def stream_logs(self, name: str, tail: int = Config.LOG_TAIL_LINES, follow: bool = False) -> Generator[str, None, None]:
        """
        Stream logs from an instance's gateway container.

        Args:
            name: Instance name
            tail: Number of initial lines to retrieve
            follow: Keep streaming new lines

        Yields:
            Log lines as strings

        Raises:
            RuntimeActionError: If the container does not exist
        """
        try:
            container = self.client.containers.get(container_name(name))
        except NotFound:
            raise RuntimeActionError(f"Container {container_name(name)} not found")

        if not follow:
            yield container.logs(tail=tail).decode("utf-8", errors="replace")
            return

        for line in container.logs(stream=True, follow=True, tail=tail):
            yield line.decode("utf-8", errors="replace")

    def _compose(self, record: InstanceRecord, args: list) -> str:
        """
        Run docker compose for one instance's project, feeding the rendered document on stdin.

        Raises:
            RuntimeActionError: If the command fails or times out
        """
        command = ["docker", "compose", "-p", record.project_name, "-f", "-", *args]
        try:
            result = subprocess.run(
                command,
                input=self.template_manager.render_instance(record),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=Config.DOCKER_COMPOSE_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise RuntimeActionError(
                f"docker compose {args[0]} timed out after {e.timeout}s",
                output=e.output if isinstance(e.output, str) else "",
            )

        if result.returncode != 0:
            raise RuntimeActionError(
                f"docker compose {args[0]} failed (exit {result.returncode})",
                output=result.stdout,
            )
        return result.stdout
