"""Global configuration for the Moltbot fleet manager."""

from pathlib import Path
import os
import shutil
import subprocess

from .core.errors import ConfigurationError, DependencyError


def _env_path(name: str, default: Path) -> Path:
    value = os.environ.get(name)
    return Path(value).expanduser() if value else default


class Config:
    """Global application configuration."""

    # Paths - everything lives under the fleet home (defaults to the working directory)
    HOME = _env_path("MOLTBOT_FLEET_HOME", Path.cwd())

    INSTANCES_DIR = HOME / ".instances"
    FLEET_CONFIG = _env_path("MOLTBOT_INSTANCES_CONFIG", HOME / "instances.yaml")
    GENERATED_COMPOSE = HOME / "docker-compose.generated.yml"
    BUILD_CONTEXT = _env_path("MOLTBOT_BUILD_CONTEXT", HOME)
    COMPOSE_TEMPLATE = Path(__file__).parent / "templates" / "docker-compose.multi.yml"

    # Per-instance directories default to <base>/<name>
    CONFIG_BASE = Path.home() / ".clawdbot"
    WORKSPACE_BASE = Path.home() / "clawd"

    # Image
    IMAGE_NAME = os.environ.get("CLAWDBOT_IMAGE", "moltbot:local")
    APT_PACKAGES = os.environ.get("CLAWDBOT_DOCKER_APT_PACKAGES", "")

    # Port allocation
    PORT_RANGE_MAX = 65535
    # Test-bind candidate ports on the host before handing them out
    HOST_PORT_PROBE = os.environ.get("MOLTBOT_HOST_PORT_PROBE", "1") != "0"

    # Default ports (single instance creation)
    DEFAULT_GATEWAY_PORT = 18789
    DEFAULT_BRIDGE_PORT = 18790

    # Default ports (create-range and fleet specs)
    RANGE_GATEWAY_START = 19000
    RANGE_BRIDGE_START = 29000
    FLEET_GATEWAY_START = 18789
    FLEET_BRIDGE_START = 28789

    # Ports the service listens on inside its container
    INTERNAL_GATEWAY_PORT = 18789
    INTERNAL_BRIDGE_PORT = 18790
    GATEWAY_BIND = "lan"

    # Resource limits applied when neither the fleet spec nor the instance sets one
    DEFAULT_RESOURCES = {
        "memory": "512m",
        "memory_swap": "1g",
        "cpus": "0.5",
        "pids_limit": "100",
    }

    # Docker
    PROJECT_PREFIX = "moltbot"
    GATEWAY_SERVICE = "moltbot-gateway"
    NETWORK_NAME = "moltbot-network"
    # Seconds; "0" disables the timeout. Checked by validate()
    COMPOSE_TIMEOUT_SETTING = os.environ.get("MOLTBOT_COMPOSE_TIMEOUT", "120").strip()
    DOCKER_COMPOSE_TIMEOUT = (int(COMPOSE_TIMEOUT_SETTING) or None) if COMPOSE_TIMEOUT_SETTING.isdigit() else 120
    DOCKER_BUILD_TIMEOUT = None

    # Bulk operations
    PARALLEL_LIMIT = 10

    # Logs
    LOG_TAIL_LINES = 100

    @classmethod
    def validate(cls):
        """
        Check that the container runtime is usable.

        Raises:
            ConfigurationError: If MOLTBOT_COMPOSE_TIMEOUT is not a whole number of seconds
            DependencyError: If docker, docker compose or the daemon is unavailable
        """
        if not cls.COMPOSE_TIMEOUT_SETTING.isdigit():
            raise ConfigurationError(
                f"MOLTBOT_COMPOSE_TIMEOUT must be a whole number of seconds, got '{cls.COMPOSE_TIMEOUT_SETTING}'"
            )

        if shutil.which("docker") is None:
            raise DependencyError("Missing dependency: docker")

        result = subprocess.run(
            ["docker", "compose", "version"],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise DependencyError("Docker Compose not available (try: docker compose version)")

        # Test Docker connection
        try:
            import docker
            client = docker.from_env()
            client.ping()
        except Exception as e:
            raise DependencyError(
                f"Docker is not available: {e}\n"
                "Please ensure Docker is installed and running."
            )
