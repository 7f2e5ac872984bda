"""Instance management - creation, provisioning, and lifecycle of Moltbot instances."""

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .errors import ConfigurationError, DependencyError, InstanceExistsError, RuntimeActionError
from .executor import BatchResult, BoundedExecutor
from .instance import NAME_PATTERN, InstanceDefinition, InstanceRecord, InstanceStatus, ResourceLimits
from .port_allocator import PortAllocator
from .record_store import InstanceStore
from .template import TemplateManager
from ..config import Config
from ..utils.crypto import generate_gateway_token

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    """Outcome of provisioning a batch of definitions."""

    created: List[InstanceRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass
class InstanceState:
    """Liveness snapshot for one record."""

    record: InstanceRecord
    status: InstanceStatus

    def to_dict(self) -> dict:
        return {
            "name": self.record.name,
            "gateway_port": self.record.gateway_port,
            "bridge_port": self.record.bridge_port,
            "status": self.status.value,
            "memory": self.record.resources.memory,
            "config_dir": self.record.config_dir,
        }


class InstanceManager:
    """Ties the record store, port allocator, and runtime together."""

    def __init__(
        self,
        store: Optional[InstanceStore] = None,
        runtime=None,
        template_manager: Optional[TemplateManager] = None,
        host_probe: bool = True,
    ):
        """
        Initialize instance manager.

        Args:
            store: Record store (defaults to one rooted at Config.INSTANCES_DIR)
            runtime: DockerManager, or None when no runtime operations are needed
            template_manager: Compose renderer used for export
            host_probe: Whether port allocation test-binds ports on the host
        """
        self.store = store or InstanceStore()
        self.runtime = runtime
        self.template_manager = template_manager or TemplateManager()
        self.host_probe = host_probe

    def _require_runtime(self):
        if self.runtime is None:
            raise DependencyError("Docker is required for this operation")
        return self.runtime

    def allocator(self) -> PortAllocator:
        """Fresh allocator built from the current records and runtime state."""
        return PortAllocator.scan(self.store, self.runtime, host_probe=self.host_probe)

    def create_instance(
        self,
        name: str,
        gateway_port: Optional[int] = None,
        bridge_port: Optional[int] = None,
        config_dir: Optional[str] = None,
        workspace_dir: Optional[str] = None,
        image: Optional[str] = None,
        resources: Optional[ResourceLimits] = None,
    ) -> InstanceRecord:
        """
        Create a single instance record.

        Steps (under the store's creation lock):
        1. Reject existing names
        2. Allocate ports (adjacent pair when both are auto-assigned)
        3. Generate the gateway token
        4. Persist the record and create its directories

        Args:
            name: Instance name (letters, digits, dash, underscore)
            gateway_port: Fixed gateway port, auto-assigned when None
            bridge_port: Fixed bridge port, auto-assigned when None
            config_dir: Config directory (default: <CONFIG_BASE>/<name>)
            workspace_dir: Workspace directory (default: <WORKSPACE_BASE>/<name>)
            image: Runtime image (default: Config.IMAGE_NAME)
            resources: Resource limits layered over the built-in defaults

        Returns:
            The persisted InstanceRecord

        Raises:
            ConfigurationError: Invalid name, or a requested port is occupied or out of range
            InstanceExistsError: The name is taken
            PortsExhaustedError: No ports available
        """
        if not re.match(NAME_PATTERN, name):
            raise ConfigurationError(
                f"Invalid instance name '{name}'. "
                "Use only alphanumeric characters, dashes, and underscores."
            )

        with self.store.creation_lock():
            if self.store.exists(name):
                raise InstanceExistsError(name)

            gateway, bridge = self.allocator().claim(
                gateway_port,
                bridge_port,
                Config.DEFAULT_GATEWAY_PORT,
                Config.DEFAULT_BRIDGE_PORT,
                strict=True,
            )

            record = InstanceRecord(
                name=name,
                gateway_port=gateway,
                bridge_port=bridge,
                config_dir=str(Path(config_dir or Config.CONFIG_BASE / name).expanduser().resolve()),
                workspace_dir=str(Path(workspace_dir or Config.WORKSPACE_BASE / name).expanduser().resolve()),
                auth_token=generate_gateway_token(),
                image=image or Config.IMAGE_NAME,
                resources=ResourceLimits.builtin().merged(resources),
                created_at=datetime.now().astimezone().replace(microsecond=0),
            )
            self.store.create(record)

        logger.info("Created instance '%s' (gateway:%d, bridge:%d)", name, gateway, bridge)
        return record

    def plan(self, definitions: Sequence[InstanceDefinition], allocator: PortAllocator) -> ProvisionResult:
        """
        Assign ports and tokens to definitions without writing anything.

        Definitions whose name already has a record are skipped, leaving the
        existing record (ports, token) untouched.
        """
        result = ProvisionResult()
        created_at = datetime.now().astimezone().replace(microsecond=0)

        for definition in definitions:
            if self.store.exists(definition.name):
                logger.info("Skipping '%s': record already exists", definition.name)
                result.skipped.append(definition.name)
                continue

            searched = definition.gateway_base is not None
            gateway, bridge = allocator.claim(
                definition.gateway_port,
                definition.bridge_port,
                definition.gateway_base or Config.DEFAULT_GATEWAY_PORT,
                definition.bridge_base or Config.DEFAULT_BRIDGE_PORT,
                pair=not searched,
            )
            result.created.append(
                InstanceRecord(
                    name=definition.name,
                    gateway_port=gateway,
                    bridge_port=bridge,
                    config_dir=definition.config_dir,
                    workspace_dir=definition.workspace_dir,
                    auth_token=generate_gateway_token(),
                    image=definition.image,
                    resources=definition.resources,
                    created_at=created_at,
                )
            )

        return result

    def provision(
        self,
        definitions: Sequence[InstanceDefinition],
        dry_run: bool = False,
        source: Optional[str] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> ProvisionResult:
        """
        Create records for expanded definitions.

        All ports are assigned in one pass before any record is written, so
        a failure during planning leaves the store unchanged.

        Args:
            definitions: Output of the fleet expander, in provisioning order
            dry_run: Plan only; nothing is persisted
            source: Origin noted in each record's header
            progress_callback: Receives a line every 100 records created
        """
        if dry_run:
            result = self.plan(definitions, self.allocator())
            result.dry_run = True
            return result

        with self.store.creation_lock():
            result = self.plan(definitions, self.allocator())
            for count, record in enumerate(result.created, start=1):
                self.store.create(record, source=source)
                if progress_callback and count % 100 == 0:
                    progress_callback(f"Created {count} / {len(result.created)} instances...")

        logger.info("Provisioned %d instances (%d skipped)", len(result.created), len(result.skipped))
        return result

    def get_instance(self, name: str) -> InstanceRecord:
        return self.store.load(name)

    def list_instances(self, pattern: Optional[str] = None) -> List[InstanceRecord]:
        return self.store.filter(pattern)

    def start_instance(self, name: str) -> str:
        """
        Start an instance.

        Raises:
            InstanceNotFoundError: If instance not found
            RuntimeActionError: If the runtime fails
        """
        runtime = self._require_runtime()
        record = self.store.load(name)
        runtime.ensure_network()
        return runtime.up(record)

    def stop_instance(self, name: str) -> str:
        """
        Stop an instance.

        Raises:
            InstanceNotFoundError: If instance not found
            RuntimeActionError: If the runtime fails
        """
        runtime = self._require_runtime()
        record = self.store.load(name)
        return runtime.down(record)

    def remove_instance(self, name: str) -> Optional[InstanceRecord]:
        """
        Delete an instance's record. Directories are never deleted.

        When a runtime is attached the instance's project is brought down
        first; a failure there is logged and does not block removal.
        Removing a name that has no record is a no-op.

        Returns:
            The removed record, or None if there was nothing to remove
        """
        if not self.store.exists(name):
            logger.info("Instance '%s' not found; nothing to remove", name)
            return None

        record = self.store.load(name)
        if self.runtime is not None:
            try:
                self.runtime.down(record)
            except RuntimeActionError as e:
                logger.warning("Could not stop '%s' before removal: %s", name, e)

        self.store.delete(name)
        return record

    def run_bulk(
        self,
        action: str,
        pattern: Optional[str] = None,
        concurrency: int = Config.PARALLEL_LIMIT,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> BatchResult:
        """
        Start or stop every matching instance with bounded parallelism.

        Args:
            action: "up" or "down"
            pattern: Glob filter over instance names
            concurrency: Maximum simultaneous runtime actions
            progress_callback: Receives labelled per-instance output

        Returns:
            BatchResult with one outcome per matching record
        """
        if action not in ("up", "down"):
            raise ValueError(f"Unknown bulk action: {action}")

        runtime = self._require_runtime()
        executor = BoundedExecutor(concurrency)
        records = self.store.filter(pattern)
        if not records:
            return BatchResult([])

        if action == "up":
            runtime.ensure_network()
        return executor.run_all(records, getattr(runtime, action), progress_callback)

    def status(self, pattern: Optional[str] = None) -> List[InstanceState]:
        """Liveness of every matching instance, from a single container listing."""
        runtime = self._require_runtime()
        records = self.store.filter(pattern)
        running = runtime.running_names()
        return [
            InstanceState(
                record,
                InstanceStatus.RUNNING if record.container_name in running else InstanceStatus.STOPPED,
            )
            for record in records
        ]

    def ensure_image(self, image: Optional[str] = None, context: Optional[Path] = None) -> bool:
        """
        Build the runtime image if it is missing.

        Returns:
            True if a build was run, False if the image already existed
        """
        runtime = self._require_runtime()
        image = image or Config.IMAGE_NAME
        if runtime.image_exists(image):
            return False
        runtime.build(image, context or Config.BUILD_CONTEXT)
        return True

    def export(self) -> str:
        """Compose document covering every instance."""
        return self.template_manager.render_export(self.store.list())

    def next_ports(self) -> tuple:
        """Next adjacent pair a single create would receive (nothing is reserved on disk)."""
        return self.allocator().find_available_port_pair(Config.DEFAULT_GATEWAY_PORT)
