"""Port allocation to prevent conflicts across instances."""

import logging
import socket
from typing import Iterable, Optional, Set, Tuple

from .errors import ConfigurationError, PortsExhaustedError
from ..config import Config

logger = logging.getLogger(__name__)


class PortAllocator:
    """Owns the used-port set for one operation and hands out free ports.

    Build one with :meth:`scan` at the start of each create/generate run and
    pass it through every allocation of that run. Ports handed out are
    reserved immediately, so a single allocator never returns the same port
    twice. There is no cross-process locking here; callers serialize
    creation with ``InstanceStore.creation_lock()``.
    """

    def __init__(
        self,
        used_ports: Optional[Iterable[int]] = None,
        runtime_ports: Optional[Iterable[int]] = None,
        host_probe: bool = True,
        max_port: int = Config.PORT_RANGE_MAX,
    ):
        """
        Initialize port allocator.

        Args:
            used_ports: Ports claimed by instance records (or otherwise known occupied)
            runtime_ports: Host ports currently published by the container runtime
            host_probe: Whether to test-bind candidate ports on the host
            max_port: Upper bound of the search window (inclusive)
        """
        self.used_ports: Set[int] = set(used_ports or ())
        self.runtime_ports: Set[int] = set(runtime_ports or ())
        self.host_probe = host_probe
        self.max_port = max_port

    @classmethod
    def scan(cls, store, runtime=None, host_probe: bool = True) -> "PortAllocator":
        """
        Build an allocator from a fresh scan of the records and the runtime.

        Args:
            store: InstanceStore whose records' ports are taken
            runtime: Optional DockerManager queried for published ports
            host_probe: Whether to test-bind candidate ports on the host
        """
        runtime_ports = runtime.published_ports() if runtime is not None else set()
        return cls(store.used_ports(), runtime_ports, host_probe=host_probe)

    def is_port_available(self, port: int) -> bool:
        """
        Check if port is available (not used by a record, the runtime, or the system).

        Args:
            port: Port number to check

        Returns:
            True if port is available, False otherwise
        """
        if port < 1 or port > self.max_port:
            return False

        if port in self.used_ports or port in self.runtime_ports:
            return False

        if self.host_probe and self._is_bound(port):
            return False

        return True

    @staticmethod
    def _is_bound(port: int) -> bool:
        """Attempt to bind to the port; failure means something holds it."""
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.settimeout(1)
            sock.bind(("0.0.0.0", port))
            sock.close()
            return False
        except OSError:
            return True

    def find_available_port(self, base_port: int) -> int:
        """
        Find the first available port at or above base_port.

        Raises:
            PortsExhaustedError: If no port up to max_port is available
        """
        for port in range(base_port, self.max_port + 1):
            if self.is_port_available(port):
                return port
        raise PortsExhaustedError(base_port, self.max_port)

    def find_available_port_pair(self, base_port: int) -> Tuple[int, int]:
        """
        Find the first port p at or above base_port where p and p+1 are both available.

        Raises:
            PortsExhaustedError: If no pair up to max_port is available
        """
        for port in range(base_port, self.max_port):
            if self.is_port_available(port) and self.is_port_available(port + 1):
                return port, port + 1
        raise PortsExhaustedError(base_port, self.max_port)

    def reserve(self, *ports: int):
        """Mark ports as used for the rest of this allocator's life."""
        self.used_ports.update(ports)

    def claim(
        self,
        gateway_port: Optional[int],
        bridge_port: Optional[int],
        gateway_base: int = Config.DEFAULT_GATEWAY_PORT,
        bridge_base: int = Config.DEFAULT_BRIDGE_PORT,
        strict: bool = False,
        pair: bool = True,
    ) -> Tuple[int, int]:
        """
        Resolve and reserve the (gateway, bridge) ports for one instance.

        Missing ports are auto-assigned: with pair set, both missing yields an
        adjacent pair searched from gateway_base; otherwise each missing port
        is searched from its own base.
        Requested ports are kept when free. An occupied requested port is an
        error when strict, otherwise the next free port above it is used.

        Returns:
            (gateway_port, bridge_port), both already reserved

        Raises:
            ConfigurationError: A requested port is outside 1..max_port, or strict and it is occupied
            PortsExhaustedError: No port satisfies availability
        """
        if pair and gateway_port is None and bridge_port is None:
            ports = self.find_available_port_pair(gateway_base)
            self.reserve(*ports)
            return ports

        gateway = self._claim_one("gateway", gateway_port, gateway_base, strict)
        bridge = self._claim_one("bridge", bridge_port, bridge_base, strict)
        return gateway, bridge

    def _claim_one(self, label: str, requested: Optional[int], base: int, strict: bool) -> int:
        if requested is not None and not 1 <= requested <= self.max_port:
            raise ConfigurationError(
                f"{label.capitalize()} port {requested} is outside the valid range 1-{self.max_port}"
            )

        if requested is None:
            port = self.find_available_port(base)
        elif self.is_port_available(requested):
            port = requested
        elif strict:
            raise ConfigurationError(f"{label.capitalize()} port {requested} is already in use")
        else:
            port = self.find_available_port(requested)
            logger.warning("%s port %d is in use, using %d instead", label.capitalize(), requested, port)
        self.reserve(port)
        return port

    def get_allocated_ports(self) -> Set[int]:
        """Get set of all ports currently known to be taken."""
        return self.used_ports | self.runtime_ports
