"""Exceptions raised by the fleet core."""


class FleetError(Exception):
    """Base exception for all moltbot-fleet errors."""
    pass


class ConfigurationError(FleetError):
    """Invalid fleet specification, malformed rule, or duplicate name."""
    pass


class RecordFormatError(ConfigurationError):
    """An instance record file could not be parsed."""

    def __init__(self, path, reason: str):
        super().__init__(f"Invalid instance record {path}: {reason}")
        self.path = path


class PortsExhaustedError(FleetError):
    """No port satisfies availability within the search window."""

    def __init__(self, base_port: int, max_port: int):
        super().__init__(f"No available ports in range {base_port}-{max_port}")
        self.base_port = base_port
        self.max_port = max_port


class InstanceNotFoundError(FleetError):
    """Raised when a named instance has no record."""

    def __init__(self, name: str):
        super().__init__(f"Instance '{name}' not found")
        self.name = name


class InstanceExistsError(FleetError):
    """Raised when creating an instance whose name is already taken."""

    def __init__(self, name: str):
        super().__init__(f"Instance '{name}' already exists")
        self.name = name


class DependencyError(FleetError):
    """A required external tool or daemon is unavailable."""
    pass


class RuntimeActionError(FleetError):
    """A container runtime action failed for one instance."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output
