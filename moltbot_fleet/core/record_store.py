"""File-per-instance persistence of instance records.

Each instance is one ``<name>.env`` file of ``KEY=VALUE`` lines. Shell
scripts source the same files before invoking docker compose, so the
format must stay stable.
"""

import contextlib
import fcntl
import fnmatch
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from pydantic import ValidationError

from .errors import InstanceExistsError, InstanceNotFoundError, RecordFormatError
from .instance import InstanceRecord, ResourceLimits
from ..config import Config

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".env"
LOCK_FILE = ".lock"

# Record field -> file key
RECORD_KEYS = {
    "name": "INSTANCE",
    "gateway_port": "CLAWDBOT_GATEWAY_PORT",
    "bridge_port": "CLAWDBOT_BRIDGE_PORT",
    "internal_gateway_port": "CLAWDBOT_INTERNAL_GATEWAY_PORT",
    "internal_bridge_port": "CLAWDBOT_INTERNAL_BRIDGE_PORT",
    "config_dir": "CLAWDBOT_CONFIG_DIR",
    "workspace_dir": "CLAWDBOT_WORKSPACE_DIR",
    "auth_token": "CLAWDBOT_GATEWAY_TOKEN",
    "gateway_bind": "CLAWDBOT_GATEWAY_BIND",
    "image": "CLAWDBOT_IMAGE",
}

RESOURCE_KEYS = {
    "memory": "CLAWDBOT_MEMORY",
    "memory_swap": "CLAWDBOT_MEMORY_SWAP",
    "cpus": "CLAWDBOT_CPUS",
    "pids_limit": "CLAWDBOT_PIDS_LIMIT",
}

REQUIRED_KEYS = (
    "INSTANCE",
    "CLAWDBOT_GATEWAY_PORT",
    "CLAWDBOT_BRIDGE_PORT",
    "CLAWDBOT_CONFIG_DIR",
    "CLAWDBOT_WORKSPACE_DIR",
    "CLAWDBOT_GATEWAY_TOKEN",
    "CLAWDBOT_IMAGE",
)

CREATED_PREFIX = "# Created: "


def dump_record(record: InstanceRecord, source: Optional[str] = None) -> str:
    """
    Serialize a record to the KEY=VALUE format.

    Args:
        record: Record to serialize
        source: Optional description of where the record came from (comment only)
    """
    created = record.created_at or datetime.now().astimezone()
    lines = [f"# Instance: {record.name}", f"{CREATED_PREFIX}{created.isoformat(timespec='seconds')}"]
    if source:
        lines.append(f"# Auto-generated from {source}")

    for field, key in RECORD_KEYS.items():
        lines.append(f"{key}={getattr(record, field)}")

    for field, key in RESOURCE_KEYS.items():
        value = getattr(record.resources, field)
        if value is not None:
            lines.append(f"{key}={value}")

    return "\n".join(lines) + "\n"


def parse_env(text: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines, ignoring blanks and comments."""
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def parse_record(text: str, path: Path) -> InstanceRecord:
    """
    Parse a record file's contents.

    Raises:
        RecordFormatError: If required keys are missing or values are invalid
    """
    values = parse_env(text)
    missing = [key for key in REQUIRED_KEYS if key not in values]
    if missing:
        raise RecordFormatError(path, f"missing keys {', '.join(missing)}")

    data = {field: values[key] for field, key in RECORD_KEYS.items() if key in values}
    data["resources"] = ResourceLimits(
        **{field: values[key] for field, key in RESOURCE_KEYS.items() if key in values}
    )

    for line in text.splitlines():
        if line.startswith(CREATED_PREFIX):
            with contextlib.suppress(ValueError):
                data["created_at"] = datetime.fromisoformat(line[len(CREATED_PREFIX):].strip())
            break

    try:
        return InstanceRecord(**data)
    except ValidationError as e:
        raise RecordFormatError(path, str(e))


class InstanceStore:
    """Durable registry of instance records; the source of truth for what exists."""

    def __init__(self, instances_dir: Optional[Path] = None):
        """
        Initialize the store.

        Args:
            instances_dir: Directory holding the record files (defaults to Config.INSTANCES_DIR)
        """
        self.instances_dir = Path(instances_dir or Config.INSTANCES_DIR)

    def record_path(self, name: str) -> Path:
        """Path of the record file for an instance."""
        return self.instances_dir / f"{name}{RECORD_SUFFIX}"

    def exists(self, name: str) -> bool:
        return self.record_path(name).is_file()

    def create(self, record: InstanceRecord, source: Optional[str] = None) -> Path:
        """
        Persist a new record and create its directories.

        The record file is written to a temporary file and renamed into
        place, so it is never observable half-written.

        Args:
            record: Record to persist
            source: Optional origin noted in the file header

        Returns:
            Path to the record file

        Raises:
            InstanceExistsError: If a record with this name already exists
        """
        if self.exists(record.name):
            raise InstanceExistsError(record.name)

        Path(record.config_dir).mkdir(parents=True, exist_ok=True)
        Path(record.workspace_dir).mkdir(parents=True, exist_ok=True)

        self.instances_dir.mkdir(parents=True, exist_ok=True)
        target = self.record_path(record.name)

        fd, tmp_path = tempfile.mkstemp(
            dir=self.instances_dir, prefix=f".{record.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(dump_record(record, source))
            # The record holds the gateway token
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, target)
        except Exception:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

        logger.debug("Wrote record %s", target)
        return target

    def load(self, name: str) -> InstanceRecord:
        """
        Load one record.

        Raises:
            InstanceNotFoundError: If no record exists for name
            RecordFormatError: If the record file is malformed
        """
        path = self.record_path(name)
        if not path.is_file():
            raise InstanceNotFoundError(name)
        record = parse_record(path.read_text(), path)
        if record.name != name:
            raise RecordFormatError(path, f"INSTANCE={record.name} does not match file name")
        return record

    def list(self) -> List[InstanceRecord]:
        """
        Load every record, sorted by name.

        Raises:
            RecordFormatError: If any record file is malformed (nothing is skipped)
        """
        if not self.instances_dir.is_dir():
            return []

        records = []
        for path in sorted(self.instances_dir.glob(f"*{RECORD_SUFFIX}")):
            if path.name.startswith(".") or not path.is_file():
                continue
            records.append(self.load(path.name[: -len(RECORD_SUFFIX)]))
        return records

    def filter(self, pattern: Optional[str]) -> List[InstanceRecord]:
        """Records whose names match a glob pattern (all records when pattern is empty)."""
        records = self.list()
        if not pattern:
            return records
        return [r for r in records if fnmatch.fnmatchcase(r.name, pattern)]

    def delete(self, name: str) -> bool:
        """
        Remove a record. Config and workspace directories are left in place.

        Returns:
            True if a record was removed, False if none existed
        """
        path = self.record_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Removed record %s", path)
        return True

    def used_ports(self) -> Set[int]:
        """Union of every record's gateway and bridge ports."""
        ports = set()
        for record in self.list():
            ports.update(record.ports)
        return ports

    @contextlib.contextmanager
    def creation_lock(self) -> Iterator[None]:
        """Exclusive lock around "scan used ports, then persist" sequences."""
        self.instances_dir.mkdir(parents=True, exist_ok=True)
        with open(self.instances_dir / LOCK_FILE, "a") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)
