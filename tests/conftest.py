"""
Shared test fixtures for moltbot-fleet tests.

- Isolated fleet home (records, config and workspace bases under tmp_path)
- Record store and instance manager with host port probing disabled
- A fake container runtime that records calls and concurrency
"""

import threading
import time
from datetime import datetime, timezone

import pytest

from moltbot_fleet.config import Config
from moltbot_fleet.core.errors import RuntimeActionError
from moltbot_fleet.core.instance import InstanceRecord, ResourceLimits
from moltbot_fleet.core.instance_manager import InstanceManager
from moltbot_fleet.core.record_store import InstanceStore

TOKEN = "ab" * 32


class FakeRuntime:
    """Stands in for DockerManager; remembers every action and the peak concurrency."""

    def __init__(self, fail=(), delay=0.0, published=(), images=("moltbot:local",)):
        self.fail = set(fail)
        self.delay = delay
        self.published = set(published)
        self.images = set(images)
        self.running = set()
        self.calls = []
        self.built = []
        self.network_ensured = 0
        self.peak = 0
        self._active = 0
        self._lock = threading.Lock()

    def _act(self, action, record):
        with self._lock:
            self._active += 1
            self.peak = max(self.peak, self._active)
            self.calls.append((action, record.name))
        try:
            if self.delay:
                time.sleep(self.delay)
            if record.name in self.fail:
                raise RuntimeActionError(f"docker compose {action} failed (exit 1)", output="boom")
            return f"{action} {record.name}\n"
        finally:
            with self._lock:
                self._active -= 1

    def up(self, record):
        output = self._act("up", record)
        self.running.add(record.container_name)
        return output

    def down(self, record):
        output = self._act("down", record)
        self.running.discard(record.container_name)
        return output

    def ensure_network(self, name=Config.NETWORK_NAME):
        self.network_ensured += 1

    def running_names(self):
        return set(self.running)

    def published_ports(self):
        return set(self.published)

    def image_exists(self, ref):
        return ref in self.images

    def build(self, ref, context):
        self.built.append((ref, context))
        self.images.add(ref)

    def stream_logs(self, name, tail=100, follow=False):
        yield f"log line for {name}\n"


@pytest.fixture
def fleet_home(tmp_path, monkeypatch):
    """Point every fleet path at a temporary directory."""
    monkeypatch.setattr(Config, "HOME", tmp_path)
    monkeypatch.setattr(Config, "INSTANCES_DIR", tmp_path / ".instances")
    monkeypatch.setattr(Config, "FLEET_CONFIG", tmp_path / "instances.yaml")
    monkeypatch.setattr(Config, "BUILD_CONTEXT", tmp_path)
    monkeypatch.setattr(Config, "CONFIG_BASE", tmp_path / "config")
    monkeypatch.setattr(Config, "WORKSPACE_BASE", tmp_path / "workspace")
    monkeypatch.setattr(Config, "HOST_PORT_PROBE", False)
    return tmp_path


@pytest.fixture
def store(fleet_home):
    return InstanceStore(fleet_home / ".instances")


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def manager(store, runtime):
    return InstanceManager(store, runtime, host_probe=False)


@pytest.fixture
def make_record(fleet_home):
    """Factory for valid records rooted in the temporary fleet home."""

    def _make(name="alpha", gateway_port=18789, bridge_port=18790, **kwargs):
        data = {
            "name": name,
            "gateway_port": gateway_port,
            "bridge_port": bridge_port,
            "config_dir": str(fleet_home / "config" / name),
            "workspace_dir": str(fleet_home / "workspace" / name),
            "auth_token": TOKEN,
            "image": "moltbot:local",
            "resources": ResourceLimits.builtin(),
            "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        }
        data.update(kwargs)
        return InstanceRecord(**data)

    return _make
