"""Compose document rendering for single instances and fleet-wide export."""

import copy
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

import yaml

from .instance import InstanceRecord
from ..config import Config

# Mount points inside the container
CONTAINER_CONFIG_DIR = "/home/node/.clawdbot"
CONTAINER_WORKSPACE_DIR = "/home/node/clawd"


class TemplateManager:
    """Fills the compose template with instance-specific values."""

    def __init__(self, template_path: Optional[Path] = None):
        """Initialize template manager with the compose template path."""
        self.template_path = Path(template_path or Config.COMPOSE_TEMPLATE)
        self._template = None

    def load_template(self) -> dict:
        """Parsed compose template (a fresh copy on every call)."""
        if self._template is None:
            with open(self.template_path, "r") as f:
                compose = yaml.safe_load(f)

            # Remove obsolete 'version' field (Docker Compose V2 doesn't need it)
            compose.pop("version", None)
            self._template = compose

        return copy.deepcopy(self._template)

    def gateway_service(self, record: InstanceRecord, template: Optional[dict] = None) -> dict:
        """
        Gateway service definition for one instance.

        Args:
            record: Instance record
            template: Parsed compose template (loaded when omitted)
        """
        template = template or self.load_template()
        service = copy.deepcopy(template["services"][Config.GATEWAY_SERVICE])

        service["container_name"] = record.container_name
        service["image"] = record.image

        environment = dict(service.get("environment") or {})
        environment["CLAWDBOT_GATEWAY_TOKEN"] = record.auth_token
        environment["CLAWDBOT_INSTANCE"] = record.name
        service["environment"] = environment

        service["volumes"] = [
            f"{record.config_dir}:{CONTAINER_CONFIG_DIR}",
            f"{record.workspace_dir}:{CONTAINER_WORKSPACE_DIR}",
        ]
        service["ports"] = [
            f"{record.gateway_port}:{record.internal_gateway_port}",
            f"{record.bridge_port}:{record.internal_bridge_port}",
        ]
        service["command"] = [
            "node", "dist/index.js", "gateway",
            "--bind", record.gateway_bind,
            "--port", str(record.internal_gateway_port),
        ]

        limits = self._resource_limits(record)
        if limits:
            service.setdefault("deploy", {}).setdefault("resources", {})["limits"] = limits
        if record.resources.memory_swap:
            service["memswap_limit"] = record.resources.memory_swap

        return service

    @staticmethod
    def _resource_limits(record: InstanceRecord) -> dict:
        limits = {}
        resources = record.resources
        if resources.memory:
            limits["memory"] = resources.memory
        if resources.cpus:
            limits["cpus"] = resources.cpus
        if resources.pids_limit:
            pids = resources.pids_limit
            limits["pids"] = int(pids) if pids.isdigit() else pids
        return limits

    def instance_compose(self, record: InstanceRecord) -> dict:
        """Compose document that runs one instance under its own project."""
        compose = self.load_template()
        compose["services"] = {Config.GATEWAY_SERVICE: self.gateway_service(record, compose)}
        return compose

    def render_instance(self, record: InstanceRecord) -> str:
        return yaml.safe_dump(self.instance_compose(record), default_flow_style=False, sort_keys=False)

    def export_compose(self, records: Iterable[InstanceRecord]) -> dict:
        """One compose document with a service per instance, for external orchestration."""
        template = self.load_template()
        services = {}
        for record in records:
            services[f"{Config.PROJECT_PREFIX}-{record.name}"] = self.gateway_service(record, template)

        return {
            "services": services,
            "networks": {"default": {"name": Config.NETWORK_NAME}},
        }

    def render_export(self, records: Iterable[InstanceRecord]) -> str:
        """Export document as YAML text with a generated-file header."""
        header = (
            "# Auto-generated Docker Compose for all Moltbot instances\n"
            f"# Generated: {datetime.now().astimezone().isoformat(timespec='seconds')}\n"
            "# Regenerate with 'moltbot-fleet export'; do not edit by hand.\n\n"
        )
        body = yaml.safe_dump(self.export_compose(records), default_flow_style=False, sort_keys=False)
        return header + body
