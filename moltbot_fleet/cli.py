"""Command-line interface for the Moltbot fleet manager.

Bulk commands (generate, create-range, up, down, status, export) work on
the whole fleet; single-instance commands (create, start, stop, remove,
list, logs, ports, build) work on one record.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config
from .core.docker_manager import DockerManager
from .core.errors import DependencyError, FleetError
from .core.executor import BatchResult
from .core.fleet import FleetDefaults, FleetSpec, expand, load_fleet_spec, range_rule
from .core.instance import InstanceStatus
from .core.instance_manager import InstanceManager, ProvisionResult
from .core.record_store import InstanceStore

logger = logging.getLogger(__name__)


class FleetGroup(click.Group):
    """Click group that reports fleet errors and usage errors with exit code 1."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        standalone_mode = kwargs.pop("standalone_mode", True)
        try:
            rv = super().main(*args, standalone_mode=False, **kwargs)
        except click.ClickException as e:
            e.show()
            sys.exit(1)
        except click.Abort:
            click.echo("Aborted!", err=True)
            sys.exit(1)
        if not standalone_mode:
            return rv
        sys.exit(rv if isinstance(rv, int) else 0)

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except FleetError as e:
            message = str(e)
            output = getattr(e, "output", "")
            if output:
                message += "\n" + output.rstrip()
            raise click.ClickException(message)


def _runtime(required: bool = True) -> Optional[DockerManager]:
    """Docker runtime adapter, after checking dependencies once up front."""
    try:
        Config.validate()
        return DockerManager()
    except DependencyError:
        if required:
            raise
        logger.warning("Docker unavailable; published container ports will not be checked")
        return None


def _manager(runtime: Optional[DockerManager] = None) -> InstanceManager:
    return InstanceManager(
        InstanceStore(Config.INSTANCES_DIR),
        runtime,
        host_probe=Config.HOST_PORT_PROBE,
    )


def _echo_progress(msg: str):
    click.echo(f"  {msg}")


def _report_provisioning(result: ProvisionResult):
    for record in result.created:
        prefix = "[dry-run] Would create" if result.dry_run else "Created"
        click.echo(
            f"  {prefix}: {record.name} (gateway:{record.gateway_port}, bridge:{record.bridge_port})"
        )
    for name in result.skipped:
        click.echo(f"  Skipped: {name} (already exists)")


def _report_batch(result: BatchResult, verb: str):
    click.echo(f"==> {verb} {result.succeeded} of {result.total} instances, {result.failed} failed")
    for failure in result.get_failures():
        click.echo(f"  ✗ {failure.name}: {failure.message}", err=True)


@click.group(cls=FleetGroup, context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.version_option(version=__version__)
def cli(verbose: bool):
    """Multi-instance Docker management for Moltbot.

    \b
    Examples:
        moltbot-fleet generate --config instances.yaml
        moltbot-fleet create-range user 1 1000 --gateway-start 19000
        moltbot-fleet up --parallel 20
        moltbot-fleet status --filter "user-*"
        moltbot-fleet export --output docker-compose.generated.yml
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format="%(message)s")


# ============================================================================
# BULK COMMANDS
# ============================================================================


@cli.command()
@click.option("--config", "config_file", type=click.Path(path_type=Path), help="Fleet spec (default: instances.yaml)")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
def generate(config_file: Optional[Path], dry_run: bool):
    """Generate instance records from a fleet spec.

    Instances that already have a record are left untouched.
    """
    config_file = config_file or Config.FLEET_CONFIG
    click.echo(f"==> Parsing config: {config_file}")
    spec = load_fleet_spec(config_file)
    definitions = expand(spec)

    click.echo(f"Generating {len(definitions)} instance configurations...")
    manager = _manager(_runtime(required=False))
    result = manager.provision(
        definitions, dry_run=dry_run, source=str(config_file), progress_callback=_echo_progress
    )
    _report_provisioning(result)

    click.echo(f"\nGenerated {len(result.created)} instances ({len(result.skipped)} skipped)")
    if not dry_run:
        click.echo(f"Instance configs stored in: {Config.INSTANCES_DIR}")


@cli.command(name="create-range")
@click.argument("prefix")
@click.argument("start", type=int)
@click.argument("end", type=int)
@click.option("--gateway-start", default=Config.RANGE_GATEWAY_START, show_default=True, type=int)
@click.option("--bridge-start", default=Config.RANGE_BRIDGE_START, show_default=True, type=int)
@click.option("--dry-run", is_flag=True, help="Show what would be done")
def create_range(prefix: str, start: int, end: int, gateway_start: int, bridge_start: int, dry_run: bool):
    """Create PREFIX-START .. PREFIX-END without a fleet spec."""
    rule = range_rule(prefix, start, end, gateway_start, bridge_start)
    definitions = expand(FleetSpec(defaults=FleetDefaults(), instances=[rule]))

    count = len(definitions)
    click.echo(f"==> Creating {count} instances: {prefix}-{start} to {prefix}-{end}")

    manager = _manager(_runtime(required=False))
    result = manager.provision(definitions, dry_run=dry_run, source="create-range", progress_callback=_echo_progress)

    if result.created:
        gateways = [r.gateway_port for r in result.created]
        bridges = [r.bridge_port for r in result.created]
        click.echo(f"    Gateway ports: {min(gateways)} - {max(gateways)}")
        click.echo(f"    Bridge ports:  {min(bridges)} - {max(bridges)}")

    if dry_run:
        _report_provisioning(result)
        click.echo(f"[dry-run] Would create {len(result.created)} instances")
        return

    for name in result.skipped:
        click.echo(f"  Skipped: {name} (already exists)")
    click.echo(f"==> Created {len(result.created)} instances")
    click.echo(f"    Configs stored in: {Config.INSTANCES_DIR}")


def _bulk(action: str, verb: str, parallel: int, filter_pattern: Optional[str], dry_run: bool, require_match: bool):
    manager = _manager()
    records = manager.list_instances(filter_pattern)
    if not records:
        click.echo("No instances found. Run 'generate' or 'create-range' first.", err=True)
        if require_match:
            sys.exit(1)
        return

    click.echo(f"==> {verb} {len(records)} instances (parallel: {parallel})")
    if dry_run:
        for record in records:
            click.echo(f"  [dry-run] {record.name}")
        click.echo(f"[dry-run] Would {action} {len(records)} instances")
        return

    manager.runtime = _runtime()
    result = manager.run_bulk(action, filter_pattern, parallel, progress_callback=_echo_progress)
    _report_batch(result, "Started" if action == "up" else "Stopped")
    if not result.all_succeeded:
        sys.exit(1)


@cli.command()
@click.option("--parallel", default=Config.PARALLEL_LIMIT, show_default=True, type=click.IntRange(min=1))
@click.option("--filter", "filter_pattern", help="Glob over instance names (e.g. 'user-*')")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
def up(parallel: int, filter_pattern: Optional[str], dry_run: bool):
    """Start all (or matching) instances in parallel."""
    _bulk("up", "Starting", parallel, filter_pattern, dry_run, require_match=True)


@cli.command()
@click.option("--parallel", default=Config.PARALLEL_LIMIT, show_default=True, type=click.IntRange(min=1))
@click.option("--filter", "filter_pattern", help="Glob over instance names (e.g. 'user-*')")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
def down(parallel: int, filter_pattern: Optional[str], dry_run: bool):
    """Stop all (or matching) instances in parallel."""
    _bulk("down", "Stopping", parallel, filter_pattern, dry_run, require_match=False)


@cli.command()
@click.option("--filter", "filter_pattern", help="Glob over instance names")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def status(filter_pattern: Optional[str], as_json: bool):
    """Show liveness of all (or matching) instances."""
    states = _manager(_runtime()).status(filter_pattern)

    if as_json:
        click.echo(json.dumps([state.to_dict() for state in states], indent=2))
        return

    table = Table(show_edge=False)
    for column in ("INSTANCE", "GATEWAY", "BRIDGE", "STATUS", "MEM", "CONFIG"):
        table.add_column(column, no_wrap=column == "INSTANCE")
    for state in states:
        row = state.to_dict()
        table.add_row(
            row["name"],
            str(row["gateway_port"]),
            str(row["bridge_port"]),
            row["status"],
            row["memory"] or "",
            row["config_dir"],
        )
    Console().print(table)

    running = sum(1 for s in states if s.status == InstanceStatus.RUNNING)
    click.echo(f"\nTotal: {len(states)} | Running: {running} | Stopped: {len(states) - running}")


@cli.command()
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write to file instead of stdout")
@click.option("--write", is_flag=True, help="Write to docker-compose.generated.yml in the fleet home")
def export(output: Optional[Path], write: bool):
    """Export one docker-compose document covering every instance."""
    text = _manager().export()
    if write and not output:
        output = Config.GENERATED_COMPOSE
    if output:
        output.write_text(text)
        click.echo(f"Wrote {output}")
    else:
        click.echo(text, nl=False)


# ============================================================================
# SINGLE-INSTANCE COMMANDS
# ============================================================================


@cli.command()
@click.argument("name")
@click.option("--gateway-port", type=int, help="Gateway port (default: auto-assigned)")
@click.option("--bridge-port", type=int, help="Bridge port (default: auto-assigned)")
@click.option("--config-dir", help="Config directory (default: ~/.clawdbot/<name>)")
@click.option("--workspace-dir", help="Workspace directory (default: ~/clawd/<name>)")
@click.option("--no-start", is_flag=True, help="Only create the record")
def create(
    name: str,
    gateway_port: Optional[int],
    bridge_port: Optional[int],
    config_dir: Optional[str],
    workspace_dir: Optional[str],
    no_start: bool,
):
    """Create (and start) a new instance."""
    manager = _manager(_runtime(required=not no_start))
    record = manager.create_instance(
        name,
        gateway_port=gateway_port,
        bridge_port=bridge_port,
        config_dir=config_dir,
        workspace_dir=workspace_dir,
    )

    click.echo(f"==> Created instance '{name}'")
    click.echo(f"    Gateway port: {record.gateway_port}")
    click.echo(f"    Bridge port:  {record.bridge_port}")
    click.echo(f"    Config:       {record.config_dir}")
    click.echo(f"    Workspace:    {record.workspace_dir}")
    click.echo(f"    Token:        {record.auth_token}")

    if no_start:
        return

    if manager.ensure_image(record.image):
        click.echo(f"==> Built Docker image: {record.image}")
    manager.start_instance(name)
    click.echo(f"\n==> Instance '{name}' is running")
    click.echo(f"    URL: http://127.0.0.1:{record.gateway_port}/")


@cli.command()
@click.argument("name")
def start(name: str):
    """Start an existing instance."""
    manager = _manager(_runtime())
    record = manager.get_instance(name)
    click.echo(f"==> Starting instance '{name}'")
    manager.start_instance(name)
    click.echo(f"    Gateway: http://127.0.0.1:{record.gateway_port}/")


@cli.command()
@click.argument("name")
def stop(name: str):
    """Stop a running instance."""
    manager = _manager(_runtime())
    manager.get_instance(name)
    click.echo(f"==> Stopping instance '{name}'")
    manager.stop_instance(name)


@cli.command()
@click.argument("name")
def remove(name: str):
    """Stop an instance and remove its record (directories are kept)."""
    manager = _manager(_runtime(required=False))
    record = manager.remove_instance(name)
    if record is None:
        click.echo(f"Instance '{name}' not found; nothing to remove.")
        return

    click.echo(f"Instance '{name}' removed.")
    click.echo(
        f"Note: Config ({record.config_dir}) and workspace ({record.workspace_dir}) "
        "directories were NOT deleted."
    )


@cli.command(name="list")
def list_command():
    """List all instances with their ports."""
    records = _manager().list_instances()
    if not records:
        click.echo("(no instances)")
        return

    table = Table(show_edge=False)
    for column in ("INSTANCE", "GATEWAY", "BRIDGE", "IMAGE", "CONFIG"):
        table.add_column(column, no_wrap=column == "INSTANCE")
    for record in records:
        table.add_row(record.name, str(record.gateway_port), str(record.bridge_port), record.image, record.config_dir)
    Console().print(table)


@cli.command()
@click.argument("name")
@click.option("--follow", "-f", is_flag=True, help="Follow log output")
@click.option("--tail", default=Config.LOG_TAIL_LINES, show_default=True, type=int)
def logs(name: str, follow: bool, tail: int):
    """View an instance's gateway logs."""
    manager = _manager(_runtime())
    manager.get_instance(name)
    for chunk in manager.runtime.stream_logs(name, tail=tail, follow=follow):
        click.echo(chunk, nl=False)


@cli.command()
def ports():
    """Show the next available port pair and the ports in use."""
    manager = _manager(_runtime(required=False))
    gateway, bridge = manager.next_ports()
    click.echo("Next available ports:")
    click.echo(f"  Gateway: {gateway}")
    click.echo(f"  Bridge:  {bridge}")
    click.echo("")
    click.echo("Used ports:")
    click.echo(f"  {'GATEWAY':<10} {'BRIDGE':<10}")
    for record in manager.list_instances():
        click.echo(f"  {record.gateway_port:<10} {record.bridge_port:<10} ({record.name})")


@cli.command()
@click.option("--context", type=click.Path(path_type=Path, file_okay=False), help="Build context with a Dockerfile")
def build(context: Optional[Path]):
    """Build the runtime image if it is missing."""
    manager = _manager(_runtime())
    if manager.ensure_image(context=context):
        click.echo(f"==> Built Docker image: {Config.IMAGE_NAME}")
    else:
        click.echo(f"Image {Config.IMAGE_NAME} already exists")
