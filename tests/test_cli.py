"""Tests for the moltbot-fleet command line."""

import json

import pytest
import yaml
from click.testing import CliRunner

from moltbot_fleet import cli as cli_module
from moltbot_fleet.cli import cli
from moltbot_fleet.core.record_store import InstanceStore

from .conftest import FakeRuntime


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def fake_runtime(monkeypatch, fleet_home):
    runtime = FakeRuntime()
    monkeypatch.setattr(cli_module, "_runtime", lambda required=True: runtime)
    return runtime


@pytest.fixture
def records(fleet_home):
    return InstanceStore(fleet_home / ".instances")


@pytest.fixture
def fleet_file(fleet_home):
    path = fleet_home / "instances.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "instances": [
                    {"name": "admin", "gateway_port": 18789, "bridge_port": 18790},
                    {
                        "pattern": "user-{n:03d}",
                        "range": [1, 3],
                        "gateway_port_start": 19000,
                        "bridge_port_start": 29000,
                    },
                ]
            }
        )
    )
    return path


class TestGenerate:
    def test_generate_from_default_config(self, runner, fake_runtime, fleet_file, records):
        result = runner.invoke(cli, ["generate"])

        assert result.exit_code == 0, result.output
        assert "Generated 4 instances (0 skipped)" in result.output
        ports = {r.name: (r.gateway_port, r.bridge_port) for r in records.list()}
        assert ports["admin"] == (18789, 18790)
        assert ports["user-003"] == (19002, 29002)

    def test_generate_twice_skips_existing(self, runner, fake_runtime, fleet_file):
        runner.invoke(cli, ["generate"])
        result = runner.invoke(cli, ["generate", "--config", str(fleet_file)])

        assert result.exit_code == 0, result.output
        assert "Generated 0 instances (4 skipped)" in result.output

    def test_generate_dry_run(self, runner, fake_runtime, fleet_file, records):
        result = runner.invoke(cli, ["generate", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "[dry-run] Would create: user-001 (gateway:19000, bridge:29000)" in result.output
        assert records.list() == []

    def test_missing_config(self, runner, fake_runtime, fleet_home):
        result = runner.invoke(cli, ["generate", "--config", str(fleet_home / "missing.yaml")])
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_duplicate_names_in_config(self, runner, fake_runtime, fleet_home):
        path = fleet_home / "dup.yaml"
        path.write_text("instances:\n  - name: a\n  - names: [a]\n")
        result = runner.invoke(cli, ["generate", "--config", str(path)])
        assert result.exit_code == 1
        assert "Duplicate instance name 'a'" in result.output


class TestCreateRange:
    def test_creates_sequential_ports(self, runner, fake_runtime, records):
        result = runner.invoke(
            cli, ["create-range", "bot", "1", "5", "--gateway-start", "20000", "--bridge-start", "30000"]
        )

        assert result.exit_code == 0, result.output
        assert "Created 5 instances" in result.output
        assert [(r.name, r.gateway_port) for r in records.list()] == [
            ("bot-1", 20000),
            ("bot-2", 20001),
            ("bot-3", 20002),
            ("bot-4", 20003),
            ("bot-5", 20004),
        ]

    def test_dry_run(self, runner, fake_runtime, records):
        result = runner.invoke(cli, ["create-range", "bot", "1", "3", "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "[dry-run] Would create 3 instances" in result.output
        assert records.list() == []

    def test_invalid_range(self, runner, fake_runtime):
        result = runner.invoke(cli, ["create-range", "bot", "5", "1"])
        assert result.exit_code == 1

    def test_range_past_last_port(self, runner, fake_runtime, records):
        result = runner.invoke(cli, ["create-range", "bot", "1", "10", "--gateway-start", "65530"])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "65535" in result.output
        assert records.list() == []

    def test_header_reports_allocated_ports(self, runner, fake_runtime):
        runner.invoke(cli, ["create", "alpha", "--gateway-port", "20000", "--bridge-port", "20001", "--no-start"])
        result = runner.invoke(
            cli, ["create-range", "bot", "1", "3", "--gateway-start", "20000", "--bridge-start", "30000"]
        )
        assert result.exit_code == 0, result.output
        assert "Gateway ports: 20002 - 20004" in result.output
        assert "Bridge ports:  30000 - 30002" in result.output


class TestBulkLifecycle:
    def test_up_without_instances_fails(self, runner, fake_runtime):
        result = runner.invoke(cli, ["up"])
        assert result.exit_code == 1
        assert "No instances found" in result.output

    def test_down_without_instances_succeeds(self, runner, fake_runtime):
        result = runner.invoke(cli, ["down"])
        assert result.exit_code == 0

    def test_up_all(self, runner, fake_runtime):
        runner.invoke(cli, ["create-range", "bot", "1", "4"])
        result = runner.invoke(cli, ["up", "--parallel", "2"])

        assert result.exit_code == 0, result.output
        assert "Started 4 of 4 instances, 0 failed" in result.output
        assert "✓ bot-3" in result.output
        assert fake_runtime.peak <= 2

    def test_up_partial_failure_exits_nonzero(self, runner, fake_runtime):
        fake_runtime.fail.add("bot-2")
        runner.invoke(cli, ["create-range", "bot", "1", "3"])

        result = runner.invoke(cli, ["up"])

        assert result.exit_code == 1
        assert "Started 2 of 3 instances, 1 failed" in result.output
        assert "bot-2" in result.output

    def test_down_filtered(self, runner, fake_runtime):
        runner.invoke(cli, ["create-range", "bot", "1", "3"])
        runner.invoke(cli, ["create-range", "user", "1", "2"])

        result = runner.invoke(cli, ["down", "--filter", "user-*"])

        assert result.exit_code == 0, result.output
        assert sorted(name for _, name in fake_runtime.calls) == ["user-1", "user-2"]

    def test_up_dry_run_touches_nothing(self, runner, fake_runtime):
        runner.invoke(cli, ["create-range", "bot", "1", "2"])
        result = runner.invoke(cli, ["up", "--dry-run"])
        assert result.exit_code == 0
        assert "[dry-run] Would up 2 instances" in result.output
        assert fake_runtime.calls == []

    def test_zero_parallelism_is_a_usage_error(self, runner, fake_runtime):
        result = runner.invoke(cli, ["up", "--parallel", "0"])
        assert result.exit_code == 1

    def test_status_json(self, runner, fake_runtime):
        runner.invoke(cli, ["create-range", "bot", "1", "2"])
        runner.invoke(cli, ["up", "--filter", "bot-1"])

        result = runner.invoke(cli, ["status", "--json"])

        assert result.exit_code == 0, result.output
        rows = {row["name"]: row["status"] for row in json.loads(result.output)}
        assert rows == {"bot-1": "running", "bot-2": "stopped"}

    def test_status_table(self, runner, fake_runtime):
        runner.invoke(cli, ["create-range", "bot", "1", "2"])
        result = runner.invoke(cli, ["status"])
        assert result.exit_code == 0, result.output
        assert "Total: 2 | Running: 0 | Stopped: 2" in result.output


class TestExport:
    def test_export_to_file(self, runner, fake_runtime, fleet_home):
        runner.invoke(cli, ["create-range", "bot", "1", "2"])
        output = fleet_home / "compose.yml"

        result = runner.invoke(cli, ["export", "--output", str(output)])

        assert result.exit_code == 0, result.output
        compose = yaml.safe_load(output.read_text())
        assert sorted(compose["services"]) == ["moltbot-bot-1", "moltbot-bot-2"]

    def test_export_write_uses_generated_path(self, runner, fake_runtime, fleet_home, monkeypatch):
        from moltbot_fleet.config import Config

        target = fleet_home / "docker-compose.generated.yml"
        monkeypatch.setattr(Config, "GENERATED_COMPOSE", target)
        runner.invoke(cli, ["create-range", "bot", "1", "1"])

        result = runner.invoke(cli, ["export", "--write"])

        assert result.exit_code == 0, result.output
        assert target.read_text().startswith("# Auto-generated Docker Compose")

    def test_export_to_stdout(self, runner, fake_runtime):
        runner.invoke(cli, ["create-range", "bot", "1", "1"])
        result = runner.invoke(cli, ["export"])
        assert "moltbot-bot-1:" in result.output


class TestSingleInstance:
    def test_create_and_start(self, runner, fake_runtime, records):
        result = runner.invoke(cli, ["create", "alpha"])

        assert result.exit_code == 0, result.output
        assert "Gateway port: 18789" in result.output
        assert "Bridge port:  18790" in result.output
        assert "Instance 'alpha' is running" in result.output
        assert fake_runtime.calls == [("up", "alpha")]
        assert records.exists("alpha")

    def test_create_builds_missing_image(self, runner, fake_runtime):
        fake_runtime.images.clear()
        result = runner.invoke(cli, ["create", "alpha"])
        assert result.exit_code == 0, result.output
        assert "Built Docker image" in result.output

    def test_create_no_start(self, runner, fake_runtime):
        result = runner.invoke(cli, ["create", "alpha", "--no-start"])
        assert result.exit_code == 0, result.output
        assert fake_runtime.calls == []

    def test_create_duplicate_fails(self, runner, fake_runtime):
        runner.invoke(cli, ["create", "alpha", "--no-start"])
        result = runner.invoke(cli, ["create", "alpha", "--no-start"])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_create_port_outside_range(self, runner, fake_runtime, records):
        result = runner.invoke(cli, ["create", "alpha", "--gateway-port", "70000", "--no-start"])
        assert result.exit_code == 1
        assert "outside the valid range" in result.output
        assert not records.exists("alpha")

    def test_create_with_explicit_ports(self, runner, fake_runtime, records):
        result = runner.invoke(
            cli, ["create", "alpha", "--gateway-port", "20000", "--bridge-port", "20001", "--no-start"]
        )
        assert result.exit_code == 0, result.output
        assert records.load("alpha").ports == (20000, 20001)

    def test_start_stop(self, runner, fake_runtime):
        runner.invoke(cli, ["create", "alpha", "--no-start"])

        assert runner.invoke(cli, ["start", "alpha"]).exit_code == 0
        assert runner.invoke(cli, ["stop", "alpha"]).exit_code == 0
        assert fake_runtime.calls == [("up", "alpha"), ("down", "alpha")]

    def test_start_unknown(self, runner, fake_runtime):
        result = runner.invoke(cli, ["start", "ghost"])
        assert result.exit_code == 1
        assert "Instance 'ghost' not found" in result.output

    def test_remove(self, runner, fake_runtime, records):
        runner.invoke(cli, ["create", "alpha", "--no-start"])

        result = runner.invoke(cli, ["remove", "alpha"])

        assert result.exit_code == 0, result.output
        assert "were NOT deleted" in result.output
        assert not records.exists("alpha")

    def test_remove_missing_is_not_an_error(self, runner, fake_runtime):
        result = runner.invoke(cli, ["remove", "ghost"])
        assert result.exit_code == 0
        assert "nothing to remove" in result.output

    def test_list(self, runner, fake_runtime):
        runner.invoke(cli, ["create-range", "bot", "1", "2"])
        result = runner.invoke(cli, ["list"])
        assert result.exit_code == 0, result.output
        assert "bot-1" in result.output
        assert "bot-2" in result.output

    def test_list_empty(self, runner, fake_runtime):
        result = runner.invoke(cli, ["list"])
        assert "(no instances)" in result.output

    def test_logs(self, runner, fake_runtime):
        runner.invoke(cli, ["create", "alpha", "--no-start"])
        result = runner.invoke(cli, ["logs", "alpha", "--tail", "10"])
        assert result.exit_code == 0, result.output
        assert "log line for alpha" in result.output

    def test_ports(self, runner, fake_runtime):
        runner.invoke(cli, ["create", "alpha", "--no-start"])
        result = runner.invoke(cli, ["ports"])
        assert result.exit_code == 0, result.output
        assert "Gateway: 18791" in result.output
        assert "(alpha)" in result.output

    def test_build(self, runner, fake_runtime):
        result = runner.invoke(cli, ["build"])
        assert result.exit_code == 0, result.output
        assert "already exists" in result.output


class TestUsage:
    def test_missing_argument_exits_one(self, runner):
        result = runner.invoke(cli, ["start"])
        assert result.exit_code == 1

    def test_unknown_command_exits_one(self, runner):
        result = runner.invoke(cli, ["frobnicate"])
        assert result.exit_code == 1

    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "create-range" in result.output

    def test_malformed_compose_timeout(self, runner, fleet_home, monkeypatch):
        monkeypatch.setattr(cli_module.Config, "COMPOSE_TIMEOUT_SETTING", "abc")
        result = runner.invoke(cli, ["start", "alpha"])
        assert result.exit_code == 1
        assert "MOLTBOT_COMPOSE_TIMEOUT" in result.output
