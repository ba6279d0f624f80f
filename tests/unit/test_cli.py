"""Unit tests for bouncer CLI commands."""

import json

import pytest
from unittest.mock import patch
from typer.testing import CliRunner

from bouncer.cli import app, _check_root
from bouncer.core.context import create_context
from bouncer.services.backend import DualStackBackend
from bouncer.services.ipset import IPFamily

from conftest import make_context


runner = CliRunner()

V4_SET = "crowdsec-blacklists"
V6_SET = "crowdsec6-blacklists"


@pytest.fixture
def config_file(tmp_path):
    """Config file with the audit log under tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(
        "firewall:\n"
        "  iptables_chains: [INPUT]\n"
        "audit:\n"
        "  enabled: true\n"
        f"  log_path: {tmp_path / 'audit.log'}\n"
    )
    return path


@pytest.fixture
def fake_backend(firewall, executor):
    """Patch create_backend to build a backend on the fake firewall."""
    def _create(ctx, config):
        return DualStackBackend(
            ctx,
            make_context(ctx, executor, IPFamily.V4, tuple(config.iptables_chains)),
            make_context(ctx, executor, IPFamily.V6, tuple(config.iptables_chains)),
        )

    with patch("bouncer.cli.create_backend", side_effect=_create), \
            patch("bouncer.cli.os.geteuid", return_value=0):
        yield firewall


def _audit_events(tmp_path):
    return [json.loads(line) for line in (tmp_path / "audit.log").read_text().splitlines()]


class TestCheckRoot:
    """Tests for _check_root helper."""

    def test_allows_root(self):
        """Should pass when running as root."""
        with patch("bouncer.cli.os.geteuid", return_value=0):
            _check_root(create_context(quiet=True))

    def test_allows_dry_run(self):
        """Dry-run should not need root."""
        with patch("bouncer.cli.os.geteuid", return_value=1000):
            _check_root(create_context(dry_run=True, quiet=True))

    def test_rejects_non_root(self, config_file):
        """Non-root users should get exit code 6."""
        with patch("bouncer.cli.os.geteuid", return_value=1000):
            result = runner.invoke(app, ["init", "--config", str(config_file)])
        assert result.exit_code == 6


class TestLifecycleCommands:
    """Tests for init, shutdown and status."""

    def test_init(self, fake_backend, config_file, tmp_path):
        """init should attach both sets and audit the bring-up."""
        result = runner.invoke(app, ["init", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "Firewall backend ready" in result.output
        assert set(fake_backend.sets) == {V4_SET, V6_SET}
        events = _audit_events(tmp_path)
        assert events[-1]["event_type"] == "backend.init"
        assert events[-1]["result"] == "success"

    def test_init_failure_exit_code(self, fake_backend, config_file, tmp_path):
        """A failing insert should exit with the firewall error code."""
        fake_backend.fail("/usr/sbin/iptables", "-w", "-I", return_code=4, stderr="no chain")

        result = runner.invoke(app, ["init", "--config", str(config_file)])

        assert result.exit_code == 15
        assert "iptables init failed" in result.output
        assert _audit_events(tmp_path)[-1]["result"] == "failure"

    def test_shutdown(self, fake_backend, config_file):
        """shutdown should detach rules but keep the sets."""
        runner.invoke(app, ["init", "--config", str(config_file)])

        result = runner.invoke(app, ["shutdown", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert fake_backend.rule_count("/usr/sbin/iptables", "INPUT") == 0
        assert set(fake_backend.sets) == {V4_SET, V6_SET}

    def test_status(self, fake_backend, config_file):
        """status should list each family's set and chain."""
        runner.invoke(app, ["init", "--config", str(config_file)])

        result = runner.invoke(app, ["status", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert V4_SET in result.output
        assert V6_SET in result.output


class TestDecisionCommands:
    """Tests for ban and unban."""

    def test_ban(self, fake_backend, config_file, tmp_path):
        """ban should add the address to its family's set."""
        fake_backend.sets = {V4_SET: set(), V6_SET: set()}

        result = runner.invoke(
            app, ["ban", "203.0.113.5", "--duration", "4h", "--config", str(config_file)]
        )

        assert result.exit_code == 0, result.output
        assert fake_backend.sets[V4_SET] == {"203.0.113.5"}
        assert fake_backend.calls[-1][-2:] == ["timeout", "14400"]
        assert _audit_events(tmp_path)[-1]["event_type"] == "decision.add"

    def test_ban_simulation(self, fake_backend, config_file, tmp_path):
        """Simulation bans should not touch the firewall."""
        result = runner.invoke(
            app,
            ["ban", "203.0.113.5", "--type", "simulation:ban", "--config", str(config_file)],
        )

        assert result.exit_code == 0, result.output
        assert fake_backend.calls == []
        assert _audit_events(tmp_path)[-1]["event_type"] == "decision.simulated"

    def test_ban_unrecognized(self, fake_backend, config_file):
        """Unclassifiable values should exit with code 21."""
        result = runner.invoke(app, ["ban", "localhost", "--config", str(config_file)])

        assert result.exit_code == 21
        assert "was not recognised" in result.output

    def test_ban_invalid_duration(self, fake_backend, config_file):
        """Invalid durations should exit with the decision error code."""
        fake_backend.sets = {V4_SET: set(), V6_SET: set()}

        result = runner.invoke(
            app, ["ban", "203.0.113.5", "--duration", "forever", "--config", str(config_file)]
        )

        assert result.exit_code == 20

    def test_unban(self, fake_backend, config_file):
        """unban should remove the address from its family's set."""
        fake_backend.sets = {V4_SET: set(), V6_SET: {"2001:db8::1"}}

        result = runner.invoke(app, ["unban", "2001:db8::1", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert fake_backend.sets[V6_SET] == set()

    def test_unban_absent(self, fake_backend, config_file):
        """Unbanning an address that is not banned should succeed."""
        fake_backend.sets = {V4_SET: set(), V6_SET: set()}
        fake_backend.fail(
            "/usr/sbin/ipset", "-exist", "del",
            return_code=1,
            stderr="ipset v7.15: Element cannot be deleted from the set: it's not added",
        )

        result = runner.invoke(app, ["unban", "198.51.100.1", "--config", str(config_file)])

        assert result.exit_code == 0, result.output

    def test_ban_dry_run(self, config_file):
        """Dry-run should resolve binaries but never run them."""
        with patch("bouncer.core.executor.shutil.which", side_effect=lambda n: f"/usr/sbin/{n}"), \
                patch("bouncer.core.executor.subprocess.run") as mock_run:
            result = runner.invoke(
                app, ["ban", "203.0.113.5", "--dry-run", "--config", str(config_file)]
            )

        assert result.exit_code == 0, result.output
        mock_run.assert_not_called()
        assert "DRY-RUN" in result.output

    def test_missing_binary(self, config_file):
        """A missing ipset should exit with the prerequisite error code."""
        with patch("bouncer.core.executor.shutil.which", return_value=None):
            result = runner.invoke(app, ["ban", "203.0.113.5", "--config", str(config_file)])

        assert result.exit_code == 6
        assert "unable to find ipset" in result.output


class TestApplyCommand:
    """Tests for applying a decision stream."""

    def _write(self, tmp_path, payload):
        path = tmp_path / "decisions.json"
        path.write_text(json.dumps(payload))
        return path

    def test_apply(self, fake_backend, config_file, tmp_path):
        """Deletions should run before additions."""
        fake_backend.sets = {V4_SET: {"198.51.100.1"}, V6_SET: set()}
        path = self._write(tmp_path, {
            "new": [
                {"type": "ban", "value": "198.51.100.1", "duration": "1h"},
                {"type": "ban", "value": "2001:db8::/64"},
                {"type": "simulation:ban", "value": "192.0.2.9"},
            ],
            "deleted": [{"type": "ban", "value": "198.51.100.1"}],
        })

        result = runner.invoke(app, ["apply", str(path), "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert fake_backend.sets[V4_SET] == {"198.51.100.1"}
        assert fake_backend.sets[V6_SET] == {"2001:db8::/64"}
        verbs = [c[2] for c in fake_backend.calls if c[0] == "/usr/sbin/ipset"]
        assert verbs == ["del", "add", "add"]

    def test_apply_reports_failures(self, fake_backend, config_file, tmp_path):
        """Unrecognized and failing decisions should not stop the batch."""
        fake_backend.sets = {V4_SET: set(), V6_SET: set()}
        path = self._write(tmp_path, {
            "new": [
                {"type": "ban", "value": "localhost"},
                {"type": "ban", "value": "203.0.113.5"},
            ],
        })

        result = runner.invoke(app, ["apply", str(path), "--config", str(config_file)])

        assert result.exit_code == 1
        assert fake_backend.sets[V4_SET] == {"203.0.113.5"}

    def test_apply_numeric_duration(self, fake_backend, config_file, tmp_path):
        """A non-string duration should fail that entry only."""
        fake_backend.sets = {V4_SET: set(), V6_SET: set()}
        path = self._write(tmp_path, {
            "new": [
                {"type": "ban", "value": "192.0.2.1", "duration": 3600},
                {"type": "ban", "value": "192.0.2.2", "duration": "1h"},
            ],
        })

        result = runner.invoke(app, ["apply", str(path), "--config", str(config_file)])

        assert result.exit_code == 1
        assert not isinstance(result.exception, AttributeError)
        assert fake_backend.sets[V4_SET] == {"192.0.2.2"}
        assert "Failed: 1" in result.output

    def test_apply_empty_value(self, fake_backend, config_file, tmp_path):
        """An empty value should count as unrecognized and not stop the batch."""
        fake_backend.sets = {V4_SET: set(), V6_SET: set()}
        path = self._write(tmp_path, {
            "new": [
                {"type": "ban", "value": ""},
                {"type": "ban", "value": "192.0.2.2"},
            ],
        })

        result = runner.invoke(app, ["apply", str(path), "--config", str(config_file)])

        assert result.exit_code == 1
        assert fake_backend.sets[V4_SET] == {"192.0.2.2"}
        assert "Unrecognized: 1" in result.output

    def test_apply_invalid_stream(self, fake_backend, config_file, tmp_path):
        """A malformed stream should exit with the decision error code."""
        path = tmp_path / "decisions.json"
        path.write_text("[1, 2]")

        result = runner.invoke(app, ["apply", str(path), "--config", str(config_file)])

        assert result.exit_code == 20


class TestConfigCommands:
    """Tests for config subcommands."""

    def test_config_init(self, tmp_path):
        """config init should create the file."""
        path = tmp_path / "config.yaml"

        result = runner.invoke(app, ["config", "init", "--config", str(path)])

        assert result.exit_code == 0, result.output
        assert path.exists()

    def test_config_init_exists(self, config_file):
        """config init should refuse to overwrite without --force."""
        result = runner.invoke(app, ["config", "init", "--config", str(config_file)])
        assert result.exit_code == 2

        result = runner.invoke(app, ["config", "init", "--config", str(config_file), "--force"])
        assert result.exit_code == 0

    def test_config_show(self, config_file):
        """config show should print the loaded values."""
        result = runner.invoke(app, ["config", "show", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "iptables_chains" in result.output

    def test_config_example(self):
        """config example should print the template."""
        result = runner.invoke(app, ["config", "example"])

        assert result.exit_code == 0
        assert "crowdsec-blacklists" in result.output

    def test_version(self):
        """--version should print the version."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "bouncer version" in result.output
