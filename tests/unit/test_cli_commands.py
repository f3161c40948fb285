from __future__ import annotations

import json
import logging
import re
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fakes import BASIC_YAML
from typer.testing import CliRunner

from lab_provisioner.cli import app
from lab_provisioner.core.state import ResourceInstance, State
from lab_provisioner.engine.errors import (
    ApplyError,
    ConfigError,
    DestructiveChangeError,
    DuplicateExportError,
    PlanError,
    StateLockError,
    ValidationError,
)
from lab_provisioner.engine.types import (
    Action,
    ApplyResult,
    OperationFailure,
    Plan,
    PlanMetadata,
    ResourceChange,
)

runner = CliRunner()

_META = PlanMetadata(
    stack="homelab",
    destroy=False,
    refresh=True,
    state_lineage="lineage-1",
    state_serial=0,
    state_digest="digest",
    config_digest="cdigest",
    engine_version="0.1.0",
)

_NOOP_PLAN = Plan(
    metadata=_META,
    changes=[
        ResourceChange(
            address="vm.k3s-master-01",
            kind="vm",
            resource_type="proxmox_vm",
            action=Action.NOOP,
        )
    ],
)

_CREATE_PLAN = Plan(
    metadata=_META,
    changes=[
        ResourceChange(
            address="vm.k3s-worker-02",
            kind="vm",
            resource_type="proxmox_vm",
            action=Action.CREATE,
            planned={"vmid": 212, "ip": "192.168.1.32"},
        )
    ],
)


def _strip_ansi(text: str) -> str:
    return re.sub(r"\x1b\[[0-9;]*m", "", text)


def _mock_config() -> MagicMock:
    cfg = MagicMock()
    cfg.stack = "homelab"
    cfg.state_path = Path(".lab-state.json")
    return cfg


class TestVersion:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "lab-provisioner" in result.stdout

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert "lab-provisioner" in result.stdout


class TestPlanCommand:
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_plan_error_names_phase(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.side_effect = PlanError(
            "Resource 'vm.k3s-master-01' is protected and cannot be replaced"
        )

        result = runner.invoke(app, ["plan", "--no-color"])
        assert result.exit_code == 1
        assert "Plan error: Resource 'vm.k3s-master-01' is protected" in result.output

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_no_changes_exits_0(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _NOOP_PLAN

        result = runner.invoke(app, ["plan", "--no-color", "--config", "lab.yaml"])
        assert result.exit_code == 0
        assert "No changes" in result.stdout
        mock_load.assert_called_once_with(Path("lab.yaml"))

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_changes_exits_2(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN

        result = runner.invoke(app, ["plan", "--no-color"])
        assert result.exit_code == 2
        assert "vm.k3s-worker-02 will be created" in result.stdout
        assert "Plan: 1 to add, 0 to change, 0 to destroy." in result.stdout

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_default_config_path(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _NOOP_PLAN

        runner.invoke(app, ["plan", "--no-color"])
        mock_load.assert_called_once_with(Path("lab-provisioner.yaml"))

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_out_saves_plan(
        self, mock_load: MagicMock, mock_plan: MagicMock, tmp_path: Path
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN
        out_file = tmp_path / "plan.json"

        result = runner.invoke(app, ["plan", "--no-color", "--out", str(out_file)])
        assert result.exit_code == 2
        assert Plan.load(out_file).changes == _CREATE_PLAN.changes
        assert "Plan saved" in result.stdout

    @patch("lab_provisioner.config.load")
    def test_config_error_exits_1(self, mock_load: MagicMock) -> None:
        mock_load.side_effect = ConfigError("bad config")

        result = runner.invoke(app, ["plan", "--no-color"])
        assert result.exit_code == 1
        assert "Configuration error: bad config" in result.output

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_validation_error_lists_every_problem(
        self, mock_load: MagicMock, mock_plan: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.side_effect = ValidationError(["vmid 201 collides", "ip out of range"])

        result = runner.invoke(app, ["plan", "--no-color"])
        assert result.exit_code == 1
        assert "  - vmid 201 collides" in result.output
        assert "  - ip out of range" in result.output

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_no_refresh_flag(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _NOOP_PLAN

        runner.invoke(app, ["plan", "--no-color", "--no-refresh"])
        mock_plan.assert_called_once()
        _, kwargs = mock_plan.call_args
        assert kwargs["refresh"] is False


class TestApplyCommand:
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_no_changes_message(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _NOOP_PLAN

        result = runner.invoke(app, ["apply", "--no-color"])
        assert result.exit_code == 0
        assert "No changes" in result.stdout

    @patch("lab_provisioner.config.apply")
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_auto_approve_skips_prompt(
        self, mock_load: MagicMock, mock_plan: MagicMock, mock_apply: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN
        mock_apply.return_value = ApplyResult(applied=_CREATE_PLAN.changes)

        result = runner.invoke(app, ["apply", "--no-color", "--auto-approve"])
        assert result.exit_code == 0
        assert "Apply complete! Resources: 1 added, 0 changed, 0 destroyed." in result.stdout

    @patch("lab_provisioner.config.apply")
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_apply_options_passed_through(
        self, mock_load: MagicMock, mock_plan: MagicMock, mock_apply: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN
        mock_apply.return_value = ApplyResult(applied=_CREATE_PLAN.changes)

        result = runner.invoke(
            app,
            [
                "apply",
                "--no-color",
                "--auto-approve",
                "--allow-replace",
                "--continue-on-error",
                "-p",
                "4",
                "--timeout",
                "300",
            ],
        )
        assert result.exit_code == 0
        _, kwargs = mock_apply.call_args
        assert kwargs["allow_replace"] is True
        assert kwargs["continue_on_error"] is True
        assert kwargs["parallelism"] == 4
        assert kwargs["timeout"] == 300.0
        assert callable(kwargs["progress"])

    @patch("lab_provisioner.config.load")
    def test_parallelism_must_be_positive(self, mock_load: MagicMock) -> None:
        mock_load.return_value = _mock_config()

        result = runner.invoke(app, ["apply", "--no-color", "--parallelism", "0"])
        assert result.exit_code == 2
        mock_load.assert_not_called()

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_user_decline_aborts(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN

        result = runner.invoke(app, ["apply", "--no-color"], input="n\n")
        assert result.exit_code == 1
        assert "Apply canceled." in result.output

    @patch("lab_provisioner.config.apply")
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_saved_plan_file(
        self,
        mock_load: MagicMock,
        mock_plan: MagicMock,
        mock_apply: MagicMock,
        tmp_path: Path,
    ) -> None:
        plan_file = tmp_path / "plan.json"
        _CREATE_PLAN.save(plan_file)
        mock_load.return_value = _mock_config()
        mock_apply.return_value = ApplyResult(applied=_CREATE_PLAN.changes)

        result = runner.invoke(app, ["apply", str(plan_file), "--no-color", "--auto-approve"])
        assert result.exit_code == 0
        mock_plan.assert_not_called()
        applied_plan = mock_apply.call_args.args[0]
        assert applied_plan.changes == _CREATE_PLAN.changes

    @patch("lab_provisioner.config.apply")
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_replacement_refused(
        self, mock_load: MagicMock, mock_plan: MagicMock, mock_apply: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN
        mock_apply.side_effect = DestructiveChangeError(["vm.k3s-worker-02"])

        result = runner.invoke(app, ["apply", "--no-color", "--auto-approve"])
        assert result.exit_code == 1
        assert "Refusing to apply: vm.k3s-worker-02 must be replaced" in result.output
        assert "--allow-replace" in result.output

    @patch("lab_provisioner.config.apply")
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_apply_error_shows_partial(
        self, mock_load: MagicMock, mock_plan: MagicMock, mock_apply: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN
        change = _CREATE_PLAN.changes[0]
        mock_apply.side_effect = ApplyError(
            ApplyResult(
                applied=[],
                failures=[
                    OperationFailure(
                        address=change.address,
                        kind="vm",
                        name="k3s-worker-02",
                        action=Action.CREATE,
                        message="clone failed",
                    )
                ],
            )
        )

        result = runner.invoke(app, ["apply", "--no-color", "--auto-approve"])
        assert result.exit_code == 1
        assert "Apply failed" in result.output
        assert "0 of 1 operations applied." in result.output
        assert "failed: vm.k3s-worker-02 (create): clone failed" in result.output

    @patch("lab_provisioner.config.apply")
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_lock_error(
        self, mock_load: MagicMock, mock_plan: MagicMock, mock_apply: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN
        mock_apply.side_effect = StateLockError("held by pid 4242")

        result = runner.invoke(app, ["apply", "--no-color", "--auto-approve"])
        assert result.exit_code == 1
        assert "State lock error: held by pid 4242" in result.output

    @patch("lab_provisioner.config.apply")
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_export_conflict_shows_phase_and_partial(
        self, mock_load: MagicMock, mock_plan: MagicMock, mock_apply: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN
        err = DuplicateExportError("controlPlaneIP", "192.168.1.21", "192.168.1.22")
        err.result = ApplyResult(applied=_CREATE_PLAN.changes)
        mock_apply.side_effect = err

        result = runner.invoke(app, ["apply", "--no-color", "--auto-approve"])
        assert result.exit_code == 1
        assert "Apply failed: Export 'controlPlaneIP' already set" in result.output
        assert "1 of 1 operations applied." in result.output


class TestDestroyCommand:
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_no_resources_exits_0(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _NOOP_PLAN

        result = runner.invoke(app, ["destroy", "--no-color"])
        assert result.exit_code == 0
        assert "No resources to destroy" in result.stdout
        _, kwargs = mock_plan.call_args
        assert kwargs["destroy"] is True

    @patch("lab_provisioner.config.apply")
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_auto_approve_works(
        self, mock_load: MagicMock, mock_plan: MagicMock, mock_apply: MagicMock
    ) -> None:
        delete_plan = Plan(
            metadata=_META,
            changes=[
                ResourceChange(
                    address="vm.k3s-worker-01",
                    kind="vm",
                    resource_type="proxmox_vm",
                    action=Action.DELETE,
                    prior={"vmid": 211},
                )
            ],
        )
        mock_load.return_value = _mock_config()
        mock_plan.return_value = delete_plan
        mock_apply.return_value = ApplyResult(applied=delete_plan.changes)

        result = runner.invoke(app, ["destroy", "--no-color", "--auto-approve"])
        assert result.exit_code == 0
        assert "vm.k3s-worker-01 will be destroyed" in result.stdout
        assert "0 added, 0 changed, 1 destroyed" in result.stdout

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_protected_resources_listed(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        retained_plan = Plan(
            metadata=_META, changes=_CREATE_PLAN.changes, retained=["vm.k3s-master-01"]
        )
        mock_load.return_value = _mock_config()
        mock_plan.return_value = retained_plan

        result = runner.invoke(app, ["destroy", "--no-color"], input="n\n")
        assert "vm.k3s-master-01 is protected and will be kept" in result.stdout


class TestRefreshCommand:
    _UPDATE_CHANGE = ResourceChange(
        address="vm.k3s-worker-01",
        kind="vm",
        resource_type="proxmox_vm",
        action=Action.UPDATE,
        prior={"cores": 2},
        planned={"cores": 4},
        diff={"cores": {"from": 2, "to": 4}},
    )

    @staticmethod
    def _mock_state(n: int) -> MagicMock:
        state = MagicMock()
        state.resources = {f"vm.r{i}": None for i in range(n)}
        return state

    @patch("lab_provisioner.config.save_state")
    @patch("lab_provisioner.config.refresh")
    @patch("lab_provisioner.config.load")
    def test_no_changes_exits_0(
        self, mock_load: MagicMock, mock_refresh: MagicMock, mock_save: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_refresh.return_value = ([], self._mock_state(2))

        result = runner.invoke(app, ["refresh", "--no-color"])
        assert result.exit_code == 0
        assert "up-to-date" in result.stdout
        mock_save.assert_not_called()

    @patch("lab_provisioner.config.save_state")
    @patch("lab_provisioner.config.refresh")
    @patch("lab_provisioner.config.load")
    def test_auto_approve_skips_prompt(
        self, mock_load: MagicMock, mock_refresh: MagicMock, mock_save: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_refresh.return_value = ([self._UPDATE_CHANGE], self._mock_state(1))

        result = runner.invoke(app, ["refresh", "--no-color", "--auto-approve"])
        assert result.exit_code == 0
        assert "State refreshed. 1 resource tracked." in result.stdout
        mock_save.assert_called_once()

    @patch("lab_provisioner.config.save_state")
    @patch("lab_provisioner.config.refresh")
    @patch("lab_provisioner.config.load")
    def test_user_decline_aborts(
        self, mock_load: MagicMock, mock_refresh: MagicMock, mock_save: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_refresh.return_value = ([self._UPDATE_CHANGE], self._mock_state(1))

        result = runner.invoke(app, ["refresh", "--no-color"], input="n\n")
        assert result.exit_code == 1
        mock_save.assert_not_called()

    @patch("lab_provisioner.config.save_state")
    @patch("lab_provisioner.config.refresh")
    @patch("lab_provisioner.config.load")
    def test_shows_drift_before_confirm(
        self, mock_load: MagicMock, mock_refresh: MagicMock, _mock_save: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_refresh.return_value = ([self._UPDATE_CHANGE], self._mock_state(1))

        result = runner.invoke(app, ["refresh", "--no-color", "--auto-approve"])
        assert "vm.k3s-worker-01" in result.stdout
        assert "Refresh: " in result.stdout
        assert "1 to change" in result.stdout


class TestDriftCommand:
    @patch("lab_provisioner.config.drift")
    @patch("lab_provisioner.config.load")
    def test_no_drift_exits_0(self, mock_load: MagicMock, mock_drift: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_drift.return_value = []

        result = runner.invoke(app, ["drift", "--no-color"])
        assert result.exit_code == 0
        assert "No drift detected" in result.stdout

    @patch("lab_provisioner.config.drift")
    @patch("lab_provisioner.config.load")
    def test_drift_exits_2(self, mock_load: MagicMock, mock_drift: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_drift.return_value = [TestRefreshCommand._UPDATE_CHANGE]

        result = runner.invoke(app, ["drift", "--no-color"])
        assert result.exit_code == 2
        assert "Drift detected" in result.stdout
        assert "cores = 2 -> 4" in result.stdout


class TestValidateCommand:
    @patch("lab_provisioner.config.validate")
    @patch("lab_provisioner.config.load")
    def test_valid_config(self, mock_load: MagicMock, mock_validate: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_validate.return_value.resources = (object(), object())

        result = runner.invoke(app, ["validate", "--no-color"])
        assert result.exit_code == 0
        assert "Configuration is valid. 2 resources declared." in result.stdout

    @patch("lab_provisioner.config.validate")
    @patch("lab_provisioner.config.load")
    def test_validation_error(self, mock_load: MagicMock, mock_validate: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_validate.side_effect = ValidationError(["vms[0] (a): malformed IPv4 address"])

        result = runner.invoke(app, ["validate", "--no-color"])
        assert result.exit_code == 1
        assert "Validation failed" in result.output
        assert "malformed IPv4 address" in result.output

    def test_real_config_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "lab.yaml"
        config_file.write_text(BASIC_YAML)

        result = runner.invoke(app, ["validate", "--no-color", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "2 resources declared" in result.stdout
        assert not (tmp_path / ".lab-state.json").exists()


class TestOutputCommand:
    @patch("lab_provisioner.config.outputs")
    @patch("lab_provisioner.config.load")
    def test_no_outputs(self, mock_load: MagicMock, mock_outputs: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_outputs.return_value = {}

        result = runner.invoke(app, ["output", "--no-color"])
        assert result.exit_code == 0
        assert "No outputs" in result.stdout

    @patch("lab_provisioner.config.outputs")
    @patch("lab_provisioner.config.load")
    def test_text_outputs(self, mock_load: MagicMock, mock_outputs: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_outputs.return_value = {"nodeName": "pve", "controlPlaneIP": "192.168.1.21"}

        result = runner.invoke(app, ["output", "--no-color"])
        assert result.stdout.splitlines() == [
            'controlPlaneIP = "192.168.1.21"',
            'nodeName       = "pve"',
        ]

    @patch("lab_provisioner.config.outputs")
    @patch("lab_provisioner.config.load")
    def test_json_outputs(self, mock_load: MagicMock, mock_outputs: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_outputs.return_value = {"nodeName": "pve", "controlPlaneIP": "192.168.1.21"}

        result = runner.invoke(app, ["output", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {
            "controlPlaneIP": "192.168.1.21",
            "nodeName": "pve",
        }


class TestInventoryCommand:
    @staticmethod
    def _write_project(tmp_path: Path) -> Path:
        config_file = tmp_path / "lab.yaml"
        config_file.write_text(BASIC_YAML)
        state = State(
            stack="homelab",
            resources={
                "vm.k3s-master-01": ResourceInstance(
                    address="vm.k3s-master-01",
                    kind="vm",
                    resource_type="proxmox_vm",
                    name="k3s-master-01",
                    attributes={"name": "k3s-master-01", "ip": "192.168.1.21", "role": "server"},
                )
            },
        )
        state.save(tmp_path / ".lab-state.json")
        return config_file

    def test_prints_inventory(self, tmp_path: Path) -> None:
        config_file = self._write_project(tmp_path)

        result = runner.invoke(app, ["inventory", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "control_plane:" in result.stdout
        assert "ansible_host: 192.168.1.21" in result.stdout

    def test_writes_inventory_file(self, tmp_path: Path) -> None:
        config_file = self._write_project(tmp_path)
        out = tmp_path / "ansible" / "hosts.yaml"

        result = runner.invoke(app, ["inventory", "-c", str(config_file), "--out", str(out)])
        assert result.exit_code == 0
        assert "Inventory written to" in result.stdout
        assert "k3s-master-01" in out.read_text()

    def test_missing_config_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["inventory", "-c", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestColorOutput:
    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_no_color_env(
        self, mock_load: MagicMock, mock_plan: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("NO_COLOR", "1")
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN

        result = runner.invoke(app, ["plan"], color=True)
        assert result.stdout == _strip_ansi(result.stdout)

    @patch("lab_provisioner.config.plan")
    @patch("lab_provisioner.config.load")
    def test_color_by_default(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = _mock_config()
        mock_plan.return_value = _CREATE_PLAN

        result = runner.invoke(app, ["plan"], color=True)
        assert "\x1b[" in result.stdout
        assert "vm.k3s-worker-02 will be created" in _strip_ansi(result.stdout)


@pytest.fixture(autouse=False)
def _reset_pkg_logger():
    """Reset logger levels touched by the logging tests."""
    yield
    for name in ("lab_provisioner", "urllib3", "proxmoxer", "linode_api4"):
        logging.getLogger(name).setLevel(logging.NOTSET)


@pytest.mark.usefixtures("_reset_pkg_logger")
class TestConfigureLogging:
    """Unit-test ``_configure_logging`` by mocking ``logging.basicConfig``.

    Pytest's logging plugin installs a handler on the root logger, so the
    assertions target the ``basicConfig`` call and the package logger level.
    """

    @patch("logging.basicConfig")
    def test_verbose_flag_configures_info(self, mock_bc: MagicMock) -> None:
        from lab_provisioner.cli import _LOG_FORMAT, _configure_logging

        _configure_logging(1)
        mock_bc.assert_called_once_with(
            level=logging.WARNING,
            format=_LOG_FORMAT,
            stream=sys.stderr,
            force=True,
        )
        assert logging.getLogger("lab_provisioner").level == logging.INFO

    @patch("logging.basicConfig")
    def test_double_verbose_configures_debug(self, mock_bc: MagicMock) -> None:
        from lab_provisioner.cli import _configure_logging

        _configure_logging(2)
        mock_bc.assert_called_once()
        assert logging.getLogger("lab_provisioner").level == logging.DEBUG

    @patch("logging.basicConfig")
    def test_no_verbose_stays_unconfigured(self, mock_bc: MagicMock) -> None:
        from lab_provisioner.cli import _configure_logging

        _configure_logging(0)
        mock_bc.assert_not_called()

    @patch("logging.basicConfig")
    def test_lab_log_env_var(self, mock_bc: MagicMock, monkeypatch: pytest.MonkeyPatch) -> None:
        from lab_provisioner.cli import _configure_logging

        monkeypatch.setenv("LAB_LOG", "debug")
        _configure_logging(0)
        mock_bc.assert_called_once()
        assert logging.getLogger("lab_provisioner").level == logging.DEBUG

    @patch("logging.basicConfig")
    def test_lab_log_overrides_verbose(
        self, mock_bc: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from lab_provisioner.cli import _configure_logging

        monkeypatch.setenv("LAB_LOG", "WARNING")
        _configure_logging(2)
        mock_bc.assert_called_once()
        assert logging.getLogger("lab_provisioner").level == logging.WARNING

    @patch("logging.basicConfig")
    def test_invalid_lab_log_warns_and_defaults_to_info(
        self,
        mock_bc: MagicMock,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        from lab_provisioner.cli import _configure_logging

        monkeypatch.setenv("LAB_LOG", "BOGUS")
        _configure_logging(0)
        mock_bc.assert_called_once()
        assert logging.getLogger("lab_provisioner").level == logging.INFO
        assert "invalid LAB_LOG level" in capsys.readouterr().err

    @patch("logging.basicConfig")
    def test_triple_verbose_enables_client_loggers(self, mock_bc: MagicMock) -> None:
        from lab_provisioner.cli import _configure_logging

        _configure_logging(3)
        mock_bc.assert_called_once()
        assert logging.getLogger("proxmoxer").level == logging.DEBUG
        assert logging.getLogger("urllib3").level == logging.DEBUG

    @patch("logging.basicConfig")
    @patch("lab_provisioner.config.outputs")
    @patch("lab_provisioner.config.load")
    def test_verbose_cli_flag(
        self, mock_load: MagicMock, mock_outputs: MagicMock, mock_bc: MagicMock
    ) -> None:
        mock_load.return_value = _mock_config()
        mock_outputs.return_value = {}

        result = runner.invoke(app, ["-vv", "output"])
        assert result.exit_code == 0
        mock_bc.assert_called_once()
        assert logging.getLogger("lab_provisioner").level == logging.DEBUG
