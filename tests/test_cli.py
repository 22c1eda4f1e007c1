"""Tests for the installer command line."""

from __future__ import annotations

import importlib
from pathlib import Path

import pytest
from loguru import logger

from dpinstall.cli import InstallerModalCLI, main
from dpinstall.cli.config import (
    ConfigSetCLI,
    ConfigShowCLI,
    ConfigToggleDryRunCLI,
)
from dpinstall.cli.main import (
    ReconcileCLI,
    RunCLI,
    StepCLI,
    StepsCLI,
    _count_verbose,
    _normalize_argv,
)
from dpinstall.config import config_path, load_config
from dpinstall.handlers.passthrough import BindingPlan
from dpinstall.state import InstallState, load_state, save_state, state_path
from dpinstall.steps import StepId, StepRegistry

# ``dpinstall.cli.main`` as an attribute path resolves to the re-exported
# ``main`` function, so patch the submodule object explicitly.
_cli_main_mod = importlib.import_module('dpinstall.cli.main')


def _fake_registry(calls: list[str], fail: StepId | None = None):
    def _handler(sid):
        def _run(ctx):
            calls.append(sid.value)
            assert ctx.runner.simulate
            return 1 if sid is fail else 0

        return _run

    return lambda: StepRegistry({sid: _handler(sid) for sid in StepId})


def test_config_set_show_and_toggle(tmp_path: Path, capsys) -> None:
    sdir = str(tmp_path)
    rc = ConfigSetCLI.main(
        argv=False, state_dir=sdir, key='acps_password', value='hunter2'
    )
    assert rc == 0
    rc = ConfigSetCLI.main(
        argv=False, state_dir=sdir, key='dl_vcpus', value='40'
    )
    assert rc == 0
    cfg = load_config(config_path(tmp_path))
    assert cfg.acps_password == 'hunter2'
    assert cfg.dl_vcpus == 40

    capsys.readouterr()
    assert ConfigShowCLI.main(argv=False, state_dir=sdir) == 0
    out = capsys.readouterr().out
    assert 'hunter2' not in out
    assert 'acps_password = "******"' in out
    assert 'dl_vcpus = 40' in out

    assert ConfigToggleDryRunCLI.main(argv=False, state_dir=sdir) == 0
    assert 'DRY_RUN=0 (REAL execution)' in capsys.readouterr().out
    assert load_config(config_path(tmp_path)).dry_run is False


def test_config_set_rejects_bad_input(tmp_path: Path, capsys) -> None:
    sdir = str(tmp_path)
    rc = ConfigSetCLI.main(argv=False, state_dir=sdir, key='nope', value='1')
    assert rc == 2
    rc = ConfigSetCLI.main(
        argv=False, state_dir=sdir, key='dl_vcpus', value='lots'
    )
    assert rc == 2
    assert 'Invalid value' in capsys.readouterr().err
    assert not config_path(tmp_path).exists()


def test_steps_listing_marks_progress(tmp_path: Path, capsys) -> None:
    save_state(
        state_path(tmp_path),
        InstallState('02_hwe_kernel', '2025-01-01 00:00:00'),
    )
    assert StepsCLI.main(argv=False, state_dir=str(tmp_path)) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith('✅ done')
    assert lines[2].startswith('▶  next')
    assert '03_nic_ifupdown' in lines[2]
    assert lines[3].strip().startswith('pending')


def test_steps_listing_restarts_on_unknown_state(
    tmp_path: Path, capsys
) -> None:
    save_state(
        state_path(tmp_path),
        InstallState('99_future_step', '2025-01-01 00:00:00'),
    )
    assert StepsCLI.main(argv=False, state_dir=str(tmp_path)) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith('▶  next')
    assert '01_hw_detect' in lines[0]
    assert not any(line.startswith('✅') for line in lines)


def test_run_yes_completes_all_steps_in_dry_run(
    monkeypatch, tmp_path: Path, capsys
) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        'dpinstall.cli._common.build_registry', _fake_registry(calls)
    )
    rc = RunCLI.main(argv=False, state_dir=str(tmp_path), yes=True)
    assert rc == 0
    assert len(calls) == 13
    assert load_state(state_path(tmp_path)).last_completed_step_id == (
        '13_install_dp_cli'
    )
    assert 'All steps are completed.' in capsys.readouterr().out

    rc = RunCLI.main(argv=False, state_dir=str(tmp_path), yes=True)
    assert rc == 0
    assert len(calls) == 13


def test_run_reports_failed_step(monkeypatch, tmp_path: Path) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        'dpinstall.cli._common.build_registry',
        _fake_registry(calls, fail=StepId.KVM_LIBVIRT),
    )
    rc = RunCLI.main(argv=False, state_dir=str(tmp_path), yes=True)
    assert rc == 1
    assert calls[-1] == '04_kvm_libvirt'
    assert load_state(state_path(tmp_path)).last_completed_step_id == (
        '03_nic_ifupdown'
    )


def test_step_by_ordinal_and_unknown(monkeypatch, tmp_path: Path) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        _cli_main_mod, 'build_registry', _fake_registry(calls)
    )
    rc = StepCLI.main(argv=False, state_dir=str(tmp_path), step='99', yes=True)
    assert rc == 2
    rc = StepCLI.main(argv=False, state_dir=str(tmp_path), step='7', yes=True)
    assert rc == 0
    assert calls == ['07_lvm_storage']
    # Out of order: the install state does not advance.
    assert load_state(state_path(tmp_path)).is_empty


def test_reconcile_prints_plan_notes(
    monkeypatch, tmp_path: Path, capsys
) -> None:
    monkeypatch.setattr(
        _cli_main_mod, 'build_bindings',
        lambda cfg, runner, domain: BindingPlan(
            notes=['da-master: no VF available; passthrough skipped']
        ),
    )
    rc = ReconcileCLI.main(argv=False, state_dir=str(tmp_path), yes=True)
    assert rc == 0
    assert 'no VF available' in capsys.readouterr().out


def test_modal_cli_positional_step(monkeypatch, tmp_path: Path) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        _cli_main_mod, 'build_registry', _fake_registry(calls)
    )
    rc = InstallerModalCLI.main(
        argv=['step', '2', '--yes', '--state_dir', str(tmp_path)],
        _noexit=True,
    )
    assert (0 if rc is None else int(rc)) == 0
    assert calls == ['02_hwe_kernel']


def test_main_exit_codes(tmp_path: Path, capsys) -> None:
    try:
        with pytest.raises(SystemExit) as info:
            main(['state-dir', '--state_dir', str(tmp_path)])
        assert info.value.code == 0
        assert str(tmp_path) in capsys.readouterr().out
        assert (tmp_path / 'install.log').exists()
    finally:
        logger.remove()


def test_argv_helpers() -> None:
    assert _normalize_argv(['config', 'toggle-dry-run']) == [
        'config',
        'toggle_dry_run',
    ]
    assert _normalize_argv(['ls', '-v']) == ['steps', '-v']
    assert _count_verbose(['run', '-vv', '--verbose']) == 3
    assert _count_verbose(['run', '--yes']) == 0
