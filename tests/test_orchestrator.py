"""Tests for the resumable step state machine."""

from __future__ import annotations

from pathlib import Path

from dpinstall.config import InstallConfig
from dpinstall.errors import PreconditionMissing, StepDeclined
from dpinstall.orchestrator import Orchestrator, StepStatus
from dpinstall.reboot import RebootCoordinator, RebootPolicy
from dpinstall.runner import CommandRunner
from dpinstall.state import InstallState, load_state, save_state, state_path
from dpinstall.steps import StepContext, StepId, StepRegistry
from dpinstall.util import CmdError, CmdResult


class ScriptedPrompter:
    def __init__(self, answer: bool = True) -> None:
        self.answer = answer
        self.confirms: list[str] = []
        self.notes: list[str] = []

    def confirm(self, title, message, *, default=False):
        self.confirms.append(title)
        return self.answer

    def ask(self, title, message, *, default=''):
        return default or None

    def choose(self, title, message, options):
        return None

    def notify(self, title, message):
        self.notes.append(title)


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        *,
        simulate: bool = True,
        answer: bool = True,
        reboot_ids: tuple[str, ...] = (),
        overrides: dict | None = None,
        reboot_fn=None,
    ) -> None:
        self.calls: list[str] = []
        self.reboots: list[str] = []
        self.prompter = ScriptedPrompter(answer)
        self.runner = CommandRunner(simulate=simulate)
        self.tmp_path = tmp_path
        overrides = overrides or {}

        def _handler(sid):
            def _run(ctx):
                self.calls.append(sid.value)
                if sid in overrides:
                    return overrides[sid](ctx)
                return 0

            return _run

        self.registry = StepRegistry({sid: _handler(sid) for sid in StepId})
        self.state_path = state_path(tmp_path)
        self.orch = Orchestrator(
            self.registry,
            self.state_path,
            self.make_context,
            RebootCoordinator(
                RebootPolicy.from_ids(reboot_ids),
                reboot_fn=reboot_fn or (lambda: self.reboots.append('reboot')),
            ),
        )

    def make_context(self) -> StepContext:
        return StepContext(
            cfg=InstallConfig(),
            runner=self.runner,
            prompter=self.prompter,
            config_path=self.tmp_path / 'dpinstall.toml',
            state_dir=self.tmp_path,
        )

    def set_state(self, step_id: str) -> None:
        save_state(self.state_path, InstallState(step_id, '2025-01-01 00:00:00'))

    @property
    def last(self) -> str:
        return load_state(self.state_path).last_completed_step_id


def test_scenario_decline_leaves_state_empty(tmp_path: Path) -> None:
    h = Harness(tmp_path, answer=False)
    step = h.orch.next_step()
    assert step.id is StepId.HW_DETECT
    outcome = h.orch.run_step(step)
    assert outcome.status is StepStatus.SKIPPED
    assert h.calls == []
    assert load_state(h.state_path).is_empty

    summary = h.orch.run_pending()
    assert summary.outcomes == ()
    assert load_state(h.state_path).is_empty


def test_success_advances_state_to_most_recent(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    for _ in range(3):
        h.orch.run_step(h.orch.next_step())
    assert h.last == '03_nic_ifupdown'
    assert h.orch.next_step().id is StepId.KVM_LIBVIRT


def test_scenario_reboot_halts_run(tmp_path: Path) -> None:
    h = Harness(tmp_path, simulate=False, reboot_ids=('05_kernel_tuning',))
    h.set_state('04_kvm_libvirt')
    summary = h.orch.run_pending()
    assert h.calls == ['05_kernel_tuning']
    assert h.reboots == ['reboot']
    assert summary.rebooted
    assert h.last == '05_kernel_tuning'
    assert 'Auto Reboot' in h.prompter.notes


def test_reboot_suppressed_when_simulating(tmp_path: Path) -> None:
    h = Harness(tmp_path, simulate=True, reboot_ids=('05_kernel_tuning',))
    h.set_state('04_kvm_libvirt')
    summary = h.orch.run_pending()
    assert h.reboots == []
    assert not summary.rebooted
    assert summary.all_done
    assert h.calls[:2] == ['05_kernel_tuning', '06_ntpsec']


def test_failed_reboot_is_reported_and_halts(tmp_path: Path) -> None:
    def _broken_reboot():
        raise CmdError(
            ['systemctl', 'reboot'], CmdResult(1, '', 'Failed to reboot')
        )

    h = Harness(
        tmp_path,
        simulate=False,
        reboot_ids=('05_kernel_tuning',),
        reboot_fn=_broken_reboot,
    )
    h.set_state('04_kvm_libvirt')
    summary = h.orch.run_pending()
    assert h.calls == ['05_kernel_tuning']
    assert summary.failed
    assert not summary.rebooted
    assert 'automatic reboot failed' in summary.outcomes[-1].detail
    assert 'Failed to reboot' in summary.outcomes[-1].detail
    # The step itself completed, so the resume point moves past it.
    assert h.last == '05_kernel_tuning'


def test_second_run_is_noop(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    first = h.orch.run_from(h.orch.next_index())
    assert first.all_done
    assert len(h.calls) == 13
    second = h.orch.run_from(h.orch.next_index())
    assert second.outcomes == ()
    assert second.all_done
    assert len(h.calls) == 13
    summary = h.orch.run_pending()
    assert summary.all_done
    assert len(h.calls) == 13


def test_unknown_state_restarts_from_first(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.set_state('99_from_the_future')
    assert h.orch.next_index() == 0
    assert h.orch.next_step().id is StepId.HW_DETECT


def test_failed_step_stops_run_and_keeps_state(tmp_path: Path) -> None:
    def _fail(ctx):
        raise CmdError('apt-get install', CmdResult(100, '', 'boom'))

    h = Harness(tmp_path, overrides={StepId.KVM_LIBVIRT: _fail})
    summary = h.orch.run_pending()
    assert summary.failed
    assert summary.outcomes[-1].step.id is StepId.KVM_LIBVIRT
    assert h.calls[-1] == '04_kvm_libvirt'
    assert h.last == '03_nic_ifupdown'
    assert 'STEP Failed - 04_kvm_libvirt' in h.prompter.notes


def test_nonzero_return_is_failure(tmp_path: Path) -> None:
    h = Harness(tmp_path, overrides={StepId.HW_DETECT: lambda ctx: 1})
    outcome = h.orch.run_step(h.orch.next_step())
    assert outcome.failed
    assert load_state(h.state_path).is_empty


def test_precondition_and_decline_skip_and_continue(tmp_path: Path) -> None:
    def _missing(ctx):
        raise PreconditionMissing('dp_version is not set')

    def _declined(ctx):
        raise StepDeclined('canceled')

    h = Harness(
        tmp_path,
        overrides={
            StepId.HW_DETECT: _missing,
            StepId.HWE_KERNEL: _declined,
        },
    )
    summary = h.orch.run_from(0)
    statuses = [o.status for o in summary.outcomes]
    assert statuses[:2] == [StepStatus.SKIPPED, StepStatus.SKIPPED]
    assert statuses[2:] == [StepStatus.SUCCEEDED] * 11
    assert summary.all_done


def test_out_of_order_run_does_not_record(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    h.set_state('02_hwe_kernel')
    lvm = h.registry.get(StepId.LVM_STORAGE)
    outcome = h.orch.run_selected(lvm)
    assert outcome.status is StepStatus.SUCCEEDED
    assert h.last == '02_hwe_kernel'

    nxt = h.registry.get(StepId.NIC_IFUPDOWN)
    h.orch.run_selected(nxt)
    assert h.last == '03_nic_ifupdown'
