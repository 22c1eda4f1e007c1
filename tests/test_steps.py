from __future__ import annotations

import pytest

from dpinstall.config import InstallConfig
from dpinstall.errors import RebootAlreadyPerformed
from dpinstall.handlers import STEP_HANDLERS, build_registry
from dpinstall.reboot import RebootCoordinator, RebootPolicy
from dpinstall.steps import StepId, StepRegistry


def _noop(ctx):
    return 0


def test_registry_order_and_lookup() -> None:
    reg = build_registry()
    assert len(reg) == 13
    assert [s.ordinal for s in reg] == list(range(1, 14))
    assert reg[0].id is StepId.HW_DETECT
    assert reg.get('12_sriov_cpu_affinity').title.startswith('12. ')
    assert reg.resolve('7').id is StepId.LVM_STORAGE
    assert reg.resolve('13_install_dp_cli').id is StepId.INSTALL_DP_CLI
    assert reg.resolve('14') is None
    assert reg.resolve('99_future_step') is None
    assert reg.index_of('99_future_step') == -1
    assert reg.after(StepId.INSTALL_DP_CLI) is None
    assert reg.resume_index('') == 0
    assert reg.resume_index('05_kernel_tuning') == 5
    assert reg.resume_index('99_future_step') == 0
    assert reg.resume_index('13_install_dp_cli') == len(reg)


def test_every_step_id_has_a_handler() -> None:
    assert set(STEP_HANDLERS) == set(StepId)


def test_registry_rejects_missing_handlers() -> None:
    handlers = {sid: _noop for sid in StepId if sid is not StepId.NTPSEC}
    with pytest.raises(ValueError):
        StepRegistry(handlers)


def test_registry_rejects_duplicate_order() -> None:
    handlers = {sid: _noop for sid in StepId}
    with pytest.raises(ValueError):
        StepRegistry(handlers, order=[StepId.HW_DETECT, StepId.HW_DETECT])


def test_should_reboot_never_when_simulating() -> None:
    policy = RebootPolicy.from_ids([sid.value for sid in StepId])
    coord = RebootCoordinator(policy, reboot_fn=lambda: None)
    for sid in StepId:
        assert coord.should_reboot(sid, simulate=True) is False
        assert coord.should_reboot(sid, simulate=False) is True


def test_reboot_policy_from_config() -> None:
    cfg = InstallConfig().with_changes(
        auto_reboot_after_step_ids=('05_kernel_tuning', 'bogus')
    )
    policy = RebootPolicy.from_config(cfg)
    assert StepId.KERNEL_TUNING in policy
    assert '05_kernel_tuning' in policy
    assert StepId.NIC_IFUPDOWN not in policy
    disabled = RebootPolicy.from_config(
        cfg.with_changes(enable_auto_reboot=False)
    )
    assert StepId.KERNEL_TUNING not in disabled


def test_reboot_fires_at_most_once() -> None:
    calls = []
    coord = RebootCoordinator(
        RebootPolicy.from_ids(['03_nic_ifupdown']),
        reboot_fn=lambda: calls.append('reboot'),
    )
    coord.trigger()
    with pytest.raises(RebootAlreadyPerformed):
        coord.trigger()
    assert calls == ['reboot']
