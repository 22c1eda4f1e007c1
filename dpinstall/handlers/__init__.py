"""Step handlers, keyed by :class:`~dpinstall.steps.StepId`."""

from __future__ import annotations

from ..steps import Handler, StepId, StepRegistry
from .appliance import install_dp_cli
from .deploy import da_master_deploy, dl_master_deploy, dp_download, libvirt_hooks
from .host_prep import (
    hw_detect,
    hwe_kernel,
    kernel_tuning,
    kvm_libvirt,
    nic_ifupdown,
    ntpsec,
)
from .passthrough import build_bindings, sriov_cpu_affinity
from .storage import lvm_storage

STEP_HANDLERS: dict[StepId, Handler] = {
    StepId.HW_DETECT: hw_detect,
    StepId.HWE_KERNEL: hwe_kernel,
    StepId.NIC_IFUPDOWN: nic_ifupdown,
    StepId.KVM_LIBVIRT: kvm_libvirt,
    StepId.KERNEL_TUNING: kernel_tuning,
    StepId.NTPSEC: ntpsec,
    StepId.LVM_STORAGE: lvm_storage,
    StepId.LIBVIRT_HOOKS: libvirt_hooks,
    StepId.DP_DOWNLOAD: dp_download,
    StepId.DL_MASTER_DEPLOY: dl_master_deploy,
    StepId.DA_MASTER_DEPLOY: da_master_deploy,
    StepId.SRIOV_CPU_AFFINITY: sriov_cpu_affinity,
    StepId.INSTALL_DP_CLI: install_dp_cli,
}


def build_registry() -> StepRegistry:
    return StepRegistry(STEP_HANDLERS)


__all__ = ['STEP_HANDLERS', 'build_bindings', 'build_registry']
