"""Step identifiers, the ordered step registry, and the per-step context."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .config import InstallConfig, save_config
from .prompt import Prompter
from .runner import CommandRunner


class StepId(str, enum.Enum):
    """Stable step ids. Persisted in the state file; never renamed or reused."""

    HW_DETECT = '01_hw_detect'
    HWE_KERNEL = '02_hwe_kernel'
    NIC_IFUPDOWN = '03_nic_ifupdown'
    KVM_LIBVIRT = '04_kvm_libvirt'
    KERNEL_TUNING = '05_kernel_tuning'
    NTPSEC = '06_ntpsec'
    LVM_STORAGE = '07_lvm_storage'
    LIBVIRT_HOOKS = '08_libvirt_hooks'
    DP_DOWNLOAD = '09_dp_download'
    DL_MASTER_DEPLOY = '10_dl_master_deploy'
    DA_MASTER_DEPLOY = '11_da_master_deploy'
    SRIOV_CPU_AFFINITY = '12_sriov_cpu_affinity'
    INSTALL_DP_CLI = '13_install_dp_cli'

    @classmethod
    def parse(cls, value: str) -> Optional['StepId']:
        try:
            return cls(value)
        except ValueError:
            return None


DISPLAY_NAMES: dict[StepId, str] = {
    StepId.HW_DETECT: 'Hardware / NIC / Disk Detection and Selection',
    StepId.HWE_KERNEL: 'HWE Kernel Installation',
    StepId.NIC_IFUPDOWN: 'NIC Naming/ifupdown Transition and Network Configuration',
    StepId.KVM_LIBVIRT: 'KVM / Libvirt Installation and Basic Configuration',
    StepId.KERNEL_TUNING: 'Kernel Parameters / KSM / Swap Tuning',
    StepId.NTPSEC: 'SR-IOV Driver (iavf) + NTPsec Configuration',
    StepId.LVM_STORAGE: 'LVM Storage (DL/DA root + data)',
    StepId.LIBVIRT_HOOKS: 'libvirt hooks and OOM Recovery Scripts',
    StepId.DP_DOWNLOAD: 'DP Image and Deployment Script Download',
    StepId.DL_MASTER_DEPLOY: 'DL-master VM Deployment',
    StepId.DA_MASTER_DEPLOY: 'DA-master VM Deployment',
    StepId.SRIOV_CPU_AFFINITY: 'SR-IOV / CPU Affinity / PCI Passthrough',
    StepId.INSTALL_DP_CLI: 'Install DP Appliance CLI package',
}


@dataclass
class StepContext:
    """Everything a step handler may touch.

    Handlers read settings from ``cfg`` and perform every host mutation via
    ``runner``; they never look at the dry-run flag themselves.
    """

    cfg: InstallConfig
    runner: CommandRunner
    prompter: Prompter
    config_path: Path
    state_dir: Path
    domain: Any = None

    def update_config(self, **changes: Any) -> InstallConfig:
        self.cfg = self.cfg.with_changes(**changes)
        save_config(self.config_path, self.cfg)
        return self.cfg


Handler = Callable[[StepContext], Optional[int]]


@dataclass(frozen=True)
class Step:
    id: StepId
    ordinal: int
    display_name: str
    handler: Handler = field(compare=False, repr=False)

    @property
    def title(self) -> str:
        return f'{self.ordinal:02d}. {self.display_name}'


class StepRegistry:
    """Ordered, immutable list of steps built from a typed handler map.

    Example:
        >>> reg = StepRegistry({sid: (lambda ctx: 0) for sid in StepId})
        >>> reg.resume_index(''), reg.resume_index('02_hwe_kernel')
        (0, 2)
        >>> reg.after(StepId.HWE_KERNEL).id.value
        '03_nic_ifupdown'
        >>> reg.after(StepId.INSTALL_DP_CLI) is None
        True
    """

    def __init__(
        self,
        handlers: Mapping[StepId, Handler],
        order: Optional[list[StepId]] = None,
    ) -> None:
        order = list(order or StepId)
        if len(set(order)) != len(order):
            raise ValueError('Step order contains duplicate ids')
        missing = [sid.value for sid in order if sid not in handlers]
        if missing:
            raise ValueError(f'No handler registered for steps: {missing}')
        extra = [sid for sid in handlers if sid not in order]
        if extra:
            raise ValueError(f'Handlers registered for unknown steps: {extra}')
        self._steps: tuple[Step, ...] = tuple(
            Step(
                id=sid,
                ordinal=idx + 1,
                display_name=DISPLAY_NAMES.get(sid, sid.value),
                handler=handlers[sid],
            )
            for idx, sid in enumerate(order)
        )
        self._index = {step.id: idx for idx, step in enumerate(self._steps)}

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self):
        return iter(self._steps)

    def __getitem__(self, idx: int) -> Step:
        return self._steps[idx]

    def index_of(self, step_id: str | StepId) -> int:
        """Position of ``step_id``, or -1 if it is not a known step."""
        sid = step_id if isinstance(step_id, StepId) else StepId.parse(step_id)
        if sid is None:
            return -1
        return self._index.get(sid, -1)

    def get(self, step_id: str | StepId) -> Optional[Step]:
        idx = self.index_of(step_id)
        return None if idx < 0 else self._steps[idx]

    def after(self, step_id: str | StepId) -> Optional[Step]:
        idx = self.index_of(step_id)
        if idx < 0 or idx + 1 >= len(self._steps):
            return None
        return self._steps[idx + 1]

    def resume_index(self, last_completed: str) -> int:
        """Position of the step after ``last_completed``.

        An empty or unknown id resumes from the first step.
        """
        idx = self.index_of(last_completed) if last_completed else -1
        return idx + 1

    def resolve(self, key: str) -> Optional[Step]:
        """Look a step up by id (``07_lvm_storage``) or ordinal (``7``)."""
        key = key.strip()
        if key.isdigit():
            ordinal = int(key)
            if 1 <= ordinal <= len(self._steps):
                return self._steps[ordinal - 1]
            return None
        return self.get(key)
