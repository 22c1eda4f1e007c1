"""Post-step host reboot policy and the once-per-process restart primitive."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from loguru import logger

from .config import InstallConfig
from .errors import RebootAlreadyPerformed
from .steps import StepId

log = logger


@dataclass(frozen=True)
class RebootPolicy:
    step_ids: frozenset[StepId] = frozenset()

    @classmethod
    def from_ids(cls, ids: Iterable[str]) -> 'RebootPolicy':
        known: set[StepId] = set()
        for raw in ids:
            sid = StepId.parse(str(raw).strip())
            if sid is None:
                log.warning('Ignoring unknown step id in reboot policy: {}', raw)
                continue
            known.add(sid)
        return cls(frozenset(known))

    @classmethod
    def from_config(cls, cfg: InstallConfig) -> 'RebootPolicy':
        if not cfg.enable_auto_reboot:
            return cls()
        return cls.from_ids(cfg.auto_reboot_after_step_ids)

    def __contains__(self, step_id: object) -> bool:
        if isinstance(step_id, str) and not isinstance(step_id, StepId):
            step_id = StepId.parse(step_id)
        return step_id in self.step_ids


class RebootCoordinator:
    """Decides whether a successful step ends in a host restart.

    Example:
        >>> calls = []
        >>> coord = RebootCoordinator(
        ...     RebootPolicy.from_ids(['05_kernel_tuning']),
        ...     reboot_fn=lambda: calls.append('reboot'))
        >>> coord.should_reboot(StepId.KERNEL_TUNING, simulate=True)
        False
        >>> coord.should_reboot(StepId.KERNEL_TUNING, simulate=False)
        True
        >>> coord.trigger(); calls
        ['reboot']
    """

    def __init__(
        self,
        policy: RebootPolicy,
        reboot_fn: Optional[Callable[[], None]] = None,
    ) -> None:
        self.policy = policy
        self._reboot_fn = reboot_fn
        self.triggered = False

    def should_reboot(self, step_id: StepId | str, simulate: bool) -> bool:
        if simulate:
            return False
        return step_id in self.policy

    def trigger(self) -> None:
        if self.triggered:
            raise RebootAlreadyPerformed('Host reboot was already requested')
        if self._reboot_fn is None:
            raise RuntimeError('No reboot primitive configured')
        self.triggered = True
        log.warning('Rebooting host now')
        self._reboot_fn()
