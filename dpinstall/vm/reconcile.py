"""Drive a VM's hardware bindings toward a target and verify the result.

A binding is checked against two views of the domain that can disagree:
the persistent definition (``virsh dumpxml --inactive``) and the live
instance (``virsh dumpxml``, only meaningful while the VM runs). Mutating
calls are never trusted on their own; every attach is followed by a
bounded re-verification, one detach/reattach recovery cycle if needed, and
a final classification into :class:`Outcome`.
"""

from __future__ import annotations

import enum
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Sequence

from loguru import logger

from ..poll import poll_until
from ..runner import CommandRunner
from ..runtime import virsh_system_cmd
from .devices import (
    compare_device_paths,
    disk_sources_in,
    hostdev_xml,
    normalize_pci_address,
    pci_addresses_in,
    vcpu_pins_in,
)
from .domain import VirshDomain

log = logger

FLAGS_BOTH = ('--live', '--config')
FLAGS_LIVE = ('--live',)
FLAGS_CONFIG = ('--config',)


class BindingKind(enum.Enum):
    PCI_HOSTDEV = 'pciHostdev'
    VCPU_PIN = 'vcpuPin'
    BLOCK_DISK = 'blockDisk'


class Outcome(enum.Enum):
    CONSISTENT = 'consistent'
    LIVE_ONLY = 'live_only'
    FAILED = 'failed'


@dataclass(frozen=True)
class Binding:
    """One desired hardware binding for one VM.

    ``target`` is a normalized PCI address (``pciHostdev``), a device path
    (``blockDisk``) or a tuple of ``(vcpu, cpu)`` pairs (``vcpuPin``).
    ``slot`` is the guest target dev of a disk. ``evict`` lists PCI
    addresses that must not stay attached to this VM.
    """

    vm_name: str
    kind: BindingKind
    target: object
    slot: str = ''
    evict: tuple[str, ...] = ()

    @classmethod
    def pci(
        cls, vm_name: str, addr: str, evict: Iterable[str] = ()
    ) -> 'Binding':
        norm = normalize_pci_address(addr)
        others = tuple(
            a for a in (normalize_pci_address(e) for e in evict) if a != norm
        )
        return cls(vm_name, BindingKind.PCI_HOSTDEV, norm, evict=others)

    @classmethod
    def disk(cls, vm_name: str, source: str, slot: str = 'vdb') -> 'Binding':
        return cls(vm_name, BindingKind.BLOCK_DISK, source, slot=slot)

    @classmethod
    def pins(cls, vm_name: str, pins: dict[int, int]) -> 'Binding':
        return cls(vm_name, BindingKind.VCPU_PIN, tuple(sorted(pins.items())))

    def describe(self) -> str:
        if self.kind is BindingKind.BLOCK_DISK:
            return f'{self.vm_name} disk {self.slot}={self.target}'
        if self.kind is BindingKind.VCPU_PIN:
            return f'{self.vm_name} vcpupin x{len(self.target)}'
        return f'{self.vm_name} hostdev {self.target}'


@dataclass(frozen=True)
class VerifyStatus:
    """One verification pass. ``live`` is vacuously true for a stopped VM."""

    running: bool
    live: bool
    config: bool

    @property
    def consistent(self) -> bool:
        return self.config and self.live

    def classify(self) -> Outcome:
        if self.consistent:
            return Outcome.CONSISTENT
        if self.running and self.live:
            return Outcome.LIVE_ONLY
        return Outcome.FAILED


@dataclass(frozen=True)
class BindingReport:
    binding: Binding
    outcome: Outcome
    status: VerifyStatus
    actions: tuple[str, ...] = ()
    simulated: bool = False
    recovered: bool = False
    detail: str = ''

    @property
    def changed(self) -> bool:
        return bool(self.actions)

    def summary(self) -> str:
        text = f'{self.binding.describe()}: {self.outcome.value}'
        if self.simulated:
            text += ' (dry-run)'
        elif not self.changed:
            text += ' (no change)'
        if self.detail:
            text += f' - {self.detail}'
        return text


def _cpuset(text: str) -> set[int]:
    out: set[int] = set()
    for part in (text or '').split(','):
        part = part.strip()
        if not part or part.startswith('^'):
            continue
        if '-' in part:
            lo, hi = part.split('-', 1)
            if lo.isdigit() and hi.isdigit():
                out.update(range(int(lo), int(hi) + 1))
        elif part.isdigit():
            out.add(int(part))
    return out


@contextmanager
def _xml_file(xml: str) -> Iterator[str]:
    with tempfile.NamedTemporaryFile(
        'w', suffix='.xml', prefix='dpinstall-', delete=False
    ) as f:
        f.write(xml)
        path = f.name
    try:
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


class ResourceReconciler:
    """Reconcile :class:`Binding` objects against live and persistent state.

    Args:
        runner: all attach/detach calls go through ``runner.run``; domain
            XML is read through :class:`VirshDomain` (``runner.query``).
        domain: domain inspector; built from ``runner`` when omitted.
        verify_attempts: checks per verification pass.
        verify_interval_s: delay between checks.
        config_grace_attempts: extra checks granted when only the
            persistent definition is still behind.
        sleep: injectable for tests.

    In simulate mode the planned detach/attach commands are issued through
    the runner (and therefore only logged) and verification is skipped,
    since nothing actually changed.
    """

    def __init__(
        self,
        runner: CommandRunner,
        domain: Optional[VirshDomain] = None,
        *,
        verify_attempts: int = 3,
        verify_interval_s: float = 1,
        config_grace_attempts: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner
        self.domain = domain if domain is not None else VirshDomain(runner)
        self.verify_attempts = max(1, verify_attempts)
        self.verify_interval_s = verify_interval_s
        self.config_grace_attempts = max(0, config_grace_attempts)
        self.sleep = sleep

    # -- matching -------------------------------------------------------

    def _matches(self, binding: Binding, xml: str) -> bool:
        if binding.kind is BindingKind.PCI_HOSTDEV:
            return binding.target in pci_addresses_in(xml)
        if binding.kind is BindingKind.BLOCK_DISK:
            current = disk_sources_in(xml).get(binding.slot)
            if not current:
                return False
            return compare_device_paths(current, str(binding.target))
        pins = vcpu_pins_in(xml)
        return all(
            _cpuset(pins.get(vcpu, '')) == {cpu} for vcpu, cpu in binding.target
        )

    def _conflicts(self, binding: Binding, xml: str) -> list[str]:
        """Devices of the same kind occupying what the target needs."""
        if binding.kind is BindingKind.PCI_HOSTDEV:
            present = set(pci_addresses_in(xml))
            return [addr for addr in binding.evict if addr in present]
        if binding.kind is BindingKind.BLOCK_DISK:
            current = disk_sources_in(xml).get(binding.slot)
            if current and not compare_device_paths(
                current, str(binding.target)
            ):
                return [current]
        return []

    def check(self, binding: Binding, running: bool) -> VerifyStatus:
        config = self._matches(binding, self.domain.config_xml(binding.vm_name))
        if running:
            live = self._matches(binding, self.domain.live_xml(binding.vm_name))
        else:
            live = True
        return VerifyStatus(running=running, live=live, config=config)

    # -- mutation primitives --------------------------------------------

    def _issue(
        self,
        binding: Binding,
        op: str,
        flags: Sequence[str],
        actions: list[str],
        device: Optional[str] = None,
    ) -> bool:
        vm = binding.vm_name
        if binding.kind is BindingKind.PCI_HOSTDEV:
            addr = device or str(binding.target)
            verb = 'attach-device' if op == 'attach' else 'detach-device'
            with _xml_file(hostdev_xml(addr)) as path:
                return self._run_all(
                    [virsh_system_cmd(verb, vm, path, *flags)],
                    actions,
                    f'{op} hostdev {addr} {" ".join(flags)}',
                )
        if binding.kind is BindingKind.BLOCK_DISK:
            if op == 'attach':
                cmd = virsh_system_cmd(
                    'attach-disk', vm, str(binding.target), binding.slot, *flags
                )
            else:
                cmd = virsh_system_cmd('detach-disk', vm, binding.slot, *flags)
            label = f'{op} disk {binding.slot} {" ".join(flags)}'
            return self._run_all([cmd], actions, label)
        if op == 'detach':
            # Pins are overwritten in place; there is nothing to remove.
            return True
        cmds = [
            virsh_system_cmd('vcpupin', vm, str(vcpu), str(cpu), *flags)
            for vcpu, cpu in binding.target
        ]
        return self._run_all(cmds, actions, f'vcpupin {" ".join(flags)}')

    def _run_all(
        self, cmds: list[list[str]], actions: list[str], label: str
    ) -> bool:
        ok = True
        for cmd in cmds:
            res = self.runner.run(cmd, check=False)
            if not res.ok:
                log.debug(
                    'virsh returned code={}: {}', res.code, res.stderr.strip()
                )
                ok = False
        actions.append(label if ok else f'{label} (failed)')
        return ok

    def _apply(
        self,
        binding: Binding,
        op: str,
        *,
        live: bool,
        config: bool,
        actions: list[str],
        device: Optional[str] = None,
    ) -> tuple[bool, bool]:
        """Apply ``op`` to the requested sources, strongest primitive first.

        Returns ``(live_ok, config_ok)``; a source that was not requested
        counts as ok.
        """
        if live and config:
            if self._issue(binding, op, FLAGS_BOTH, actions, device):
                return True, True
            log.warning(
                '{}: combined live+config {} failed; trying live then config',
                binding.describe(),
                op,
            )
            live_ok = self._issue(binding, op, FLAGS_LIVE, actions, device)
            config_ok = self._issue(binding, op, FLAGS_CONFIG, actions, device)
            if live_ok and not config_ok:
                log.warning(
                    '{}: live {} succeeded but the persistent definition '
                    'was not updated',
                    binding.describe(),
                    op,
                )
            return live_ok, config_ok
        if live:
            return self._issue(binding, op, FLAGS_LIVE, actions, device), True
        if config:
            return True, self._issue(binding, op, FLAGS_CONFIG, actions, device)
        return True, True

    def _evict_conflicts(
        self, binding: Binding, running: bool, actions: list[str]
    ) -> None:
        vm = binding.vm_name
        in_live = (
            self._conflicts(binding, self.domain.live_xml(vm)) if running else []
        )
        in_config = self._conflicts(binding, self.domain.config_xml(vm))
        if binding.kind is BindingKind.BLOCK_DISK:
            if in_live or in_config:
                log.info(
                    '{}: {} is occupied by {}; detaching it first',
                    vm,
                    binding.slot,
                    ', '.join(sorted(set(in_live + in_config))),
                )
                # Live first, then persistent.
                if in_live:
                    self._apply(
                        binding, 'detach', live=True, config=False,
                        actions=actions,
                    )
                if in_config:
                    self._apply(
                        binding, 'detach', live=False, config=True,
                        actions=actions,
                    )
            return
        for addr in sorted(set(in_live) | set(in_config)):
            log.info('{}: detaching conflicting hostdev {}', vm, addr)
            if addr in in_live:
                self._apply(
                    binding, 'detach', live=True, config=False,
                    actions=actions, device=addr,
                )
            if addr in in_config:
                self._apply(
                    binding, 'detach', live=False, config=True,
                    actions=actions, device=addr,
                )

    # -- verification ----------------------------------------------------

    def _verify(self, binding: Binding, running: bool) -> VerifyStatus:
        last: list[VerifyStatus] = []

        def _ok() -> bool:
            last.append(self.check(binding, running))
            return last[-1].consistent

        poll_until(
            _ok,
            interval_s=self.verify_interval_s,
            max_attempts=self.verify_attempts,
            sleep=self.sleep,
        )
        status = last[-1]
        if (
            not status.consistent
            and status.running
            and status.live
            and self.config_grace_attempts
        ):
            log.info(
                '{}: live state verified, waiting for the persistent '
                'definition to catch up',
                binding.describe(),
            )
            poll_until(
                _ok,
                interval_s=self.verify_interval_s,
                max_attempts=self.config_grace_attempts,
                sleep=self.sleep,
            )
            status = last[-1]
        return status

    # -- public API --------------------------------------------------------

    def reconcile(self, binding: Binding) -> BindingReport:
        vm = binding.vm_name
        simulate = self.runner.simulate
        if not self.domain.exists(vm) and not simulate:
            log.error('{}: VM is not defined; cannot reconcile', vm)
            return BindingReport(
                binding,
                Outcome.FAILED,
                VerifyStatus(running=False, live=False, config=False),
                detail='VM not defined',
            )
        running = self.domain.is_running(vm)
        status = self.check(binding, running)
        if status.consistent:
            log.info('{}: already in place', binding.describe())
            return self._report(binding, status, [], simulated=simulate)

        actions: list[str] = []
        self._evict_conflicts(binding, running, actions)
        self._apply(
            binding,
            'attach',
            live=running and not status.live,
            config=not status.config,
            actions=actions,
        )
        if simulate:
            planned = VerifyStatus(running=running, live=True, config=True)
            return self._report(binding, planned, actions, simulated=True)

        status = self._verify(binding, running)
        recovered = False
        if not status.consistent:
            log.warning(
                '{}: not verified (live={}, config={}); '
                'running one detach/reattach recovery cycle',
                binding.describe(),
                status.live,
                status.config,
            )
            recovered = True
            self._apply(
                binding, 'detach', live=running, config=True, actions=actions
            )
            self._apply(
                binding, 'attach', live=running, config=True, actions=actions
            )
            status = self._verify(binding, running)
        return self._report(binding, status, actions, recovered=recovered)

    def _report(
        self,
        binding: Binding,
        status: VerifyStatus,
        actions: list[str],
        *,
        simulated: bool = False,
        recovered: bool = False,
    ) -> BindingReport:
        outcome = status.classify()
        detail = ''
        if outcome is Outcome.LIVE_ONLY:
            detail = 'persistence pending; applies until the next VM restart'
            log.warning('{}: {}', binding.describe(), detail)
        elif outcome is Outcome.FAILED:
            detail = (
                f'not verified after recovery '
                f'(live={status.live}, config={status.config})'
            )
            log.error('{}: {}', binding.describe(), detail)
        elif actions:
            log.success('{}: consistent', binding.describe())
        return BindingReport(
            binding=binding,
            outcome=outcome,
            status=status,
            actions=tuple(actions),
            simulated=simulated,
            recovered=recovered,
            detail=detail,
        )

    def reconcile_all(self, bindings: Iterable[Binding]) -> list[BindingReport]:
        reports = [self.reconcile(b) for b in bindings]
        counts = {o: 0 for o in Outcome}
        for rep in reports:
            counts[rep.outcome] += 1
        log.info(
            'Reconciled {} binding(s): {} consistent, {} live-only, {} failed',
            len(reports),
            counts[Outcome.CONSISTENT],
            counts[Outcome.LIVE_ONLY],
            counts[Outcome.FAILED],
        )
        return reports


def worst_outcome(reports: Iterable[BindingReport]) -> Outcome:
    order = [Outcome.CONSISTENT, Outcome.LIVE_ONLY, Outcome.FAILED]
    worst = Outcome.CONSISTENT
    for rep in reports:
        if order.index(rep.outcome) > order.index(worst):
            worst = rep.outcome
    return worst
