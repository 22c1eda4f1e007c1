"""Step 12: SR-IOV VF passthrough, vCPU pinning and the DL data disk.

The hardware bindings are computed by :func:`build_bindings` and applied
by :class:`~dpinstall.vm.reconcile.ResourceReconciler`; the standalone
``dpinstall reconcile`` command reuses the same plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from ..config import InstallConfig
from ..errors import DPInstallError
from ..host import host_cpu_count
from ..runner import CommandRunner
from ..runtime import virsh_system_cmd
from ..steps import StepContext
from ..vm.cpupin import cpu_pin_lists, format_pins, pin_plan
from ..vm.devices import discover_virtual_functions, normalize_pci_address
from ..vm.domain import VirshDomain
from ..vm.reconcile import (
    Binding,
    BindingReport,
    Outcome,
    ResourceReconciler,
    worst_outcome,
)
from ._common import path_exists

log = logger

DATA_DISK_SLOT = 'vdb'
CDROM_SLOT = 'hda'
NUMA_NODESET = '0-1'


@dataclass
class BindingPlan:
    bindings: list[Binding] = field(default_factory=list)
    vms: list[str] = field(default_factory=list)
    vfs: dict[str, str] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)


def assign_vfs(cfg: InstallConfig, discovered: list[str]) -> dict[str, str]:
    """Return ``{vm_name: vf_address}`` for the DL and DA VMs.

    Addresses pinned in ``dl_vf_pci`` / ``da_vf_pci`` win. Otherwise VFs are
    taken in enumeration order, skipping any address already pinned.
    """
    pinned = {
        cfg.dl_hostname: cfg.dl_vf_pci,
        cfg.da_hostname: cfg.da_vf_pci,
    }
    out: dict[str, str] = {}
    for vm, addr in pinned.items():
        if addr:
            out[vm] = normalize_pci_address(addr)
    pool = [a for a in discovered if a not in out.values()]
    positional = []
    for vm in (cfg.dl_hostname, cfg.da_hostname):
        if vm in out or not pool:
            continue
        out[vm] = pool.pop(0)
        positional.append(vm)
    if positional:
        log.warning(
            'VFs for {} were assigned by lspci enumeration order, which may '
            'change across reboots; set dl_vf_pci/da_vf_pci to pin them',
            ', '.join(positional),
        )
    return out


def build_bindings(
    cfg: InstallConfig,
    runner: CommandRunner,
    domain: VirshDomain,
    *,
    vfs: list[str] | None = None,
) -> BindingPlan:
    """Target hardware bindings for the defined VMs, in reconciliation order.

    A VM that is not defined gets no bindings, and the DL data disk is
    skipped while its logical volume does not exist; both are noted.
    """
    plan = BindingPlan()
    if vfs is None:
        vfs = discover_virtual_functions(runner)
    plan.vfs = assign_vfs(cfg, vfs)
    for vm in (cfg.dl_hostname, cfg.da_hostname):
        if domain.exists(vm):
            plan.vms.append(vm)
        else:
            plan.notes.append(f'{vm}: VM not defined; bindings skipped')
    assigned = list(plan.vfs.values())

    for vm in plan.vms:
        addr = plan.vfs.get(vm)
        if addr is None:
            plan.notes.append(f'{vm}: no VF available; passthrough skipped')
            continue
        others = [a for a in assigned if a != addr]
        plan.bindings.append(Binding.pci(vm, addr, evict=others))

    dl_cpus, da_cpus = cpu_pin_lists(host_cpu_count(runner))
    for vm, cpus, configured in (
        (cfg.dl_hostname, dl_cpus, cfg.dl_vcpus),
        (cfg.da_hostname, da_cpus, cfg.da_vcpus),
    ):
        if vm not in plan.vms:
            continue
        vcpus = domain.vcpu_count(vm) or configured
        pins = pin_plan(vm, vcpus, cpus)
        if not pins:
            plan.notes.append(f'{vm}: no host CPUs left for pinning')
            continue
        log.info('{} CPU pinning: {}', vm, format_pins(pins))
        plan.bindings.append(Binding.pins(vm, pins))

    if cfg.dl_hostname in plan.vms:
        if path_exists(runner, cfg.dl_data_lv):
            plan.bindings.append(
                Binding.disk(cfg.dl_hostname, cfg.dl_data_lv, DATA_DISK_SLOT)
            )
        else:
            plan.notes.append(
                f'{cfg.dl_hostname}: {cfg.dl_data_lv} not found; '
                'data disk attach skipped'
            )
    for note in plan.notes:
        log.warning(note)
    return plan


def render_reports(reports: list[BindingReport]) -> str:
    icons = {
        Outcome.CONSISTENT: '✅',
        Outcome.LIVE_ONLY: '⚠️',
        Outcome.FAILED: '❌',
    }
    return '\n'.join(f'{icons[r.outcome]} {r.summary()}' for r in reports)


def sriov_cpu_affinity(ctx: StepContext) -> int:
    cfg = ctx.cfg
    runner = ctx.runner
    domain = ctx.domain or VirshDomain(runner)
    vms = [cfg.dl_hostname, cfg.da_hostname]

    vfs = discover_virtual_functions(runner)
    if not vfs and not (cfg.dl_vf_pci or cfg.da_vf_pci):
        raise DPInstallError(
            'No SR-IOV virtual functions found; check cltr0 and sriov_numvfs'
        )
    log.info('Detected VFs: {}', ', '.join(vfs) or '(none)')
    if len(vfs) == 1 and not (cfg.dl_vf_pci and cfg.da_vf_pci):
        log.warning('Only one VF detected; only {} gets passthrough', vms[0])

    pending = domain.request_shutdown(vms)
    if pending:
        domain.wait_all_shut_off(pending)

    plan = build_bindings(cfg, runner, domain, vfs=vfs)
    for vm in plan.vms:
        runner.try_run(
            virsh_system_cmd('detach-disk', vm, CDROM_SLOT, '--config')
        )

    reconciler = ResourceReconciler(runner, domain)
    reports = reconciler.reconcile_all(plan.bindings)

    for vm in plan.vms:
        runner.try_run(
            virsh_system_cmd(
                'numatune', vm, '--mode', 'interleave',
                '--nodeset', NUMA_NODESET, '--config',
            )
        )
    for vm in plan.vms:
        if not domain.start(vm):
            log.warning('{} did not start; check `virsh start {}`', vm, vm)

    lines = [render_reports(reports)] if reports else []
    lines += [f'➖ {note}' for note in plan.notes]
    ctx.prompter.notify('STEP 12 Result', '\n'.join(lines))
    worst = worst_outcome(reports)
    if worst is Outcome.FAILED:
        log.error('One or more hardware bindings could not be verified')
        return 1
    return 0
