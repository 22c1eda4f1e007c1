"""Probe and rendering logic for the installer validation summary."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import InstallConfig
from .host import check_commands
from .runner import CommandRunner
from .state import InstallState
from .steps import StepRegistry
from .vm.devices import disk_sources_in, pci_addresses_in, vcpu_pins_in
from .vm.domain import VirshDomain


@dataclass(frozen=True)
class ProbeOutcome:
    ok: bool | None
    detail: str


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


def probe_kvm(dev: Path = Path('/dev/kvm')) -> ProbeOutcome:
    if dev.exists():
        return ProbeOutcome(True, f'{dev} present')
    return ProbeOutcome(False, f'{dev} missing (virtualization disabled?)')


def probe_libvirtd(runner: CommandRunner) -> ProbeOutcome:
    res = runner.query(['systemctl', 'is-active', 'libvirtd'])
    state = (res.stdout or res.stderr).strip() or 'unknown'
    return ProbeOutcome(res.ok, f'libvirtd {state}')


def probe_vm(domain: VirshDomain, name: str) -> ProbeOutcome:
    if not domain.exists(name):
        return ProbeOutcome(None, f'{name} not defined')
    state = domain.state(name) or 'unknown'
    return ProbeOutcome(state == 'running', f'{name} state={state}')


def probe_vm_bindings(
    domain: VirshDomain, name: str, *, expect_disk: Optional[str] = None
) -> ProbeOutcome:
    """Presence of hostdev / cputune (and the data disk) in the definition."""
    xml = domain.config_xml(name)
    if not xml:
        return ProbeOutcome(None, f'{name} definition unavailable')
    parts = []
    hostdevs = pci_addresses_in(xml)
    pins = vcpu_pins_in(xml)
    parts.append(f'hostdev={",".join(hostdevs) or "none"}')
    parts.append(f'vcpupin={len(pins)}')
    ok = bool(hostdevs) and bool(pins)
    if expect_disk:
        src = disk_sources_in(xml).get(expect_disk, '')
        parts.append(f'{expect_disk}={src or "none"}')
        ok = ok and bool(src)
    return ProbeOutcome(ok, ' '.join(parts))


def render_status(
    cfg: InstallConfig,
    state: InstallState,
    registry: StepRegistry,
    runner: CommandRunner,
    *,
    config_path: Path,
) -> str:
    lines: list[str] = [
        '🧭 DP Installer Status',
        f'📄 Config: {config_path}',
        f'🔧 DRY_RUN={int(cfg.dry_run)}  DP_VERSION={cfg.dp_version}',
        '',
    ]
    if state.is_empty:
        lines.append(status_line(None, 'Progress', 'no step completed yet'))
    else:
        step = registry.get(state.last_completed_step_id)
        name = step.title if step else state.last_completed_step_id
        all_done = step is not None and registry.after(step.id) is None
        lines.append(
            status_line(
                all_done,
                'Progress',
                f'last completed {name} at {state.last_run_at}',
            )
        )

    missing, missing_opt = check_commands()
    host_detail = (
        'all required commands found'
        if not missing
        else f'missing: {", ".join(missing)}'
    )
    if missing_opt:
        host_detail += f' (optional missing: {", ".join(missing_opt)})'
    lines.append(status_line(not missing, 'Host dependencies', host_detail))

    kvm = probe_kvm()
    lines.append(status_line(kvm.ok, 'KVM device', kvm.detail))
    libvirtd = probe_libvirtd(runner)
    lines.append(status_line(libvirtd.ok, 'libvirtd', libvirtd.detail))

    domain = VirshDomain(runner)
    for name, disk in ((cfg.dl_hostname, 'vdb'), (cfg.da_hostname, None)):
        vm = probe_vm(domain, name)
        lines.append(status_line(vm.ok, f'VM {name}', vm.detail))
        if vm.ok is None:
            continue
        binds = probe_vm_bindings(domain, name, expect_disk=disk)
        lines.append(status_line(binds.ok, f'{name} bindings', binds.detail))
    return '\n'.join(lines)
