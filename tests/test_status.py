"""Tests for the validation summary probes and rendering."""

from __future__ import annotations

from pathlib import Path

from dpinstall.config import InstallConfig
from dpinstall.handlers import build_registry
from dpinstall.state import InstallState
from dpinstall.status import (
    ProbeOutcome,
    probe_vm,
    probe_vm_bindings,
    render_status,
    status_line,
)
from dpinstall.util import CmdResult
from dpinstall.vm.domain import VirshDomain


def test_status_line_icons() -> None:
    assert status_line(True, 'KVM') == '✅ KVM'
    assert status_line(False, 'KVM', 'missing') == '❌ KVM - missing'
    assert status_line(None, 'VM') == '➖ VM'


def test_probe_vm_and_bindings(virsh) -> None:
    dom = virsh.add('dl-master', running=False)
    dom.config.hostdevs = ['0000:8b:11.0']
    dom.config.pins = {0: 4}
    domain = VirshDomain(virsh)

    assert probe_vm(domain, 'ghost').ok is None
    vm = probe_vm(domain, 'dl-master')
    assert vm.ok is False
    assert 'state=shut off' in vm.detail

    binds = probe_vm_bindings(domain, 'dl-master', expect_disk='vdb')
    assert binds.ok is False
    assert 'vdb=none' in binds.detail
    dom.config.disks['vdb'] = '/dev/mapper/vg_dl-lv_dl'
    assert probe_vm_bindings(domain, 'dl-master', expect_disk='vdb').ok


def test_render_status(monkeypatch, virsh) -> None:
    monkeypatch.setattr('dpinstall.status.check_commands', lambda: ([], []))
    monkeypatch.setattr(
        'dpinstall.status.probe_kvm',
        lambda: ProbeOutcome(True, '/dev/kvm present'),
    )
    virsh.other['systemctl'] = CmdResult(0, 'active\n', '')
    virsh.add('dl-master', running=True)
    text = render_status(
        InstallConfig(),
        InstallState('13_install_dp_cli', '2025-05-01 10:00:00'),
        build_registry(),
        virsh,
        config_path=Path('/tmp/dpinstall.toml'),
    )
    lines = text.splitlines()
    assert lines[0] == '🧭 DP Installer Status'
    assert '✅ Progress - last completed 13. ' in text
    assert '✅ libvirtd - libvirtd active' in lines
    assert '✅ VM dl-master - dl-master state=running' in lines
    assert '➖ VM da-master - da-master not defined' in lines
    assert any(line.startswith('❌ dl-master bindings') for line in lines)


def test_render_status_empty_state(monkeypatch, virsh) -> None:
    monkeypatch.setattr('dpinstall.status.check_commands', lambda: (['virsh'], []))
    text = render_status(
        InstallConfig(),
        InstallState(),
        build_registry(),
        virsh,
        config_path=Path('/tmp/x.toml'),
    )
    assert '➖ Progress - no step completed yet' in text
    assert '❌ Host dependencies - missing: virsh' in text
