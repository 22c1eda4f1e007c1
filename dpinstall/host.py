"""Host inspection helpers: required tools, NICs, disks, CPUs, reboot."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from loguru import logger

from .runner import CommandRunner
from .util import which

log = logger

REQUIRED_CMDS = ['virsh', 'lspci', 'lsblk', 'ip', 'systemctl']
OPTIONAL_CMDS = ['ethtool', 'virt-install', 'lvcreate']

# Virtual and bridge interfaces never qualify as physical NIC choices.
_NIC_EXCLUDE = re.compile(r'^(lo|virbr|vnet|tap|docker|br-|ovs)')


@dataclass(frozen=True)
class NicInfo:
    name: str
    speed: str = 'Unknown'
    duplex: str = 'Unknown'
    addresses: str = '(no ip)'

    def label(self) -> str:
        return (
            f'{self.name}  speed={self.speed}, duplex={self.duplex}, '
            f'ip={self.addresses}'
        )


@dataclass(frozen=True)
class DiskInfo:
    name: str
    size: str
    model: str = ''

    def label(self) -> str:
        return f'{self.name}  {self.size}_{self.model}'.rstrip('_')


def check_commands() -> tuple[list[str], list[str]]:
    missing = [c for c in REQUIRED_CMDS if which(c) is None]
    missing_opt = [c for c in OPTIONAL_CMDS if which(c) is None]
    return missing, missing_opt


def host_cpu_count(runner: CommandRunner | None = None) -> int:
    if runner is not None:
        res = runner.query(['nproc'])
        if res.ok and res.stdout.strip().isdigit():
            return int(res.stdout.strip())
    return os.cpu_count() or 0


def nic_names(runner: CommandRunner) -> list[str]:
    res = runner.query(['ip', '-o', 'link', 'show'])
    names: list[str] = []
    for line in res.stdout.splitlines():
        parts = line.split(': ')
        if len(parts) < 2:
            continue
        name = parts[1].split('@', 1)[0].strip()
        if name and not _NIC_EXCLUDE.match(name):
            names.append(name)
    return names


def nic_candidates(runner: CommandRunner) -> list[NicInfo]:
    out = []
    for name in nic_names(runner):
        addr_res = runner.query(['ip', '-o', 'addr', 'show', 'dev', name])
        addrs = [
            line.split()[3]
            for line in addr_res.stdout.splitlines()
            if len(line.split()) > 3
        ]
        speed = duplex = 'Unknown'
        eth = runner.query(['ethtool', name])
        for line in eth.stdout.splitlines():
            key, _, value = line.strip().partition(': ')
            if key == 'Speed' and value:
                speed = value.strip()
            elif key == 'Duplex' and value:
                duplex = value.strip()
        out.append(
            NicInfo(name, speed, duplex, ','.join(addrs) or '(no ip)')
        )
    return out


def root_disk(runner: CommandRunner) -> str:
    src = runner.query(['findmnt', '-no', 'SOURCE', '/']).stdout.strip()
    if not src:
        return ''
    res = runner.query(['lsblk', '-no', 'PKNAME', src])
    return res.stdout.strip().splitlines()[0] if res.stdout.strip() else ''


def disk_candidates(runner: CommandRunner) -> list[DiskInfo]:
    """Whole physical disks, excluding the one holding ``/``."""
    skip = root_disk(runner)
    res = runner.query(['lsblk', '-dn', '-o', 'NAME,SIZE,TYPE,MODEL'])
    disks: list[DiskInfo] = []
    for line in res.stdout.splitlines():
        parts = line.split(None, 3)
        if len(parts) < 3 or parts[2] != 'disk':
            continue
        name, size = parts[0], parts[1]
        if skip and name == skip:
            log.debug('Excluding OS disk {} from data disk candidates', name)
            continue
        model = parts[3].strip().replace(' ', '_') if len(parts) > 3 else ''
        disks.append(DiskInfo(name, size, model))
    return disks


def reboot_host(runner: CommandRunner) -> None:
    runner.run(['systemctl', 'reboot'])


def ipv4_address(runner: CommandRunner, nic: str) -> str:
    """First IPv4 address of ``nic`` in CIDR form, or ``''``."""
    res = runner.query(['ip', '-o', '-4', 'addr', 'show', 'dev', nic])
    for line in res.stdout.splitlines():
        parts = line.split()
        if len(parts) > 3:
            return parts[3]
    return ''
