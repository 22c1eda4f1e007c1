"""Device identities: PCI addresses, block-device paths, and domain XML views."""

from __future__ import annotations

import os
import re
import stat
import xml.etree.ElementTree as ET
from typing import Optional

from loguru import logger

from ..runner import CommandRunner

log = logger

_PCI_FULL = re.compile(
    r'^([0-9a-fA-F]{4}):([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.([0-7])$'
)
_PCI_SHORT = re.compile(r'^([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.([0-7])$')


def normalize_pci_address(addr: str) -> str:
    """Return ``dddd:bb:ss.f`` for a full or bus-relative PCI address.

    Example:
        >>> normalize_pci_address('8B:11.0')
        '0000:8b:11.0'
        >>> normalize_pci_address('0000:8b:11.1')
        '0000:8b:11.1'
    """
    text = (addr or '').strip()
    m = _PCI_FULL.match(text)
    if m:
        domain, bus, slot, func = m.groups()
    else:
        m = _PCI_SHORT.match(text)
        if not m:
            raise ValueError(f'Unsupported PCI address format: {addr!r}')
        domain = '0000'
        bus, slot, func = m.groups()
    return f'{domain}:{bus}:{slot}.{func}'.lower()


def pci_parts(addr: str) -> tuple[int, int, int, int]:
    norm = normalize_pci_address(addr)
    domain, bus, rest = norm.split(':')
    slot, func = rest.split('.')
    return int(domain, 16), int(bus, 16), int(slot, 16), int(func, 16)


def _canonical(path: str) -> Optional[str]:
    if not path or not os.path.exists(path):
        return None
    return os.path.realpath(path)


def _device_number(path: str) -> Optional[tuple[int, int]]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not (stat.S_ISBLK(st.st_mode) or stat.S_ISCHR(st.st_mode)):
        return None
    return os.major(st.st_rdev), os.minor(st.st_rdev)


def compare_device_paths(a: str, b: str) -> bool:
    """True when ``a`` and ``b`` name the same device.

    Checked in order: resolved symlink targets, then the device's
    major:minor pair, then plain string equality (for paths that do not
    exist yet, such as dry-run placeholders).
    """
    ca, cb = _canonical(a), _canonical(b)
    if ca is not None and cb is not None and ca == cb:
        return True
    na, nb = _device_number(a), _device_number(b)
    if na is not None and nb is not None and na == nb:
        return True
    return a == b


def discover_virtual_functions(runner: CommandRunner) -> list[str]:
    """PCI addresses of SR-IOV Ethernet VFs, in lspci enumeration order."""
    res = runner.query(['lspci', '-D'])
    if not res.ok:
        log.warning('lspci failed (code={}); no VFs detected', res.code)
        return []
    found: list[str] = []
    for line in res.stdout.splitlines():
        if 'Ethernet' not in line or 'Virtual Function' not in line:
            continue
        token = line.split(None, 1)[0] if line.strip() else ''
        try:
            found.append(normalize_pci_address(token))
        except ValueError:
            log.debug('Skipping unparsable lspci line: {}', line)
    return found


def hostdev_xml(addr: str) -> str:
    domain, bus, slot, func = pci_parts(addr)
    return (
        "<hostdev mode='subsystem' type='pci' managed='yes'>\n"
        "  <driver name='vfio'/>\n"
        '  <source>\n'
        f"    <address domain='0x{domain:04x}' bus='0x{bus:02x}' "
        f"slot='0x{slot:02x}' function='0x{func:x}'/>\n"
        '  </source>\n'
        '</hostdev>\n'
    )


def _parse(xml: str) -> Optional[ET.Element]:
    if not xml or not xml.strip():
        return None
    try:
        return ET.fromstring(xml)
    except ET.ParseError:
        return None


def pci_addresses_in(xml: str) -> list[str]:
    """Source addresses of all PCI hostdevs in a domain XML document."""
    root = _parse(xml)
    if root is None:
        return []
    out: list[str] = []
    for hd in root.findall('./devices/hostdev'):
        if hd.attrib.get('type') != 'pci':
            continue
        addr = hd.find('./source/address')
        if addr is None:
            continue
        try:
            parts = [
                int(addr.attrib.get(key, '0'), 0)
                for key in ('domain', 'bus', 'slot', 'function')
            ]
        except ValueError:
            continue
        out.append('{:04x}:{:02x}:{:02x}.{:x}'.format(*parts))
    return out


def disk_sources_in(xml: str) -> dict[str, str]:
    """Map of target dev (``vdb``) to source path for every disk."""
    root = _parse(xml)
    if root is None:
        return {}
    out: dict[str, str] = {}
    for disk in root.findall('./devices/disk'):
        tgt = disk.find('target')
        src = disk.find('source')
        dev = tgt.attrib.get('dev', '') if tgt is not None else ''
        if not dev:
            continue
        path = ''
        if src is not None:
            path = src.attrib.get('dev') or src.attrib.get('file') or ''
        out[dev] = path
    return out


def vcpu_pins_in(xml: str) -> dict[int, str]:
    """Map of vCPU index to cpuset from ``<cputune><vcpupin>``."""
    root = _parse(xml)
    if root is None:
        return {}
    out: dict[int, str] = {}
    for pin in root.findall('./cputune/vcpupin'):
        vcpu = pin.attrib.get('vcpu', '')
        if vcpu.isdigit():
            out[int(vcpu)] = pin.attrib.get('cpuset', '')
    return out
