"""Host preparation steps 01-06: hardware selection, kernel, network, KVM."""

from __future__ import annotations

import ipaddress

from loguru import logger

from ..errors import DPInstallError, PreconditionMissing
from ..host import disk_candidates, ipv4_address, nic_candidates
from ..steps import StepContext
from ._common import ask, choose, confirm, read_text, require

log = logger

HWE_PACKAGE = 'linux-generic-hwe-24.04'
UDEV_RULES = '/etc/udev/rules.d/99-custom-ifnames.rules'
IFACE_FILE = '/etc/network/interfaces'
IFACE_DIR = '/etc/network/interfaces.d'
HOSTMGMT_ADDRESS = '192.168.0.100'
HOSTMGMT_NETMASK = '255.255.255.0'
SRIOV_NUM_VFS = 2
GRUB_FILE = '/etc/default/grub'
IOMMU_ARGS = 'intel_iommu=on iommu=pt'
SYSCTL_FILE = '/etc/sysctl.d/90-dpinstall.conf'
QEMU_DEFAULT = '/etc/default/qemu-kvm'
SYSCTL_SETTINGS = {
    'net.ipv4.conf.all.arp_filter': '1',
    'net.ipv4.conf.default.arp_filter': '1',
    'net.ipv4.conf.all.arp_announce': '2',
    'net.ipv4.conf.default.arp_announce': '2',
    'net.ipv4.conf.all.arp_ignore': '2',
    'net.ipv4.conf.all.ignore_routes_with_linkdown': '1',
    'vm.min_free_kbytes': '1048576',
    'net.ipv4.ip_forward': '1',
}


def hw_detect(ctx: StepContext) -> int:
    cfg = ctx.cfg
    if cfg.mgt_nic and cfg.cltr0_nic and cfg.host_nic and cfg.data_ssd_list:
        if ctx.prompter.confirm(
            'STEP 01 - Reuse Existing Selection',
            f'mgt NIC: {cfg.mgt_nic}\ncltr0 NIC: {cfg.cltr0_nic}\n'
            f'host NIC: {cfg.host_nic}\n'
            f'data disks: {" ".join(cfg.data_ssd_list)}\n\n'
            'Reuse these values and skip reselection?',
        ):
            log.info('Reusing existing STEP 01 selection')
            return 0

    nics = nic_candidates(ctx.runner)
    if not nics:
        raise PreconditionMissing('No NIC candidates found; check `ip link`')
    labels = [n.label() for n in nics]
    mgt = nics[
        choose(
            ctx,
            'STEP 01 - Select mgt NIC',
            f'Current: {cfg.mgt_nic or "<none>"}',
            labels,
        )
    ].name
    cltr0 = nics[
        choose(
            ctx,
            'STEP 01 - Select cltr0 NIC',
            'Cluster / SR-IOV NIC. Prefer a NIC other than mgt.',
            labels,
        )
    ].name
    if cltr0 == mgt:
        confirm(
            ctx,
            'Warning',
            'mgt NIC and cltr0 NIC are the same. This is not recommended.\n'
            'Continue anyway?',
        )
    host = nics[
        choose(
            ctx,
            'STEP 01 - Select Host Access NIC',
            f'Gets {HOSTMGMT_ADDRESS}/24 without gateway.',
            labels,
        )
    ].name
    if host in (mgt, cltr0):
        raise DPInstallError(
            f'host NIC {host} must differ from mgt ({mgt}) and cltr0 ({cltr0})'
        )

    disks = disk_candidates(ctx.runner)
    if not disks:
        raise PreconditionMissing('No data disks available besides the OS disk')
    known = {d.name for d in disks}
    listing = '\n'.join(d.label() for d in disks)
    raw = ask(
        ctx,
        'STEP 01 - Select Data Disks',
        f'Available disks:\n{listing}\n\nData disk names (space separated)',
        default=' '.join(n for n in cfg.data_ssd_list if n in known),
    )
    selected = [n for n in raw.replace(',', ' ').split() if n]
    unknown = [n for n in selected if n not in known]
    if unknown:
        raise DPInstallError(f'Unknown data disks: {unknown}')

    cfg = ctx.update_config(
        mgt_nic=mgt,
        cltr0_nic=cltr0,
        host_nic=host,
        data_ssd_list=tuple(selected),
    )
    ctx.prompter.notify(
        'STEP 01 Complete',
        f'mgt NIC: {cfg.mgt_nic}\ncltr0 NIC: {cfg.cltr0_nic}\n'
        f'host NIC: {cfg.host_nic}\ndata disks: {" ".join(cfg.data_ssd_list)}',
    )
    return 0


def hwe_kernel(ctx: StepContext) -> int:
    runner = ctx.runner
    if runner.query(['dpkg', '-s', HWE_PACKAGE]).ok:
        if ctx.prompter.confirm(
            'STEP 02 - HWE Kernel Already Installed',
            f'{HWE_PACKAGE} is already installed. Skip this step?',
        ):
            return 0
    env = ['env', 'DEBIAN_FRONTEND=noninteractive']
    runner.run(['apt-get', 'update'])
    runner.run([*env, 'apt-get', 'full-upgrade', '-y'])
    runner.run([*env, 'apt-get', 'install', '-y', HWE_PACKAGE])
    return 0


def _nic_pci(ctx: StepContext, nic: str) -> str:
    res = ctx.runner.query(['readlink', '-f', f'/sys/class/net/{nic}/device'])
    return res.stdout.strip().rsplit('/', 1)[-1] if res.ok else ''


def nic_ifupdown(ctx: StepContext) -> int:
    cfg = ctx.cfg
    require(mgt_nic=cfg.mgt_nic, cltr0_nic=cfg.cltr0_nic, host_nic=cfg.host_nic)
    pci = {
        nic: _nic_pci(ctx, nic)
        for nic in (cfg.mgt_nic, cfg.cltr0_nic, cfg.host_nic)
    }
    if not all(pci.values()):
        raise DPInstallError(f'Could not resolve NIC PCI addresses: {pci}')

    current = ipv4_address(ctx.runner, cfg.mgt_nic)
    cidr = ask(ctx, 'STEP 03 - mgt IP', 'mgt address (CIDR)', default=current)
    try:
        iface = ipaddress.IPv4Interface(cidr)
    except ValueError as ex:
        raise DPInstallError(f'Invalid mgt address {cidr!r}: {ex}') from ex
    gateway = ask(ctx, 'STEP 03 - Gateway', 'Default gateway')
    dns = ask(ctx, 'STEP 03 - DNS', 'DNS servers', default='8.8.8.8 8.8.4.4')

    runner = ctx.runner
    runner.write_file(
        UDEV_RULES,
        '# Custom interface names (generated by dpinstall)\n'
        'ACTION=="add", SUBSYSTEM=="net", '
        f'KERNELS=="{pci[cfg.mgt_nic]}", NAME:="mgt"\n'
        'ACTION=="add", SUBSYSTEM=="net", '
        f'KERNELS=="{pci[cfg.cltr0_nic]}", NAME:="cltr0", '
        f'ATTR{{device/sriov_numvfs}}="{SRIOV_NUM_VFS}"\n'
        'ACTION=="add", SUBSYSTEM=="net", '
        f'KERNELS=="{pci[cfg.host_nic]}", NAME:="hostmgmt"\n',
    )
    runner.run(['udevadm', 'control', '--reload'])
    runner.run(['udevadm', 'trigger', '--type=devices', '--action=add'])
    runner.run(['update-initramfs', '-u'])

    runner.write_file(
        IFACE_FILE,
        f'source {IFACE_DIR}/*\n\n'
        'auto lo\niface lo inet loopback\n\n'
        'auto mgt\niface mgt inet static\n'
        f'    address {iface.ip}\n'
        f'    netmask {iface.network.netmask}\n'
        f'    gateway {gateway}\n'
        f'    dns-nameservers {dns}\n',
    )
    runner.run(['mkdir', '-p', IFACE_DIR])
    runner.write_file(
        f'{IFACE_DIR}/02-hostmgmt.cfg',
        'auto hostmgmt\niface hostmgmt inet static\n'
        f'    address {HOSTMGMT_ADDRESS}\n'
        f'    netmask {HOSTMGMT_NETMASK}\n',
    )
    runner.write_file(
        f'{IFACE_DIR}/00-cltr0.cfg',
        'auto cltr0\niface cltr0 inet manual\n    mtu 9000\n',
    )

    runner.run(['apt-get', 'install', '-y', 'ifupdown', 'net-tools'])
    runner.run(['mkdir', '-p', '/etc/netplan/disabled'])
    runner.try_run(
        ['find', '/etc/netplan', '-maxdepth', '1', '-name', '*.yaml',
         '-exec', 'mv', '{}', '/etc/netplan/disabled/', ';']
    )
    for unit_cmd in (
        ['systemctl', 'stop', 'systemd-networkd'],
        ['systemctl', 'disable', 'systemd-networkd'],
        ['systemctl', 'mask', 'systemd-networkd'],
        ['systemctl', 'mask', 'systemd-networkd-wait-online'],
        ['systemctl', 'unmask', 'networking'],
        ['systemctl', 'enable', 'networking'],
    ):
        runner.try_run(unit_cmd)
    return 0


def kvm_libvirt(ctx: StepContext) -> int:
    runner = ctx.runner
    runner.run(['apt-get', 'update'])
    runner.run(
        ['apt-get', 'install', '-y', 'qemu-kvm', 'libvirt-daemon-system',
         'libvirt-clients', 'virtinst', 'bridge-utils', 'cpu-checker']
    )
    runner.run(['systemctl', 'enable', '--now', 'libvirtd'])
    runner.try_run(['systemctl', 'enable', '--now', 'virtlogd'])
    if not runner.query(['kvm-ok']).ok:
        log.warning('kvm-ok did not confirm KVM acceleration on this host')
    return 0


def kernel_tuning(ctx: StepContext) -> int:
    runner = ctx.runner
    grub = read_text(runner, GRUB_FILE)
    if 'intel_iommu=on' in grub:
        log.info('GRUB already enables the IOMMU')
    else:
        runner.run(
            ['sed', '-i', '-E',
             f's/^(GRUB_CMDLINE_LINUX="[^"]*)"/\\1 {IOMMU_ARGS}"/', GRUB_FILE]
        )
        runner.run(['update-grub'])

    runner.write_file(
        SYSCTL_FILE,
        ''.join(f'{key} = {value}\n' for key, value in SYSCTL_SETTINGS.items()),
    )
    runner.run(['sysctl', '--system'])

    if 'KSM_ENABLED=' in read_text(runner, QEMU_DEFAULT):
        runner.run(
            ['sed', '-i', 's/^KSM_ENABLED=.*/KSM_ENABLED=0/', QEMU_DEFAULT]
        )
    else:
        runner.append_line_if_missing(
            QEMU_DEFAULT, 'KSM_ENABLED=0', marker='KSM_ENABLED=0'
        )
    runner.try_run(['systemctl', 'restart', 'qemu-kvm'])

    if ctx.prompter.confirm(
        'STEP 05 - Swap',
        'Disable swap and comment out /swap.img in /etc/fstab?',
    ):
        runner.run(['swapoff', '-a'])
        runner.run(
            ['sed', '-i', '-E', r's|^([^#].*\s/swap\.img\s.*)$|#\1|',
             '/etc/fstab']
        )
    else:
        log.info('Swap left enabled by operator choice')
    return 0


def ntpsec(ctx: StepContext) -> int:
    runner = ctx.runner
    runner.try_run(['modprobe', 'iavf'])
    runner.append_line_if_missing('/etc/modules', 'iavf', marker='iavf')
    runner.run(['apt-get', 'update'])
    runner.run(['apt-get', 'install', '-y', 'ntpsec'])
    runner.run(['systemctl', 'restart', 'ntpsec'])
    if not runner.query(['ntpq', '-p']).ok:
        log.warning('ntpq -p failed; check NTPsec peers after the install')
    return 0
