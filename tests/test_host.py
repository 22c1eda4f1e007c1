from __future__ import annotations

from dpinstall.host import (
    disk_candidates,
    host_cpu_count,
    ipv4_address,
    nic_candidates,
    nic_names,
)

IP_LINK = (
    '1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN\n'
    '2: eno1: <BROADCAST,MULTICAST,UP> mtu 1500 qdisc mq state UP\n'
    '3: ens1f0: <BROADCAST,MULTICAST,UP> mtu 9000 qdisc mq state UP\n'
    '4: virbr0: <NO-CARRIER,BROADCAST> mtu 1500 qdisc noqueue state DOWN\n'
    '5: vnet3@if2: <BROADCAST,MULTICAST,UP> mtu 1500 qdisc noqueue\n'
)


def test_nic_names_excludes_virtual(script) -> None:
    script.answer('ip -o link show', IP_LINK)
    assert nic_names(script) == ['eno1', 'ens1f0']


def test_nic_candidates_collects_speed_and_ip(script) -> None:
    script.answer('ip -o link show', IP_LINK)
    script.answer(
        'ip -o addr show dev eno1',
        '2: eno1    inet 10.0.0.5/24 brd 10.0.0.255 scope global eno1\n',
    )
    script.answer('ethtool eno1', '\tSpeed: 10000Mb/s\n\tDuplex: Full\n')
    nics = {n.name: n for n in nic_candidates(script)}
    assert nics['eno1'].speed == '10000Mb/s'
    assert nics['eno1'].addresses == '10.0.0.5/24'
    assert nics['ens1f0'].speed == 'Unknown'
    assert 'ip=(no ip)' in nics['ens1f0'].label()


def test_disk_candidates_skip_os_disk(script) -> None:
    script.answer('findmnt -no SOURCE /', '/dev/sda2\n')
    script.answer('lsblk -no PKNAME /dev/sda2', 'sda\n')
    script.answer(
        'lsblk -dn -o NAME,SIZE,TYPE,MODEL',
        'sda 447.1G disk SAMSUNG MZ7L3480\n'
        'nvme0n1 3.5T disk Dell Ent NVMe\n'
        'sr0 1024M rom Virtual CD\n',
    )
    disks = disk_candidates(script)
    assert [d.name for d in disks] == ['nvme0n1']
    assert disks[0].model == 'Dell_Ent_NVMe'


def test_ipv4_address(script) -> None:
    script.answer(
        'ip -o -4 addr show dev mgt',
        '2: mgt    inet 192.168.10.4/24 brd 192.168.10.255 scope global mgt\n',
    )
    assert ipv4_address(script, 'mgt') == '192.168.10.4/24'
    assert ipv4_address(script, 'missing') == ''


def test_host_cpu_count(script) -> None:
    script.answer('nproc', '96\n')
    assert host_cpu_count(script) == 96
