"""Step 07: LVM layout for DL/DA root volumes and the DL data volume."""

from __future__ import annotations

from loguru import logger

from ..runner import CommandRunner
from ..steps import StepContext
from ._common import confirm, require

log = logger

DATA_VG = 'vg_dl'
DATA_LV = 'lv_dl'
DL_ROOT_LV = 'lv_dl_root'
DA_ROOT_LV = 'lv_da_root'
ROOT_LV_SIZE = '545G'
DEFAULT_OS_VG = 'ubuntu-vg'
FSTAB = '/etc/fstab'


def partition_of(disk: str) -> str:
    """First partition device of a whole disk (``nvme0n1`` -> ``nvme0n1p1``)."""
    suffix = 'p1' if disk[-1:].isdigit() else '1'
    return f'/dev/{disk}{suffix}'


def os_volume_group(runner: CommandRunner) -> str:
    src = runner.query(['findmnt', '-no', 'SOURCE', '/']).stdout.strip()
    if src:
        res = runner.query(['lvs', '--noheadings', '-o', 'vg_name', src])
        name = res.stdout.strip()
        if res.ok and name:
            return name
    log.warning('Could not detect the OS volume group; using {}', DEFAULT_OS_VG)
    return DEFAULT_OS_VG


def _is_mounted(runner: CommandRunner, path: str) -> bool:
    return runner.query(['mountpoint', '-q', path]).ok


def lvm_storage(ctx: StepContext) -> int:
    cfg = ctx.cfg
    runner = ctx.runner
    require(data_ssd_list=cfg.data_ssd_list)
    mounts = (cfg.dl_install_dir, cfg.da_install_dir)

    if all(_is_mounted(runner, m) for m in mounts):
        if ctx.prompter.confirm(
            'STEP 07 - Already Configured',
            f'{" and ".join(mounts)} are already mounted. Skip this step?',
        ):
            return 0

    disks = list(cfg.data_ssd_list)
    confirm(
        ctx,
        'STEP 07 - Data Disk Initialization',
        'ALL DATA on these disks will be destroyed:\n'
        + '\n'.join(f'  /dev/{d}' for d in disks)
        + '\n\nContinue?',
    )

    parts = []
    for disk in disks:
        runner.try_run(['wipefs', '-a', f'/dev/{disk}'])
        runner.run(['parted', '-s', f'/dev/{disk}', 'mklabel', 'gpt'])
        runner.run(
            ['parted', '-s', f'/dev/{disk}', 'mkpart', 'primary', 'ext4',
             '1MiB', '100%']
        )
        parts.append(partition_of(disk))
    runner.run(['pvcreate', *parts])
    runner.run(['vgcreate', DATA_VG, *parts])
    runner.run(
        ['lvcreate', '--extents', '100%FREE', '--stripes', str(len(parts)),
         '--name', DATA_LV, DATA_VG]
    )

    os_vg = os_volume_group(runner)
    for lv in (DL_ROOT_LV, DA_ROOT_LV):
        if runner.query(['lvs', f'{os_vg}/{lv}']).ok:
            log.info('LV {}/{} already exists', os_vg, lv)
            continue
        runner.run(['lvcreate', '-L', ROOT_LV_SIZE, '-n', lv, os_vg])

    dl_root = f'/dev/{os_vg}/{DL_ROOT_LV}'
    da_root = f'/dev/{os_vg}/{DA_ROOT_LV}'
    for dev in (dl_root, da_root, f'/dev/{DATA_VG}/{DATA_LV}'):
        if runner.query(['blkid', dev]).ok:
            log.info('Filesystem already present on {}', dev)
            continue
        runner.run(['mkfs.ext4', '-F', dev])

    runner.run(['mkdir', '-p', *mounts])
    for dev, mount in ((dl_root, cfg.dl_install_dir), (da_root, cfg.da_install_dir)):
        runner.append_line_if_missing(
            FSTAB, f'{dev} {mount} ext4 defaults,noatime 0 2', marker=mount
        )
    runner.run(['systemctl', 'daemon-reload'])
    runner.run(['mount', '-a'])

    if runner.query(['id', 'stellar']).ok:
        runner.run(['chown', '-R', 'stellar:stellar', '/stellar'])
    else:
        log.warning('User stellar does not exist; leaving /stellar ownership')
    return 0
