"""Steps 08-11: libvirt hooks, DP downloads, DL/DA master deployment."""

from __future__ import annotations

from loguru import logger

from ..errors import DPInstallError, PreconditionMissing
from ..host import ipv4_address
from ..steps import StepContext
from ..vm.domain import VirshDomain
from ._common import ask, confirm, path_exists, read_text, require

log = logger

HOOK_DIR = '/etc/libvirt/hooks'
DEPLOY_SCRIPT = 'virt_deploy_uvp_centos.sh'
SCRIPT_RELEASE = '6.2.0'
IMAGE_STEM = 'aella-dataprocessor-ubuntu2404-py2-{version}'
DEFAULT_BRIDGE = 'virbr0'
DEFAULT_DISK_GB = 500

NETWORK_HOOK = """\
#!/bin/bash
# libvirt network hook (generated by dpinstall)
# Keeps host forwarding rules in place when the default network restarts.
if [ "$1" = "default" ] && [ "$2" = "started" ]; then
    sysctl -w net.ipv4.ip_forward=1 >/dev/null
fi
exit 0
"""

QEMU_HOOK = """\
#!/bin/bash
# libvirt qemu hook (generated by dpinstall)
# Restarts a DL/DA guest that was stopped by the OOM killer.
GUEST="$1"
OPERATION="$2"
LOG=/var/log/dpinstall-qemu-hook.log
case "$GUEST" in
    dl-*|da-*) ;;
    *) exit 0 ;;
esac
if [ "$OPERATION" = "release" ]; then
    if journalctl -k --since "-2min" 2>/dev/null | grep -q "Killed process.*qemu"; then
        echo "$(date '+%F %T') $GUEST killed by OOM; scheduling restart" >> "$LOG"
        (sleep 10; virsh start "$GUEST" >> "$LOG" 2>&1) &
    fi
fi
exit 0
"""


def libvirt_hooks(ctx: StepContext) -> int:
    runner = ctx.runner
    confirm(
        ctx,
        'STEP 08 - libvirt hooks',
        f'{HOOK_DIR}/network and {HOOK_DIR}/qemu will be overwritten.\n'
        'Continue?',
    )
    runner.run(['mkdir', '-p', HOOK_DIR])
    for name, body in (('network', NETWORK_HOOK), ('qemu', QEMU_HOOK)):
        path = f'{HOOK_DIR}/{name}'
        runner.write_file(path, body)
        runner.run(['chmod', '+x', path])
    runner.run(['systemctl', 'restart', 'libvirtd'])
    return 0


def image_dir(install_dir: str) -> str:
    return f'{install_dir.rstrip("/")}/images'


def release_url(base_url: str, version: str, name: str) -> str:
    return f'{base_url.rstrip("/")}/release/{version}/dataprocessor/{name}'


def dp_download(ctx: StepContext) -> int:
    cfg = ctx.cfg
    runner = ctx.runner
    require(
        dp_version=cfg.dp_version,
        acps_username=cfg.acps_username,
        acps_password=cfg.acps_password,
    )
    stem = IMAGE_STEM.format(version=cfg.dp_version)
    qcow2, xml, sha1 = f'{stem}.qcow2', f'{stem}.xml', f'{stem}.qcow2.sha1'
    dl_dir = image_dir(cfg.dl_install_dir)
    da_dir = image_dir(cfg.da_install_dir)
    runner.run(['mkdir', '-p', dl_dir, da_dir])

    auth = f'{cfg.acps_username}:{cfg.acps_password}'

    def _fetch(version: str, name: str, *, required: bool = True) -> bool:
        cmd = [
            'curl', '-fSL', '-k', '-u', auth,
            '-o', f'{dl_dir}/{name}',
            release_url(cfg.acps_base_url, version, name),
        ]
        if required:
            runner.run(cmd)
            return True
        return runner.try_run(cmd)

    _fetch(SCRIPT_RELEASE, DEPLOY_SCRIPT)
    if not _fetch(cfg.dp_version, xml, required=False):
        log.warning('{} download failed (continuing)', xml)
    have_sha1 = _fetch(cfg.dp_version, sha1, required=False)
    if path_exists(runner, f'{dl_dir}/{qcow2}') and ctx.prompter.confirm(
        'STEP 09 - Local Image',
        f'{qcow2} already exists in {dl_dir}. Reuse it instead of downloading?',
    ):
        log.info('Reusing local image {}', qcow2)
    else:
        _fetch(cfg.dp_version, qcow2)

    if have_sha1:
        _verify_sha1(ctx, f'{dl_dir}/{qcow2}', f'{dl_dir}/{sha1}')
    runner.run(['chmod', '+x', f'{dl_dir}/{DEPLOY_SCRIPT}'])
    runner.run(['cp', f'{dl_dir}/{DEPLOY_SCRIPT}', f'{dl_dir}/{qcow2}', da_dir])
    return 0


def _verify_sha1(ctx: StepContext, image: str, sha1_file: str) -> None:
    expected = read_text(ctx.runner, sha1_file).split()
    res = ctx.runner.query(['sha1sum', image])
    actual = res.stdout.split()
    if not expected or not actual:
        log.warning('Could not read checksums for {}; skipping verification', image)
        return
    if expected[0].lower() != actual[0].lower():
        raise DPInstallError(
            f'SHA1 mismatch for {image}: expected {expected[0]}, got {actual[0]}'
        )
    log.info('SHA1 verified for {}', image)


def _deploy_master(ctx: StepContext, role: str) -> int:
    prefix = role[:2].lower()
    cfg = ctx.cfg
    runner = ctx.runner
    domain = ctx.domain or VirshDomain(runner)
    install_dir = getattr(cfg, f'{prefix}_install_dir')
    title = f'{role} Deployment'

    candidates = [
        f'{image_dir(install_dir)}/{DEPLOY_SCRIPT}',
        f'{install_dir}/{DEPLOY_SCRIPT}',
    ]
    script = next((p for p in candidates if path_exists(runner, p)), None)
    if script is None:
        raise PreconditionMissing(
            f'{DEPLOY_SCRIPT} not found; complete STEP 09 first'
        )
    if not runner.query(['mountpoint', '-q', install_dir]).ok:
        raise PreconditionMissing(
            f'{install_dir} is not mounted; complete STEP 07 first'
        )

    hostname = ask(
        ctx, title, f'{role} VM hostname',
        default=getattr(cfg, f'{prefix}_hostname'),
    )
    mem_raw = ask(
        ctx, title, f'{role} memory (GB)',
        default=str(getattr(cfg, f'{prefix}_memory_gb')),
    )
    if not mem_raw.isdigit() or int(mem_raw) <= 0:
        raise DPInstallError(f'Invalid memory size: {mem_raw!r}')
    cfg = ctx.update_config(
        **{f'{prefix}_hostname': hostname, f'{prefix}_memory_gb': int(mem_raw)}
    )

    if domain.exists(hostname):
        if not ctx.prompter.confirm(
            f'{title} - {hostname} Redeployment',
            f'{hostname} is already defined (state: {domain.state(hostname)}).'
            '\n\nContinuing destroys and undefines it and removes its disk '
            'images. Proceed with redeployment?',
            default=False,
        ):
            log.info('{} redeployment canceled by operator', hostname)
            return 0
        domain.destroy_and_undefine(hostname)
        runner.run(
            ['rm', '-f', f'{install_dir}/{hostname}.raw',
             f'{install_dir}/{hostname}.log']
        )

    otp = getattr(cfg, f'{prefix}_otp') or ask(ctx, title, f'{role} OTP')
    if otp not in runner.secrets:
        runner.secrets = (*runner.secrets, otp)
    current = ipv4_address(runner, 'mgt').split('/')[0]
    host_ip = ask(ctx, title, 'Host mgt IP', default=current)
    vm_ip = ask(ctx, title, f'{role} VM IP')
    netmask = ask(ctx, title, f'{role} VM netmask', default='255.255.255.0')
    gateway = ask(ctx, title, f'{role} VM gateway')
    dns = ask(ctx, title, f'{role} VM DNS', default='8.8.8.8')

    stem = IMAGE_STEM.format(version=cfg.dp_version)
    have_image = path_exists(runner, f'{image_dir(install_dir)}/{stem}.qcow2')
    vcpus = getattr(cfg, f'{prefix}_vcpus')
    memory_mb = getattr(cfg, f'{prefix}_memory_gb') * 1024
    cmd = [
        'bash', script, '--',
        f'--hostname={hostname}',
        '--cluster-size=1',
        f'--release={cfg.dp_version}',
        f'--local-ip={host_ip}',
        f'--node-role={role}',
        f'--bridge={DEFAULT_BRIDGE}',
        f'--CPUS={vcpus}',
        f'--MEM={memory_mb}',
        f'--DISKSIZE={DEFAULT_DISK_GB}',
        f'--nodownload={"true" if have_image else "false"}',
        f'--installdir={install_dir}',
        f'--OTP={otp}',
        f'--ip={vm_ip}',
        f'--netmask={netmask}',
        f'--gw={gateway}',
        f'--dns={dns}',
    ]
    confirm(
        ctx,
        title,
        f'Deploy {role} VM {hostname}: {vcpus} vCPU, {memory_mb} MB, '
        f'ip {vm_ip}. Execute {DEPLOY_SCRIPT}?',
    )
    runner.run(cmd, capture=False)
    if not domain.exists(hostname):
        log.warning(
            '{} finished but virsh dominfo {} failed', DEPLOY_SCRIPT, hostname
        )
    return 0


def dl_master_deploy(ctx: StepContext) -> int:
    return _deploy_master(ctx, 'DL-master')


def da_master_deploy(ctx: StepContext) -> int:
    return _deploy_master(ctx, 'DA-master')
