"""Runtime helpers for constructing virsh command arguments."""

from __future__ import annotations

LIBVIRT_URI = 'qemu:///system'


def virsh_system_cmd(*args: str) -> list[str]:
    return ['virsh', '-c', LIBVIRT_URI, *args]


def virsh_args(cmd: list[str]) -> list[str]:
    """Strip the ``virsh -c URI`` prefix added by :func:`virsh_system_cmd`."""
    if cmd[:3] == ['virsh', '-c', LIBVIRT_URI]:
        return cmd[3:]
    if cmd[:1] == ['virsh']:
        return cmd[1:]
    return cmd
