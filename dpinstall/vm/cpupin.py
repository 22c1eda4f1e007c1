"""Split host CPUs between the DL and DA VMs."""

from __future__ import annotations

from loguru import logger

log = logger

# Cores 0-3 stay with the host; DL takes even cores, DA takes odd ones.
DL_OFFSET = 4
DA_OFFSET = 5
STRIDE = 2


def cpu_pin_lists(
    cpu_count: int,
    *,
    dl_offset: int = DL_OFFSET,
    da_offset: int = DA_OFFSET,
    step: int = STRIDE,
) -> tuple[list[int], list[int]]:
    """Return ``(dl_cpus, da_cpus)`` for a host with ``cpu_count`` CPUs.

    Example:
        >>> cpu_pin_lists(12)
        ([4, 6, 8, 10], [5, 7, 9, 11])
        >>> cpu_pin_lists(4)
        ([], [])
    """
    if cpu_count < 0:
        raise ValueError(f'cpu_count must be >= 0, got {cpu_count}')
    dl = list(range(dl_offset, cpu_count, step))
    da = list(range(da_offset, cpu_count, step))
    overlap = set(dl) & set(da)
    if overlap:
        raise ValueError(f'CPU pin lists overlap on cores {sorted(overlap)}')
    return dl, da


def pin_plan(vm_name: str, vcpus: int, cpus: list[int]) -> dict[int, int]:
    """Map vCPU ``i`` to ``cpus[i]``; excess vCPUs stay unpinned."""
    if vcpus > len(cpus):
        log.warning(
            '{} has {} vCPUs but only {} pinning CPUs are available; '
            'pinning the first {} only',
            vm_name,
            vcpus,
            len(cpus),
            len(cpus),
        )
    return {idx: cpu for idx, cpu in enumerate(cpus[: max(vcpus, 0)])}


def format_pins(pins: dict[int, int]) -> str:
    if not pins:
        return '(none)'
    cpus = [pins[idx] for idx in sorted(pins)]
    return f'vcpu 0..{len(cpus) - 1} -> cpu {cpus[0]}..{cpus[-1]}'
