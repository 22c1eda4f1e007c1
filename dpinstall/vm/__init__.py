"""VM-side exports: domain inspection, device identities, pinning, reconcile."""

from __future__ import annotations

from .cpupin import cpu_pin_lists, format_pins, pin_plan
from .devices import (
    compare_device_paths,
    discover_virtual_functions,
    disk_sources_in,
    hostdev_xml,
    normalize_pci_address,
    pci_addresses_in,
    vcpu_pins_in,
)
from .domain import STATE_RUNNING, STATE_SHUT_OFF, VirshDomain
from .reconcile import (
    Binding,
    BindingKind,
    BindingReport,
    Outcome,
    ResourceReconciler,
    VerifyStatus,
    worst_outcome,
)

__all__ = [
    'Binding',
    'BindingKind',
    'BindingReport',
    'Outcome',
    'ResourceReconciler',
    'STATE_RUNNING',
    'STATE_SHUT_OFF',
    'VerifyStatus',
    'VirshDomain',
    'compare_device_paths',
    'cpu_pin_lists',
    'discover_virtual_functions',
    'disk_sources_in',
    'format_pins',
    'hostdev_xml',
    'normalize_pci_address',
    'pci_addresses_in',
    'pin_plan',
    'vcpu_pins_in',
    'worst_outcome',
]
