"""Shared fakes: an in-memory libvirt that answers the runner's virsh calls."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from dpinstall.runner import CommandRunner
from dpinstall.runtime import virsh_args
from dpinstall.util import CmdResult, shell_join
from dpinstall.vm.devices import pci_addresses_in

OK = CmdResult(0, '', '')


@dataclass
class View:
    disks: dict[str, str] = field(default_factory=dict)
    hostdevs: list[str] = field(default_factory=list)
    pins: dict[int, int] = field(default_factory=dict)

    def copy(self) -> 'View':
        return View(dict(self.disks), list(self.hostdevs), dict(self.pins))

    def to_xml(self, name: str) -> str:
        pins = ''.join(
            f"<vcpupin vcpu='{i}' cpuset='{c}'/>"
            for i, c in sorted(self.pins.items())
        )
        disks = ''.join(
            f"<disk type='block' device='disk'><source dev='{src}'/>"
            f"<target dev='{slot}' bus='virtio'/></disk>"
            for slot, src in sorted(self.disks.items())
        )
        hostdevs = ''
        for addr in self.hostdevs:
            dom, bus, rest = addr.split(':')
            slot, func = rest.split('.')
            hostdevs += (
                "<hostdev mode='subsystem' type='pci' managed='yes'><source>"
                f"<address domain='0x{dom}' bus='0x{bus}' slot='0x{slot}' "
                f"function='0x{func}'/></source></hostdev>"
            )
        return (
            f"<domain type='kvm'><name>{name}</name>"
            f'<cputune>{pins}</cputune>'
            f'<devices>{disks}{hostdevs}</devices></domain>'
        )


@dataclass
class FakeDomain:
    running: bool = True
    vcpus: int = 4
    live: View = field(default_factory=View)
    config: View = field(default_factory=View)
    stale: View | None = None
    stale_reads: int = 0


class FakeVirsh:
    """Duck-typed :class:`~dpinstall.runner.CommandRunner` over fake domains.

    ``config_failures`` makes that many ``--config`` writes fail (``-1``
    means every one). ``live_failures`` does the same for ``--live``. A
    failing combined call changes nothing. ``config_lag`` makes the next
    successful ``--config`` write show up in the persistent view only after
    that many more reads.
    """

    def __init__(self, simulate: bool = False) -> None:
        self.simulate = simulate
        self.secrets: tuple[str, ...] = ()
        self.history: list[str] = []
        self.domains: dict[str, FakeDomain] = {}
        self.config_failures = 0
        self.live_failures = 0
        self.config_lag = 0
        self.other: dict[str, CmdResult] = {}

    def add(self, name: str, **kwargs) -> FakeDomain:
        dom = FakeDomain(**kwargs)
        self.domains[name] = dom
        return dom

    # -- read side ------------------------------------------------------

    def query(self, cmd) -> CmdResult:
        args = virsh_args(list(cmd))
        if list(cmd)[:1] != ['virsh']:
            return self.other.get(args[0], CmdResult(1, '', 'unsupported'))
        verb = args[0]
        name = args[-1] if verb != 'vcpucount' else args[1]
        dom = self.domains.get(name)
        if dom is None:
            return CmdResult(1, '', f'failed to get domain {name!r}')
        if verb == 'dominfo':
            return CmdResult(0, f'Name: {name}\n', '')
        if verb == 'domstate':
            return CmdResult(0, 'running\n' if dom.running else 'shut off\n', '')
        if verb == 'dumpxml':
            if '--inactive' in args or not dom.running:
                return CmdResult(0, self._config_view(dom).to_xml(name), '')
            return CmdResult(0, dom.live.to_xml(name), '')
        if verb == 'vcpucount':
            return CmdResult(0, f'{dom.vcpus}\n', '')
        return CmdResult(1, '', f'unsupported query {verb}')

    def _config_view(self, dom: FakeDomain) -> View:
        if dom.stale_reads > 0:
            dom.stale_reads -= 1
            return dom.stale
        return dom.config

    # -- write side -----------------------------------------------------

    def _fail(self, kind: str) -> bool:
        budget = getattr(self, f'{kind}_failures')
        if budget == 0:
            return False
        if budget > 0:
            setattr(self, f'{kind}_failures', budget - 1)
        return True

    def run(self, cmd, *, check=True, capture=True, input_text=None):
        self.history.append(shell_join(cmd, self.secrets))
        if self.simulate:
            return OK
        args = virsh_args(list(cmd))
        if list(cmd)[:1] != ['virsh']:
            return OK
        verb, name = args[0], args[1]
        dom = self.domains.get(name)
        if dom is None:
            return CmdResult(1, '', f'failed to get domain {name!r}')
        if verb == 'shutdown':
            dom.running = False
            return OK
        if verb == 'start':
            dom.running = True
            dom.live = dom.config.copy()
            return OK
        if verb in ('destroy', 'undefine', 'numatune'):
            return OK
        flags = [a for a in args if a in ('--live', '--config')]
        views = []
        if '--live' in flags:
            if not dom.running:
                return CmdResult(1, '', 'domain is not running')
            if self._fail('live'):
                return CmdResult(1, '', 'live update failed')
            views.append(dom.live)
        if '--config' in flags:
            if self._fail('config'):
                return CmdResult(1, '', 'config update failed')
            views.append(dom.config)
        before = dom.config.copy()
        rest = [a for a in args[2:] if a not in ('--live', '--config')]
        for view in views:
            err = self._apply(view, verb, rest)
            if err:
                return CmdResult(1, '', err)
        if '--config' in flags and self.config_lag:
            dom.stale, dom.stale_reads = before, self.config_lag
            self.config_lag = 0
        return OK

    def _apply(self, view: View, verb: str, rest: list[str]) -> str:
        if verb == 'attach-disk':
            src, slot = rest
            if slot in view.disks:
                return f'target {slot} already exists'
            view.disks[slot] = src
        elif verb == 'detach-disk':
            (slot,) = rest
            if view.disks.pop(slot, None) is None:
                return f'no disk found whose target is {slot}'
        elif verb in ('attach-device', 'detach-device'):
            xml = Path(rest[0]).read_text(encoding='utf-8')
            wrapped = f'<domain><devices>{xml}</devices></domain>'
            (addr,) = pci_addresses_in(wrapped)
            if verb == 'attach-device':
                if addr in view.hostdevs:
                    return f'PCI device {addr} is in use'
                view.hostdevs.append(addr)
            elif addr in view.hostdevs:
                view.hostdevs.remove(addr)
            else:
                return f'device {addr} not found'
        elif verb == 'vcpupin':
            vcpu, cpu = rest
            view.pins[int(vcpu)] = int(cpu)
        else:
            return f'unsupported command {verb}'
        return ''

    def try_run(self, cmd) -> bool:
        return self.run(cmd, check=False).ok


@pytest.fixture
def virsh() -> FakeVirsh:
    return FakeVirsh()


class ScriptRunner(CommandRunner):
    """A real-mode runner whose commands are answered by prefix.

    ``answers`` maps a command prefix (space joined) to a ``CmdResult``;
    the longest matching prefix wins and unmatched queries fail. Mutating
    commands succeed and are recorded with their stdin.
    """

    def __init__(self) -> None:
        super().__init__(simulate=False)
        self.answers: dict[str, CmdResult] = {}
        self.ran: list[tuple[str, str | None]] = []

    def answer(self, prefix: str, stdout: str = '', code: int = 0) -> None:
        self.answers[prefix] = CmdResult(code, stdout, '')

    def _lookup(self, cmd) -> CmdResult:
        text = ' '.join(cmd)
        best = None
        for prefix in self.answers:
            if text == prefix or text.startswith(prefix + ' '):
                if best is None or len(prefix) > len(best):
                    best = prefix
        if best is None:
            return CmdResult(1, '', 'unscripted')
        return self.answers[best]

    def query(self, cmd) -> CmdResult:
        return self._lookup(cmd)

    def run(self, cmd, *, check=True, capture=True, input_text=None):
        self.history.append(shell_join(cmd, self.secrets))
        self.ran.append((' '.join(cmd), input_text))
        return OK

    def commands(self) -> list[str]:
        return [text for text, _ in self.ran]


@pytest.fixture
def script() -> ScriptRunner:
    return ScriptRunner()
