"""Thin virsh wrapper: domain existence, run state, XML views, power control."""

from __future__ import annotations

import time
from typing import Callable, Iterable

from loguru import logger

from ..poll import PollResult, poll_until
from ..runner import CommandRunner
from ..runtime import virsh_system_cmd

log = logger

STATE_RUNNING = 'running'
STATE_SHUT_OFF = 'shut off'


class VirshDomain:
    """Read domain state via ``runner.query``; change it via ``runner.run``."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def exists(self, name: str) -> bool:
        return self.runner.query(virsh_system_cmd('dominfo', name)).ok

    def state(self, name: str) -> str:
        res = self.runner.query(virsh_system_cmd('domstate', name))
        if not res.ok:
            return ''
        return res.stdout.strip().lower()

    def is_running(self, name: str) -> bool:
        return self.state(name) == STATE_RUNNING

    def live_xml(self, name: str) -> str:
        res = self.runner.query(virsh_system_cmd('dumpxml', name))
        return res.stdout if res.ok else ''

    def config_xml(self, name: str) -> str:
        res = self.runner.query(virsh_system_cmd('dumpxml', '--inactive', name))
        return res.stdout if res.ok else ''

    def vcpu_count(self, name: str) -> int:
        res = self.runner.query(
            virsh_system_cmd('vcpucount', name, '--maximum', '--config')
        )
        text = res.stdout.strip()
        if not res.ok or not text.isdigit():
            return 0
        return int(text)

    def shutdown(self, name: str) -> bool:
        return self.runner.try_run(virsh_system_cmd('shutdown', name))

    def start(self, name: str) -> bool:
        return self.runner.try_run(virsh_system_cmd('start', name))

    def destroy_and_undefine(self, name: str) -> None:
        self.runner.try_run(virsh_system_cmd('destroy', name))
        if not self.runner.try_run(virsh_system_cmd('undefine', name, '--nvram')):
            self.runner.try_run(virsh_system_cmd('undefine', name))

    def request_shutdown(self, names: Iterable[str]) -> list[str]:
        """Ask every defined, not-yet-off domain to shut down."""
        pending = []
        for name in names:
            if not self.exists(name):
                log.info('{} VM not found; skipping shutdown', name)
                continue
            if self.state(name) == STATE_SHUT_OFF:
                log.info('{} is already shut off', name)
                continue
            log.info('Requesting {} shutdown', name)
            if not self.shutdown(name):
                log.warning('{} shutdown failed (continuing)', name)
            pending.append(name)
        return pending

    def wait_all_shut_off(
        self,
        names: Iterable[str],
        *,
        interval_s: float = 5,
        timeout_s: float = 180,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> PollResult:
        names = list(names)

        def _all_off() -> bool:
            return all(
                self.state(name) in ('', STATE_SHUT_OFF) for name in names
            )

        if self.runner.simulate:
            # Shutdown requests were only logged; nothing will change.
            log.info('DRYRUN: wait for {} to reach shut off', ', '.join(names))
            return poll_until(lambda: True, interval_s=0, max_attempts=1)
        res = poll_until(
            _all_off,
            interval_s=interval_s,
            timeout_s=timeout_s,
            sleep=sleep,
            clock=clock,
        )
        if res.reached:
            log.info('All of {} are shut off', ', '.join(names))
        else:
            log.warning(
                'Some VMs did not shut off within {}s; continuing anyway',
                timeout_s,
            )
        return res
