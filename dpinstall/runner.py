"""The single execute-or-simulate switch every mutating action goes through."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .util import CmdError, CmdResult, redact, run_cmd, shell_join

log = logger

MISSING_BINARY_CODE = 127


@dataclass
class CommandRunner:
    """Execute commands, or only log them when ``simulate`` is set.

    ``run`` is for anything that changes the host. ``query`` is for
    read-only inspection (virsh domstate/dumpxml, lspci, lsblk) and runs in
    both modes so simulated steps can still plan against the real host.

    Example:
        >>> runner = CommandRunner(simulate=True)
        >>> runner.run(['virsh', 'start', 'dl-master']).code
        0
        >>> runner.history
        ['virsh start dl-master']
    """

    simulate: bool = True
    sudo: bool = False
    secrets: tuple[str, ...] = ()
    history: list[str] = field(default_factory=list)

    def run(
        self,
        cmd: Sequence[str],
        *,
        check: bool = True,
        capture: bool = True,
        input_text: Optional[str] = None,
    ) -> CmdResult:
        shown = shell_join(cmd, self.secrets)
        self.history.append(shown)
        if self.simulate:
            log.opt(depth=1).info('DRYRUN: {}', shown)
            return CmdResult(0, '', '')
        log.opt(depth=1).info('RUN: {}', shown)
        return run_cmd(
            cmd,
            sudo=self.sudo,
            check=check,
            capture=capture,
            input_text=input_text,
            secrets=self.secrets,
        )

    def query(self, cmd: Sequence[str]) -> CmdResult:
        try:
            return run_cmd(
                cmd,
                sudo=self.sudo,
                check=False,
                capture=True,
                secrets=self.secrets,
            )
        except FileNotFoundError as ex:
            log.debug('Command not available: {} ({})', cmd[0], ex)
            return CmdResult(MISSING_BINARY_CODE, '', str(ex))

    def try_run(self, cmd: Sequence[str]) -> bool:
        """Run a best-effort command; failures are logged, not raised."""
        try:
            res = self.run(cmd, check=False)
        except FileNotFoundError as ex:
            log.warning('Command not available: {} ({})', cmd[0], ex)
            return False
        if not res.ok:
            log.warning(
                'Command returned code={} (continuing): {}',
                res.code,
                shell_join(cmd, self.secrets),
            )
        return res.ok

    def write_file(self, path: Path | str, content: str) -> CmdResult:
        return self.run(['tee', str(path)], input_text=content)

    def append_line_if_missing(
        self, path: Path | str, line: str, *, marker: str
    ) -> bool:
        """Append ``line`` unless an existing line already contains ``marker``."""
        current = self.query(['cat', str(path)])
        for existing in current.stdout.splitlines():
            if marker in existing.split():
                log.info('{}: entry for {} already present', path, marker)
                return False
        self.run(['tee', '-a', str(path)], input_text=line.rstrip('\n') + '\n')
        return True

    def describe_error(self, ex: CmdError) -> str:
        return redact(str(ex), self.secrets)
