"""Subprocess execution, secret redaction, and small path helpers."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

log = logger

REDACTED = '******'


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.code == 0


class CmdError(RuntimeError):
    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )


def redact(text: str, secrets: Sequence[str] = ()) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def shell_join(cmd: Sequence[str], secrets: Sequence[str] = ()) -> str:
    return redact(' '.join(shlex.quote(c) for c in cmd), secrets)


def run_cmd(
    cmd: Sequence[str],
    *,
    sudo: bool = False,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    input_text: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    secrets: Sequence[str] = (),
) -> CmdResult:
    if sudo and os.geteuid() != 0:
        # Non-interactive sudo: fail fast if password/TTY is required.
        cmd = ['sudo', '-n', *cmd]
    shown = shell_join(cmd, secrets)
    log.opt(depth=1).debug('RUN: {}', shown)
    p = subprocess.run(
        list(cmd),
        input=input_text,
        capture_output=capture,
        text=text,
        env=env,
    )
    res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    if check and p.returncode != 0:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={}',
            p.returncode,
            shown,
            redact(res.stderr.strip(), secrets),
        )
        raise CmdError(shown, res)
    if p.returncode == 0:
        log.opt(depth=1).debug('Command ok code=0 cmd={}', shown)
    return res


def which(cmd: str) -> Optional[str]:
    from shutil import which as _which

    return _which(cmd)


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
