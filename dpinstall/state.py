"""Persisted record of the last successfully completed installation step."""

from __future__ import annotations

import datetime
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

log = logger

STATE_FILENAME = 'install_state.toml'
TIME_FORMAT = '%Y-%m-%d %H:%M:%S'


@dataclass(frozen=True)
class InstallState:
    last_completed_step_id: str = ''
    last_run_at: str = ''

    @property
    def is_empty(self) -> bool:
        return not self.last_completed_step_id


def state_path(state_dir: Path) -> Path:
    return state_dir / STATE_FILENAME


def now_stamp() -> str:
    return datetime.datetime.now().strftime(TIME_FORMAT)


def load_state(path: Path) -> InstallState:
    if not path.exists():
        return InstallState()
    try:
        raw = tomllib.loads(path.read_text(encoding='utf-8'))
    except tomllib.TOMLDecodeError as ex:
        log.warning('Unreadable state file {} ({}); treating as empty', path, ex)
        return InstallState()
    return InstallState(
        last_completed_step_id=str(raw.get('last_completed_step', '')).strip(),
        last_run_at=str(raw.get('last_run_time', '')).strip(),
    )


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def save_state(path: Path, state: InstallState) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = (
        f'last_completed_step = "{_toml_escape(state.last_completed_step_id)}"\n'
        f'last_run_time = "{_toml_escape(state.last_run_at)}"\n'
    )
    tmp = path.with_name(path.name + '.part')
    tmp.write_text(text, encoding='utf-8')
    os.replace(tmp, path)
    return path


def record_completion(path: Path, step_id: str) -> InstallState:
    state = InstallState(last_completed_step_id=step_id, last_run_at=now_stamp())
    save_state(path, state)
    log.debug('State advanced to {} at {}', step_id, state.last_run_at)
    return state
