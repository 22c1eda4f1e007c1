"""Typed installer settings with defaults-on-missing load and atomic save."""

from __future__ import annotations

import dataclasses
import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import ubelt as ub
from loguru import logger

log = logger

CONFIG_FILENAME = 'dpinstall.toml'
STATE_DIR_ENV = 'DPINSTALL_STATE_DIR'

DEFAULT_REBOOT_STEP_IDS = ('03_nic_ifupdown', '05_kernel_tuning')


@dataclass(frozen=True)
class InstallConfig:
    dry_run: bool = True
    verbosity: int = 1

    dp_version: str = '6.2.1'
    acps_username: str = ''
    acps_password: str = ''
    acps_base_url: str = 'https://acps.stellarcyber.ai'

    enable_auto_reboot: bool = True
    auto_reboot_after_step_ids: tuple[str, ...] = DEFAULT_REBOOT_STEP_IDS

    # NIC / disk selection made in the hardware detection step.
    mgt_nic: str = ''
    cltr0_nic: str = ''
    host_nic: str = ''
    data_ssd_list: tuple[str, ...] = ()

    dl_hostname: str = 'dl-master'
    da_hostname: str = 'da-master'
    dl_memory_gb: int = 186
    da_memory_gb: int = 156
    dl_vcpus: int = 42
    da_vcpus: int = 46
    dl_install_dir: str = '/stellar/dl'
    da_install_dir: str = '/stellar/da'
    dl_data_lv: str = '/dev/mapper/vg_dl-lv_dl'
    dl_otp: str = ''
    da_otp: str = ''

    # Optional fixed VF addresses; empty means "assign by lspci order".
    dl_vf_pci: str = ''
    da_vf_pci: str = ''

    def with_changes(self, **changes: Any) -> 'InstallConfig':
        return dataclasses.replace(self, **changes)

    @property
    def secrets(self) -> tuple[str, ...]:
        vals = (self.acps_password, self.dl_otp, self.da_otp)
        return tuple(s for s in vals if s)


SECRET_FIELDS = frozenset({'acps_password', 'dl_otp', 'da_otp'})


def default_state_dir() -> Path:
    override = os.environ.get(STATE_DIR_ENV, '').strip()
    if override:
        return Path(override).expanduser()
    return Path(ub.Path.appdir('dpinstall', type='config'))


def config_path(state_dir: Path | None = None) -> Path:
    return (state_dir or default_state_dir()) / CONFIG_FILENAME


def field_names() -> list[str]:
    return [f.name for f in fields(InstallConfig)]


def _field_kind(name: str) -> type:
    default = getattr(InstallConfig(), name)
    return type(default)


def coerce_value(name: str, raw: Any) -> Any:
    """Convert ``raw`` (text from the CLI or a TOML value) to the field type."""
    if name not in field_names():
        raise KeyError(f'Unknown setting: {name}')
    kind = _field_kind(name)
    if kind is bool:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in {'1', 'true', 'yes', 'y', 'on'}:
            return True
        if text in {'0', 'false', 'no', 'n', 'off'}:
            return False
        raise ValueError(f'{name} expects a boolean, got {raw!r}')
    if kind is int:
        if isinstance(raw, bool):
            raise ValueError(f'{name} expects an integer, got {raw!r}')
        try:
            return int(str(raw).strip())
        except ValueError:
            raise ValueError(f'{name} expects an integer, got {raw!r}') from None
    if kind is tuple:
        if isinstance(raw, (list, tuple)):
            items = [str(item).strip() for item in raw]
        else:
            items = str(raw).replace(',', ' ').split()
        return tuple(item for item in items if item)
    return str(raw)


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def dump_toml(cfg: InstallConfig) -> str:
    lines: list[str] = ['# dpinstall environment configuration (auto-generated)']
    for f in fields(cfg):
        val = getattr(cfg, f.name)
        if isinstance(val, bool):
            lines.append(f'{f.name} = {"true" if val else "false"}')
        elif isinstance(val, int):
            lines.append(f'{f.name} = {val}')
        elif isinstance(val, tuple):
            parts = [f'"{_toml_escape(str(item))}"' for item in val]
            lines.append(f'{f.name} = [{", ".join(parts)}]')
        else:
            lines.append(f'{f.name} = "{_toml_escape(str(val))}"')
    return '\n'.join(lines) + '\n'


def load_config(path: Path) -> InstallConfig:
    if not path.exists():
        return InstallConfig()
    raw = tomllib.loads(path.read_text(encoding='utf-8'))
    known = set(field_names())
    values: dict[str, Any] = {}
    for key, val in raw.items():
        if key not in known:
            log.debug('Ignoring unknown config key {} in {}', key, path)
            continue
        try:
            values[key] = coerce_value(key, val)
        except ValueError as ex:
            log.warning('Ignoring invalid config value ({}); using default', ex)
    return InstallConfig(**values)


def save_config(path: Path, cfg: InstallConfig) -> Path:
    """Rewrite the whole config file; readers never observe a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + '.part')
    tmp.write_text(dump_toml(cfg), encoding='utf-8')
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)
    return path


def set_value(path: Path, name: str, raw: Any) -> InstallConfig:
    cfg = load_config(path)
    cfg = cfg.with_changes(**{name: coerce_value(name, raw)})
    save_config(path, cfg)
    shown = '(secret)' if name in SECRET_FIELDS else raw
    log.debug('Saved {}={} to {}', name, shown, path)
    return cfg
