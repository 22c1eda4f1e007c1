from __future__ import annotations

import sys

import scriptconfig as scfg

from ..config import (
    SECRET_FIELDS,
    config_path,
    dump_toml,
    field_names,
    load_config,
    save_config,
    set_value,
)
from ..util import REDACTED
from ._common import _BaseCommand, _state_dir, log


class ConfigShowCLI(_BaseCommand):
    """Show the installer settings (secrets masked)."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = config_path(_state_dir(args.state_dir))
        cfg = load_config(path)
        masked = {
            name: REDACTED for name in SECRET_FIELDS if getattr(cfg, name)
        }
        print(f'# Config: {path}{"" if path.exists() else " (defaults)"}')
        print(dump_toml(cfg.with_changes(**masked)), end='')
        return 0


class ConfigPathCLI(_BaseCommand):
    """Print the config file path."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        print(config_path(_state_dir(args.state_dir)))
        return 0


class ConfigSetCLI(_BaseCommand):
    """Set one setting, e.g. ``config set dl_vcpus 40``."""

    key = scfg.Value('', position=1, help='Setting name.')
    value = scfg.Value('', position=2, help='New value (text).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        key = str(args.key or '').strip()
        if key not in field_names():
            print(f'Unknown setting: {key!r}', file=sys.stderr)
            print(f'Known settings: {", ".join(field_names())}', file=sys.stderr)
            return 2
        path = config_path(_state_dir(args.state_dir))
        try:
            set_value(path, key, '' if args.value is None else args.value)
        except ValueError as ex:
            print(f'Invalid value: {ex}', file=sys.stderr)
            return 2
        shown = REDACTED if key in SECRET_FIELDS else args.value
        print(f'{key} = {shown}  ({path})')
        return 0


class ConfigToggleDryRunCLI(_BaseCommand):
    """Flip between simulation (dry run) and real execution."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = config_path(_state_dir(args.state_dir))
        cfg = load_config(path)
        cfg = cfg.with_changes(dry_run=not cfg.dry_run)
        save_config(path, cfg)
        mode = 'simulation only' if cfg.dry_run else 'REAL execution'
        log.info('DRY_RUN set to {} in {}', int(cfg.dry_run), path)
        print(f'DRY_RUN={int(cfg.dry_run)} ({mode})')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Installer settings commands."""

    show = ConfigShowCLI
    path = ConfigPathCLI
    set = ConfigSetCLI
    toggle_dry_run = ConfigToggleDryRunCLI
