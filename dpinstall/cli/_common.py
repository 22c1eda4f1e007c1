from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import scriptconfig as scfg
from loguru import logger

from ..config import InstallConfig, config_path, default_state_dir, load_config
from ..handlers import build_registry
from ..host import reboot_host
from ..orchestrator import Orchestrator
from ..prompt import Prompter, default_prompter
from ..reboot import RebootCoordinator, RebootPolicy
from ..runner import CommandRunner
from ..state import state_path
from ..steps import StepContext, StepRegistry
from ..util import ensure_dir
from ..vm.domain import VirshDomain

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    state_dir = scfg.Value(
        None,
        help=(
            'Directory holding dpinstall.toml, install_state.toml and '
            'install.log (default: $DPINSTALL_STATE_DIR or the per-user '
            'config dir).'
        ),
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )
    yes = scfg.Value(
        False,
        isflag=True,
        help='Confirm every step prompt without asking (non-interactive).',
    )


def _state_dir(p: str | None) -> Path:
    if p:
        return Path(p).expanduser().resolve()
    return default_state_dir()


@dataclass
class Session:
    """Everything one CLI invocation shares across steps."""

    state_dir: Path
    config_path: Path
    cfg: InstallConfig
    runner: CommandRunner
    prompter: Prompter

    @property
    def state_path(self) -> Path:
        return state_path(self.state_dir)

    def reload(self) -> InstallConfig:
        """Re-read the config and point the runner at its dry-run flag."""
        self.cfg = load_config(self.config_path)
        self.runner.simulate = self.cfg.dry_run
        self.runner.secrets = self.cfg.secrets
        return self.cfg


def _open_session(
    state_dir: str | None,
    *,
    yes: bool = False,
    prompter: Optional[Prompter] = None,
) -> Session:
    sdir = _state_dir(state_dir)
    ensure_dir(sdir)
    path = config_path(sdir)
    cfg = load_config(path)
    runner = CommandRunner(simulate=cfg.dry_run, sudo=True, secrets=cfg.secrets)
    if prompter is None:
        prompter = default_prompter(yes=yes)
    log.debug('Using state dir {} (dry_run={})', sdir, cfg.dry_run)
    return Session(sdir, path, cfg, runner, prompter)


def build_orchestrator(
    session: Session,
    *,
    registry: Optional[StepRegistry] = None,
    reboot_fn: Optional[Callable[[], None]] = None,
) -> Orchestrator:
    registry = registry or build_registry()

    def make_context() -> StepContext:
        cfg = session.reload()
        return StepContext(
            cfg=cfg,
            runner=session.runner,
            prompter=session.prompter,
            config_path=session.config_path,
            state_dir=session.state_dir,
            domain=VirshDomain(session.runner),
        )

    if reboot_fn is None:

        def reboot_fn() -> None:
            reboot_host(session.runner)

    reboot = RebootCoordinator(
        RebootPolicy.from_config(session.cfg), reboot_fn=reboot_fn
    )
    return Orchestrator(
        registry, session.state_path, make_context, reboot
    )
