"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..config import config_path, load_config
from ..handlers import build_bindings, build_registry
from ..handlers.passthrough import render_reports
from ..orchestrator import RunSummary, StepStatus
from ..state import load_state, state_path
from ..status import render_status
from ..vm.domain import VirshDomain
from ..vm.reconcile import Outcome, ResourceReconciler, worst_outcome
from ._common import (
    _BaseCommand,
    _open_session,
    _state_dir,
    build_orchestrator,
    log,
)
from .config import ConfigModalCLI

LOG_FILENAME = 'install.log'


def _print_summary(summary: RunSummary) -> None:
    for outcome in summary.outcomes:
        mark = {
            StepStatus.SUCCEEDED: '✅',
            StepStatus.SKIPPED: '➖',
            StepStatus.FAILED: '❌',
        }[outcome.status]
        suffix = f' - {outcome.detail}' if outcome.detail else ''
        print(f'{mark} {outcome.step.title}{suffix}')
    if summary.rebooted:
        print('Host reboot requested; re-run `dpinstall run` afterwards.')
    elif summary.all_done:
        print('All steps are completed.')


class RunCLI(_BaseCommand):
    """Continue the installation from the next pending step."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        session = _open_session(args.state_dir, yes=bool(args.yes))
        orch = build_orchestrator(session)
        summary = orch.run_pending()
        _print_summary(summary)
        return 1 if summary.failed else 0


class StepCLI(_BaseCommand):
    """Run a single step by id (``07_lvm_storage``) or ordinal (``7``)."""

    step = scfg.Value('', position=1, help='Step id or ordinal.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        registry = build_registry()
        step = registry.resolve(str(args.step or ''))
        if step is None:
            print(f'Unknown step: {args.step!r}', file=sys.stderr)
            print('Run `dpinstall steps` to list step ids.', file=sys.stderr)
            return 2
        session = _open_session(args.state_dir, yes=bool(args.yes))
        orch = build_orchestrator(session, registry=registry)
        outcome = orch.run_selected(step)
        _print_summary(RunSummary((outcome,)))
        return 1 if outcome.failed else 0


class StepsCLI(_BaseCommand):
    """List steps with done / next / pending markers."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        sdir = _state_dir(args.state_dir)
        registry = build_registry()
        state = load_state(state_path(sdir))
        next_idx = registry.resume_index(state.last_completed_step_id)
        for idx, step in enumerate(registry):
            if idx < next_idx:
                mark = '✅ done   '
            elif idx == next_idx:
                mark = '▶  next   '
            else:
                mark = '   pending'
            print(f'{mark}  {step.id.value:<24} {step.display_name}')
        if not state.is_empty:
            print(
                f'\nLast completed: {state.last_completed_step_id} '
                f'at {state.last_run_at}'
            )
        return 0


class StatusCLI(_BaseCommand):
    """Overall validation summary: progress, host, VMs, hardware bindings."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        session = _open_session(args.state_dir, yes=True)
        print(
            render_status(
                session.cfg,
                load_state(session.state_path),
                build_registry(),
                session.runner,
                config_path=session.config_path,
            )
        )
        return 0


class ReconcileCLI(_BaseCommand):
    """Re-apply VF, vCPU pin and data-disk bindings to the VMs as they are."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        session = _open_session(args.state_dir, yes=bool(args.yes))
        cfg = session.cfg
        if not session.prompter.confirm(
            'Reconcile hardware bindings',
            f'Re-apply passthrough, CPU pinning and data disk bindings to '
            f'{cfg.dl_hostname} and {cfg.da_hostname} without stopping them?',
        ):
            log.info('Reconcile canceled by operator')
            return 0
        domain = VirshDomain(session.runner)
        plan = build_bindings(cfg, session.runner, domain)
        reports = ResourceReconciler(session.runner, domain).reconcile_all(
            plan.bindings
        )
        print(render_reports(reports))
        for note in plan.notes:
            print(f'➖ {note}')
        return 1 if worst_outcome(reports) is Outcome.FAILED else 0


class InstallerModalCLI(scfg.ModalCLI):
    """Resumable host installer for the DL / DA data processor VMs."""

    run = RunCLI
    step = StepCLI
    steps = StepsCLI
    status = StatusCLI
    reconcile = ReconcileCLI
    config = ConfigModalCLI


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    state_dir_value = None
    if '--state_dir' in argv:
        try:
            state_dir_value = argv[argv.index('--state_dir') + 1]
        except IndexError:
            pass
    sdir = _state_dir(state_dir_value)
    try:
        verbosity = load_config(config_path(sdir)).verbosity
    except Exception:
        verbosity = 1

    _setup_logging(
        _count_verbose(argv), verbosity, log_file=sdir / LOG_FILENAME
    )

    try:
        rc = InstallerModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled dpinstall error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(
    args_verbose: int, cfg_verbosity: int, *, log_file: Path | None = None
) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                str(log_file),
                level='DEBUG',
                colorize=False,
                format='[{time:YYYY-MM-DD HH:mm:ss}] {level: <8} {name}:{line} - {message}',
            )
        except OSError as ex:
            log.warning('Installer log file disabled ({}): {}', log_file, ex)
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _normalize_argv(argv: list[str]) -> list[str]:
    """Normalize accepted hyphenated spellings to scriptconfig command names."""
    if len(argv) >= 2 and argv[0] == 'config' and argv[1] == 'toggle-dry-run':
        return ['config', 'toggle_dry_run', *argv[2:]]
    if len(argv) >= 1 and argv[0] == 'state-dir':
        return ['config', 'path', *argv[1:]]
    if len(argv) >= 1 and argv[0] == 'ls':
        return ['steps', *argv[1:]]
    return argv


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
