"""Shared helpers for step handlers."""

from __future__ import annotations

from typing import Sequence

from ..errors import PreconditionMissing, StepDeclined
from ..runner import CommandRunner
from ..steps import StepContext


def require(**values: object) -> None:
    """Raise :class:`PreconditionMissing` naming every empty value."""
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise PreconditionMissing(
            'Required settings are not configured: ' + ', '.join(missing)
        )


def ask(ctx: StepContext, title: str, message: str, default: str = '') -> str:
    ans = ctx.prompter.ask(title, message, default=default)
    if ans is None or not ans.strip():
        raise StepDeclined(f'{title}: no value entered')
    return ans.strip()


def choose(
    ctx: StepContext, title: str, message: str, options: Sequence[str]
) -> int:
    """Index of the chosen option; a cancel declines the step."""
    picked = ctx.prompter.choose(title, message, list(options))
    if picked is None:
        raise StepDeclined(f'{title}: selection canceled')
    return list(options).index(picked)


def confirm(ctx: StepContext, title: str, message: str) -> None:
    if not ctx.prompter.confirm(title, message):
        raise StepDeclined(f'{title}: declined')


def read_text(runner: CommandRunner, path: str) -> str:
    res = runner.query(['cat', path])
    return res.stdout if res.ok else ''


def path_exists(runner: CommandRunner, path: str) -> bool:
    return runner.query(['test', '-e', path]).ok
