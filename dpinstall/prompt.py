"""Operator prompts: yes/no confirmation, free text, and menu selection.

Every prompt may return a cancel (``False`` / ``None``). Callers treat a
cancel as an explicit decline, never as an error.
"""

from __future__ import annotations

import sys
from typing import Protocol, Sequence


class Prompter(Protocol):
    def confirm(
        self, title: str, message: str, *, default: bool = False
    ) -> bool: ...

    def ask(
        self, title: str, message: str, *, default: str = ''
    ) -> str | None: ...

    def choose(
        self, title: str, message: str, options: Sequence[str]
    ) -> str | None: ...

    def notify(self, title: str, message: str) -> None: ...


class ConsolePrompter:
    """Plain stdin/stdout prompts; EOF and Ctrl-C count as cancel."""

    def _input(self, text: str) -> str | None:
        try:
            return input(text)
        except (EOFError, KeyboardInterrupt):
            print()
            return None

    def confirm(
        self, title: str, message: str, *, default: bool = False
    ) -> bool:
        print(f'== {title} ==')
        print(message)
        hint = '[Y/n]' if default else '[y/N]'
        ans = self._input(f'Continue? {hint}: ')
        if ans is None:
            return False
        ans = ans.strip().lower()
        if not ans:
            return default
        return ans in {'y', 'yes'}

    def ask(
        self, title: str, message: str, *, default: str = ''
    ) -> str | None:
        print(f'== {title} ==')
        suffix = f' [{default}]' if default else ''
        ans = self._input(f'{message}{suffix}: ')
        if ans is None:
            return None
        ans = ans.strip()
        return ans or default

    def choose(
        self, title: str, message: str, options: Sequence[str]
    ) -> str | None:
        if not options:
            return None
        print(f'== {title} ==')
        print(message)
        for idx, item in enumerate(options, start=1):
            print(f'  {idx}. {item}')
        while True:
            raw = self._input('Select number (empty to cancel): ')
            if raw is None or not raw.strip():
                return None
            raw = raw.strip()
            if raw.isdigit() and 1 <= int(raw) <= len(options):
                return options[int(raw) - 1]
            print(f'Please enter a number between 1 and {len(options)}.')

    def notify(self, title: str, message: str) -> None:
        print(f'== {title} ==')
        print(message)


class AssumeYesPrompter:
    """Non-interactive prompter used with ``--yes``: accept every default."""

    def confirm(
        self, title: str, message: str, *, default: bool = False
    ) -> bool:
        return True

    def ask(
        self, title: str, message: str, *, default: str = ''
    ) -> str | None:
        return default if default else None

    def choose(
        self, title: str, message: str, options: Sequence[str]
    ) -> str | None:
        # Hardware selection is never guessed.
        return None

    def notify(self, title: str, message: str) -> None:
        print(f'== {title} ==', file=sys.stderr)
        print(message, file=sys.stderr)


def default_prompter(*, yes: bool = False) -> Prompter:
    if yes:
        return AssumeYesPrompter()
    if not sys.stdin.isatty():
        raise RuntimeError(
            'Installer steps require confirmation, but stdin is not interactive. '
            'Re-run with --yes.'
        )
    return ConsolePrompter()
