"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import InstallerModalCLI, main

__all__ = ['InstallerModalCLI', 'main']
