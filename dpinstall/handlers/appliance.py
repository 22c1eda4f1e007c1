"""Step 13: install the DP appliance CLI package into a host venv."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from loguru import logger

from ..errors import PreconditionMissing
from ..steps import StepContext

log = logger

VENV_DIR = '/opt/dp_cli_venv'
PACKAGE_GLOBS = ('dp_cli-*.tar.gz', 'dp_cli-*.tar')
LINK_PATH = '/usr/local/bin/dp_cli'


def _version_key(path: Path) -> list:
    return [int(p) if p.isdigit() else p for p in re.split(r'(\d+)', path.name)]


def find_cli_package(search_dir: Path) -> Optional[Path]:
    """Newest ``dp_cli-*`` archive in ``search_dir`` (``.tar.gz`` first)."""
    for pattern in PACKAGE_GLOBS:
        found = sorted(search_dir.glob(pattern), key=_version_key)
        if found:
            return found[-1]
    return None


def install_dp_cli(ctx: StepContext) -> int:
    runner = ctx.runner
    pkg = find_cli_package(Path.cwd())
    if pkg is None:
        raise PreconditionMissing(
            'No dp_cli-*.tar.gz or dp_cli-*.tar found in the current '
            'directory; copy the package here and re-run STEP 13'
        )
    log.info('dp_cli package detected: {}', pkg)
    runner.run(['apt-get', 'update', '-y'])
    runner.run(['apt-get', 'install', '-y', 'python3-pip', 'python3-venv'])
    runner.run(['python3', '-m', 'venv', VENV_DIR])
    pip = f'{VENV_DIR}/bin/pip'
    runner.run([pip, 'install', '--upgrade', 'pip', 'setuptools<81', 'wheel'])
    runner.run([pip, 'install', '--upgrade', '--force-reinstall', str(pkg)])
    runner.run(['ln', '-sf', f'{VENV_DIR}/bin/dp_cli', LINK_PATH])
    ctx.prompter.notify(
        'STEP 13 Complete',
        f'dp_cli installed into {VENV_DIR} and linked at {LINK_PATH}.',
    )
    return 0
