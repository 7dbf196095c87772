"""Common utilities shared by providers and the state engine."""

import hashlib
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    Extra env entries are layered over the current process environment.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update({k: str(v) for k, v in env.items()})
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=full_env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def safe_filename(key: str) -> str:
    """Map an arbitrary key (path, URL) to a short, filesystem-safe name."""
    stem = re.sub(r'[^A-Za-z0-9_.-]+', '_', key).strip('_')[-48:]
    digest = hashlib.sha1(key.encode('utf-8')).hexdigest()[:10]
    return f'{stem}-{digest}' if stem else digest
