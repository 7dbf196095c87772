"""Creation-time provisioners.

Only local_exec is supported: the command runs through /bin/sh -c on the
machine running the engine, after the resource has been created.
"""

import logging
from pathlib import Path

from common import run_command
from engine.errors import ResourceApplyFailed

logger = logging.getLogger(__name__)

PROVISIONER_TIMEOUT = 600


def run_provisioners(key: str, provisioners: list[dict], base_dir: Path,
                     created: dict) -> None:
    """Run provisioners for a freshly created resource.

    Raises:
        ResourceApplyFailed: On the first failing command, with the created
            attributes as partial state so the resource can be tainted
    """
    for i, prov in enumerate(provisioners):
        command = prov['command']
        cwd = base_dir / prov['working_dir'] if prov.get('working_dir') else base_dir
        logger.info(f"[{key}] local_exec ({i + 1}/{len(provisioners)}): {command}")
        rc, out, err = run_command(
            ['sh', '-c', command],
            cwd=cwd,
            timeout=PROVISIONER_TIMEOUT,
            env=prov.get('environment') or None,
        )
        for line in out.splitlines():
            logger.info(f"[{key}] {line}")
        if rc != 0:
            raise ResourceApplyFailed(
                key,
                f"local_exec failed (exit {rc}): {err.strip() or command}",
                partial=created,
            )
