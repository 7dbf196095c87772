"""local_file: a file on the local filesystem.

Attributes:
    filename: Path of the file (relative paths resolve against the
        working directory)
    content: File content
    file_permission: Octal mode string (default '0644')

The id is the SHA-1 of the content. Every configured attribute forces
replacement; the file is never patched in place.
"""

import hashlib
import logging
from pathlib import Path
from typing import Optional

from engine.errors import ResourceApplyFailed

logger = logging.getLogger(__name__)

DEFAULT_FILE_PERMISSION = '0644'


class LocalFileProvider:
    """Provider for local_file."""

    computed = frozenset({'id'})
    replace_on = frozenset({'filename', 'content', 'file_permission'})

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def _path(self, key: str, attributes: dict) -> Path:
        filename = attributes.get('filename')
        if not filename or not isinstance(filename, str):
            raise ResourceApplyFailed(key, "local_file requires a 'filename'")
        path = Path(filename)
        return path if path.is_absolute() else self.base_dir / path

    def _mode(self, key: str, attributes: dict) -> int:
        value = str(attributes.get('file_permission', DEFAULT_FILE_PERMISSION))
        try:
            return int(value, 8)
        except ValueError:
            raise ResourceApplyFailed(key, f"invalid file_permission '{value}'")

    def create(self, key: str, attributes: dict) -> dict:
        path = self._path(key, attributes)
        mode = self._mode(key, attributes)
        content = str(attributes.get('content', ''))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding='utf-8')
            path.chmod(mode)
        except OSError as e:
            raise ResourceApplyFailed(key, f"cannot write {path}: {e}")
        logger.info(f"[{key}] Wrote {path} ({len(content)} bytes)")
        return {
            **attributes,
            'id': hashlib.sha1(content.encode('utf-8')).hexdigest(),
        }

    def read(self, key: str, attributes: dict) -> Optional[dict]:
        path = self._path(key, attributes)
        try:
            content = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            logger.info(f"[{key}] {path} no longer exists")
            return None
        except OSError as e:
            raise ResourceApplyFailed(key, f"cannot read {path}: {e}")
        return {
            **attributes,
            'content': content,
            'id': hashlib.sha1(content.encode('utf-8')).hexdigest(),
        }

    def update(self, key: str, prior: dict, attributes: dict) -> dict:
        return self.create(key, attributes)

    def delete(self, key: str, attributes: dict) -> None:
        path = self._path(key, attributes)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise ResourceApplyFailed(key, f"cannot delete {path}: {e}")
        logger.info(f"[{key}] Removed {path}")
