"""null_resource: a resource with no remote object.

Useful as an anchor for provisioners. Any change to triggers replaces
the resource, re-running its provisioners.
"""

import logging
import secrets
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class NullResourceProvider:
    """Provider for null_resource."""

    computed = frozenset({'id'})
    replace_on = frozenset({'triggers'})

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def create(self, key: str, attributes: dict) -> dict:
        resource_id = str(secrets.randbelow(10**18) + 10**18)
        logger.debug(f"[{key}] Created null resource id={resource_id}")
        return {**attributes, 'id': resource_id}

    def read(self, key: str, attributes: dict) -> Optional[dict]:
        return dict(attributes)

    def update(self, key: str, prior: dict, attributes: dict) -> dict:
        return {**attributes, 'id': prior['id']}

    def delete(self, key: str, attributes: dict) -> None:
        logger.debug(f"[{key}] Deleted null resource id={attributes.get('id')}")
