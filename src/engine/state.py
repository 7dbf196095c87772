"""State snapshot model for the state engine.

A StateSnapshot is the persisted record of every resource the engine
manages. It carries a lineage (identity of the state history) and a
serial that increases by one on every successful write.
"""

import copy
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from engine.errors import StateCorrupt

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

LIFECYCLES = ('planned', 'applied', 'tainted', 'destroyed')

_KEY_RE = re.compile(
    r'^(?P<module>(?:module\.[A-Za-z0-9_-]+(?:\[[^\]]*\])?\.)*)'
    r'(?P<type>[A-Za-z0-9_-]+)\.(?P<name>[A-Za-z0-9_-]+(?:\[[^\]]*\])?)$'
)


def make_key(type_: str, name: str, module: Optional[str] = None) -> str:
    """Build a resource address: [module.<m>.]<type>.<name>."""
    if module:
        return f'{module}.{type_}.{name}'
    return f'{type_}.{name}'


def parse_key(key: str) -> tuple[Optional[str], str, str]:
    """Split a resource address into (module, type, name).

    Raises:
        ValueError: If key is not a valid resource address
    """
    match = _KEY_RE.match(key)
    if not match:
        raise ValueError(f"Invalid resource address: '{key}'")
    module = match.group('module').rstrip('.') or None
    return module, match.group('type'), match.group('name')


@dataclass
class Resource:
    """A managed resource.

    Attributes:
        type: Resource type (selects the provider)
        name: Resource name, including any [index] suffix
        module: Module path prefix (e.g. 'module.net'), None for root
        attributes: Attribute values, including provider-computed ones
        lifecycle: planned, applied, tainted, or destroyed
        dependencies: Keys this resource depended on when last applied
    """
    type: str
    name: str
    module: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    lifecycle: str = 'planned'
    dependencies: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return make_key(self.type, self.name, self.module)

    @property
    def is_tainted(self) -> bool:
        return self.lifecycle == 'tainted'

    def applied(self, attributes: dict, dependencies: list[str]) -> None:
        self.attributes = dict(attributes)
        self.dependencies = sorted(dependencies)
        self.lifecycle = 'applied'

    def taint(self) -> None:
        self.lifecycle = 'tainted'

    def untaint(self) -> None:
        self.lifecycle = 'applied'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'type': self.type,
            'name': self.name,
            'lifecycle': self.lifecycle,
            'attributes': self.attributes,
            'dependencies': list(self.dependencies),
        }
        if self.module is not None:
            d['module'] = self.module
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Resource':
        return cls(
            type=data['type'],
            name=data['name'],
            module=data.get('module'),
            attributes=dict(data.get('attributes') or {}),
            lifecycle=data.get('lifecycle', 'applied'),
            dependencies=list(data.get('dependencies') or []),
        )


class StateSnapshot:
    """Versioned collection of managed resources.

    Resources are kept ordered by key so serialized documents are stable.
    """

    def __init__(self, lineage: Optional[str] = None, serial: int = 0,
                 lock_token: Optional[str] = None):
        self.lineage = lineage or str(uuid.uuid4())
        self.serial = serial
        self.lock_token = lock_token
        self._resources: dict[str, Resource] = {}

    def __repr__(self) -> str:
        return (f"StateSnapshot(lineage={self.lineage}, serial={self.serial}, "
                f"resources={len(self._resources)})")

    def __contains__(self, key: str) -> bool:
        return key in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    @property
    def resources(self) -> list[Resource]:
        """Resources ordered by key."""
        return [self._resources[k] for k in self.keys()]

    def keys(self) -> list[str]:
        return sorted(self._resources)

    def get(self, key: str) -> Resource:
        """Get a resource by key.

        Raises:
            KeyError: If the resource is not in state
        """
        return self._resources[key]

    def put(self, resource: Resource) -> None:
        self._resources[resource.key] = resource

    def remove(self, key: str) -> Resource:
        """Remove and return a resource.

        Raises:
            KeyError: If the resource is not in state
        """
        return self._resources.pop(key)

    def move(self, src: str, dst: str) -> Resource:
        """Rename a resource address (state mv).

        Dependency lists of other resources are rewritten to the new key.

        Raises:
            KeyError: If src is not in state
            ValueError: If dst is already in state or is not a valid address
        """
        if dst in self._resources:
            raise ValueError(f"Destination '{dst}' already exists in state")
        module, type_, name = parse_key(dst)
        resource = self._resources.pop(src)
        resource.module, resource.type, resource.name = module, type_, name
        self._resources[dst] = resource
        for other in self._resources.values():
            if src in other.dependencies:
                other.dependencies = sorted(dst if d == src else d for d in other.dependencies)
        return resource

    def copy(self) -> 'StateSnapshot':
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            'version': STATE_FORMAT_VERSION,
            'lineage': self.lineage,
            'serial': self.serial,
            'lock_token': self.lock_token,
            'resources': [r.to_dict() for r in self.resources],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=False)

    @classmethod
    def from_dict(cls, data: Any) -> 'StateSnapshot':
        """Build a snapshot from a parsed state document.

        Raises:
            StateCorrupt: If the document fails structural validation
        """
        validate_state_document(data)
        snapshot = cls(
            lineage=data['lineage'],
            serial=data['serial'],
            lock_token=data.get('lock_token'),
        )
        for entry in data['resources']:
            snapshot.put(Resource.from_dict(entry))
        return snapshot

    @classmethod
    def from_json(cls, text: str) -> 'StateSnapshot':
        """Parse a JSON state document.

        Raises:
            StateCorrupt: If the text is not valid JSON or fails validation
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise StateCorrupt(f"State is not valid JSON: {e}")
        return cls.from_dict(data)


def validate_state_document(data: Any) -> None:
    """Check the structure of a state document.

    Checks for:
    - Supported format version
    - lineage string and non-negative integer serial
    - Well-formed resource entries with known lifecycles
    - Resource keys consistent with type/name/module
    - Duplicate resource keys

    Raises:
        StateCorrupt: On the first problem found
    """
    if not isinstance(data, dict):
        raise StateCorrupt("State document must be an object")

    version = data.get('version')
    if version != STATE_FORMAT_VERSION:
        raise StateCorrupt(
            f"Unsupported state format version: {version}. "
            f"Supported version: {STATE_FORMAT_VERSION}"
        )
    if not isinstance(data.get('lineage'), str) or not data['lineage']:
        raise StateCorrupt("State is missing a lineage")
    serial = data.get('serial')
    if not isinstance(serial, int) or isinstance(serial, bool) or serial < 0:
        raise StateCorrupt(f"State serial must be a non-negative integer, got {serial!r}")
    token = data.get('lock_token')
    if token is not None and not isinstance(token, str):
        raise StateCorrupt("State lock_token must be a string")

    resources = data.get('resources')
    if not isinstance(resources, list):
        raise StateCorrupt("State resources must be a list")

    seen: set[str] = set()
    for i, entry in enumerate(resources):
        if not isinstance(entry, dict):
            raise StateCorrupt(f"Resource {i} must be an object")
        for required in ('type', 'name'):
            if not isinstance(entry.get(required), str) or not entry[required]:
                raise StateCorrupt(f"Resource {i} missing required field: {required}")
        module = entry.get('module')
        if module is not None and not isinstance(module, str):
            raise StateCorrupt(f"Resource {i} module must be a string")
        key = make_key(entry['type'], entry['name'], module)
        try:
            parse_key(key)
        except ValueError:
            raise StateCorrupt(f"Resource {i} has an invalid address '{key}'")
        if 'key' in entry and entry['key'] != key:
            raise StateCorrupt(
                f"Resource {i} key '{entry['key']}' does not match its type/name ('{key}')"
            )
        if entry.get('lifecycle', 'applied') not in LIFECYCLES:
            raise StateCorrupt(f"Resource '{key}' has unknown lifecycle '{entry.get('lifecycle')}'")
        if not isinstance(entry.get('attributes', {}), dict):
            raise StateCorrupt(f"Resource '{key}' attributes must be an object")
        deps = entry.get('dependencies', [])
        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            raise StateCorrupt(f"Resource '{key}' dependencies must be a list of strings")
        if key in seen:
            raise StateCorrupt(f"Duplicate resource in state: '{key}'")
        seen.add(key)
