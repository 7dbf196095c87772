"""Configuration loading and validation for the state engine.

A configuration document (YAML or JSON) declares the desired resources:

    name: web
    variables:
      greeting: hello
      port: {default: 8080, description: Listen port}
    resources:
      - type: local_file
        name: index
        attributes:
          filename: out/index.html
          content: "${var.greeting}"
      - type: null_resource
        name: check
        count: 2
        depends_on: [local_file.index]
        attributes:
          triggers: {file_id: "${local_file.index.id}"}
        provisioners:
          - local_exec: "echo check ${count.index}"
    modules:
      - name: net
        source: modules/net.yaml
        variables: {cidr: 10.0.0.0/16}

Interpolation happens in two phases:
- load time: ${var.x}, ${count.index}, ${each.key}, ${each.value}
- apply time: ${<type>.<name>.<attr>} references to other resources,
  which also add implicit dependency edges

Resources of a module are addressed module.<name>.<type>.<name>; a
module's references are rewritten to those absolute addresses.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from config import ConfigError
from engine.state import make_key

logger = logging.getLogger(__name__)

_IDENT = r'[A-Za-z0-9_-]+'
_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')

LOCAL_RE = re.compile(r'\$\{\s*(?P<ns>var|count|each)\.(?P<name>' + _IDENT + r')\s*\}')
REFERENCE_RE = re.compile(
    r'\$\{\s*(?P<key>(?:module\.' + _IDENT + r'(?:\[[^\]]*\])?\.)*'
    + _IDENT + r'\.' + _IDENT + r'(?:\[[^\]]*\])?)'
    r'\.(?P<attr>' + _IDENT + r')\s*\}'
)

# Guards against a module including itself through a chain of sources
MAX_MODULE_DEPTH = 8


class _Unknown:
    """Value of a reference that is only known after apply."""

    def __repr__(self) -> str:
        return '(known after apply)'

    def __deepcopy__(self, memo):
        return self


UNKNOWN = _Unknown()


def walk_strings(value: Any, fn: Callable[[str], Any]) -> Any:
    """Return a copy of value with fn applied to every string leaf."""
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, dict):
        return {k: walk_strings(v, fn) for k, v in value.items()}
    if isinstance(value, list):
        return [walk_strings(v, fn) for v in value]
    return value


def find_references(value: Any) -> set[str]:
    """Collect resource keys referenced by ${<key>.<attr>} expressions."""
    found: set[str] = set()

    def _collect(s: str) -> str:
        found.update(m.group('key') for m in REFERENCE_RE.finditer(s))
        return s

    walk_strings(value, _collect)
    return found


def _substitute(pattern: re.Pattern, s: str, lookup: Callable[[re.Match], Any]) -> Any:
    """Replace matches of pattern in s.

    A string that is exactly one expression takes the raw looked-up value
    (keeping its type); otherwise values are embedded as text. An UNKNOWN
    anywhere makes the whole string UNKNOWN.
    """
    full = pattern.fullmatch(s)
    if full:
        return lookup(full)

    unknown = False

    def _repl(m: re.Match) -> str:
        nonlocal unknown
        value = lookup(m)
        if value is UNKNOWN:
            unknown = True
            return ''
        return str(value)

    result = pattern.sub(_repl, s)
    return UNKNOWN if unknown else result


def resolve_references(value: Any, lookup: Callable[[str, str], Any]) -> Any:
    """Resolve ${<key>.<attr>} references using lookup(key, attr).

    lookup may return UNKNOWN for values that are not known yet, or raise
    KeyError for missing attributes.
    """
    return walk_strings(
        value,
        lambda s: _substitute(REFERENCE_RE, s, lambda m: lookup(m.group('key'), m.group('attr'))),
    )


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def _interpolate_locals(value: Any, scope: dict[str, dict], where: str) -> Any:
    """Apply load-time interpolation (var, count, each)."""

    def _lookup(m: re.Match) -> Any:
        ns, name = m.group('ns'), m.group('name')
        if ns not in scope:
            raise ConfigError(f"{where}: '{ns}.{name}' is not available here")
        if name not in scope[ns]:
            raise ConfigError(f"{where}: unknown {ns} '{name}'")
        return scope[ns][name]

    return walk_strings(value, lambda s: _substitute(LOCAL_RE, s, _lookup))


def _prefix_references(value: Any, module: Optional[str]) -> Any:
    """Rewrite module-local references to absolute addresses."""
    if not module:
        return value

    def _rewrite(s: str) -> str:
        return REFERENCE_RE.sub(lambda m: '${' + f"{module}.{m.group('key')}.{m.group('attr')}" + '}', s)

    return walk_strings(value, _rewrite)


@dataclass
class ResourceConfig:
    """Desired configuration of one resource instance.

    Attributes:
        type: Resource type (selects the provider)
        name: Instance name, including [index] for count/for_each
        module: Module path prefix, None for root resources
        attributes: Desired attributes (may hold ${...} references)
        depends_on: Explicit dependencies (absolute keys)
        provisioners: Creation-time provisioners
    """
    type: str
    name: str
    module: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    provisioners: list[dict] = field(default_factory=list)

    @property
    def key(self) -> str:
        return make_key(self.type, self.name, self.module)

    @property
    def references(self) -> set[str]:
        """Keys referenced implicitly through ${...} expressions."""
        return find_references(self.attributes) | find_references(self.provisioners)

    @property
    def dependencies(self) -> list[str]:
        return sorted(set(self.depends_on) | self.references)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'type': self.type,
            'name': self.name,
            'attributes': self.attributes,
        }
        if self.module:
            d['module'] = self.module
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.provisioners:
            d['provisioners'] = self.provisioners
        return d


@dataclass
class Configuration:
    """Desired state: a flat set of resource instances.

    Attributes:
        name: Configuration name
        resources: Expanded resource instances (modules flattened)
        variables: Resolved root variables
        source_path: Where the configuration was loaded from
    """
    name: str
    resources: list[ResourceConfig] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def keys(self) -> list[str]:
        return sorted(r.key for r in self.resources)

    def get(self, key: str) -> ResourceConfig:
        """Get a resource by key.

        Raises:
            KeyError: If key is not configured
        """
        for resource in self.resources:
            if resource.key == key:
                return resource
        raise KeyError(key)

    def __contains__(self, key: str) -> bool:
        return any(r.key == key for r in self.resources)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'variables': self.variables,
            'resources': [r.to_dict() for r in self.resources],
        }

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None,
                  variables: Optional[dict] = None) -> 'Configuration':
        """Build a validated configuration from a parsed document.

        Args:
            data: Configuration document
            source_path: File the document came from (resolves module sources)
            variables: Variable overrides (e.g. from -var on the command line)

        Raises:
            ConfigError: If the document is invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be an object (dict)")

        base_dir = source_path.parent if source_path else Path.cwd()
        resolved_vars = _resolve_variables(data.get('variables'), variables or {}, 'root')
        resources = _expand_document(data, resolved_vars, None, base_dir, depth=0)

        _check_duplicates(resources)
        _resolve_depends_on(resources)
        _validate_references(resources)

        name = data.get('name') or (source_path.stem if source_path else 'default')
        logger.debug(f"Loaded configuration '{name}' with {len(resources)} resource(s)")
        return cls(
            name=name,
            resources=sorted(resources, key=lambda r: r.key),
            variables=resolved_vars,
            source_path=source_path,
        )


def _resolve_variables(declared: Optional[dict], overrides: dict, where: str) -> dict:
    """Combine declared variable defaults with overrides."""
    if declared is None:
        declared = {}
    if not isinstance(declared, dict):
        raise ConfigError(f"{where}: variables must be an object")

    resolved: dict[str, Any] = {}
    for name, spec in declared.items():
        if isinstance(spec, dict) and ('default' in spec or 'description' in spec or 'type' in spec):
            if name in overrides:
                resolved[name] = overrides[name]
            elif 'default' in spec:
                resolved[name] = spec['default']
            else:
                raise ConfigError(f"{where}: variable '{name}' has no value")
        else:
            resolved[name] = overrides.get(name, spec)

    for name in overrides:
        if name not in declared:
            raise ConfigError(f"{where}: value given for undeclared variable '{name}'")
    return resolved


def _expand_document(data: dict, variables: dict, module: Optional[str],
                     base_dir: Path, depth: int) -> list[ResourceConfig]:
    """Expand resources and modules of one document into instances."""
    where = module or 'root'
    if depth > MAX_MODULE_DEPTH:
        raise ConfigError(f"{where}: modules nested deeper than {MAX_MODULE_DEPTH} levels")

    raw_resources = data.get('resources') or []
    if not isinstance(raw_resources, list):
        raise ConfigError(f"{where}: resources must be a list")

    instances: list[ResourceConfig] = []
    for i, entry in enumerate(raw_resources):
        instances.extend(_expand_resource(entry, i, variables, module))

    raw_modules = data.get('modules') or []
    if not isinstance(raw_modules, list):
        raise ConfigError(f"{where}: modules must be a list")

    seen_modules: set[str] = set()
    for i, entry in enumerate(raw_modules):
        if not isinstance(entry, dict) or 'name' not in entry or 'source' not in entry:
            raise ConfigError(f"{where}: module {i} requires 'name' and 'source'")
        mod_name = entry['name']
        if not _NAME_RE.match(mod_name):
            raise ConfigError(f"{where}: invalid module name '{mod_name}'")
        if mod_name in seen_modules:
            raise ConfigError(f"{where}: duplicate module name '{mod_name}'")
        seen_modules.add(mod_name)

        source = base_dir / entry['source']
        child_doc = _parse_document(source)
        child_path = f'{module}.module.{mod_name}' if module else f'module.{mod_name}'
        # Values are evaluated in this document's scope, so their resource
        # references are addressed relative to it
        passed = _prefix_references(
            _interpolate_locals(entry.get('variables') or {}, {'var': variables}, where), module,
        )
        child_vars = _resolve_variables(child_doc.get('variables'), passed, child_path)
        instances.extend(_expand_document(child_doc, child_vars, child_path, source.parent, depth + 1))

    return instances


def _expand_resource(entry: Any, index: int, variables: dict,
                     module: Optional[str]) -> list[ResourceConfig]:
    """Expand one resource block into instances (count / for_each)."""
    where = module or 'root'
    if not isinstance(entry, dict):
        raise ConfigError(f"{where}: resource {index} must be an object")
    for required in ('type', 'name'):
        if required not in entry:
            raise ConfigError(f"{where}: resource {index} missing required field: {required}")

    type_, name = entry['type'], entry['name']
    for label, value in (('type', type_), ('name', name)):
        if not isinstance(value, str) or not _NAME_RE.match(value):
            raise ConfigError(f"{where}: resource {index} has invalid {label} '{value}'")

    where = f"{make_key(type_, name, module)}"
    attributes = entry.get('attributes') or {}
    if not isinstance(attributes, dict):
        raise ConfigError(f"{where}: attributes must be an object")
    depends_on = entry.get('depends_on') or []
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ConfigError(f"{where}: depends_on must be a list of resource addresses")
    provisioners = [_normalize_provisioner(p, where) for p in entry.get('provisioners') or []]

    if 'count' in entry and 'for_each' in entry:
        raise ConfigError(f"{where}: count and for_each are mutually exclusive")

    base_scope: dict[str, dict] = {'var': variables}
    scopes: list[tuple[str, dict]] = []
    if 'count' in entry:
        count = _interpolate_locals(entry['count'], base_scope, where)
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise ConfigError(f"{where}: count must be a non-negative integer, got {count!r}")
        for n in range(count):
            scopes.append((f'{name}[{n}]', {**base_scope, 'count': {'index': n}}))
    elif 'for_each' in entry:
        items = _interpolate_locals(entry['for_each'], base_scope, where)
        if isinstance(items, list):
            if not all(isinstance(k, str) for k in items):
                raise ConfigError(f"{where}: for_each list must contain strings")
            items = {k: k for k in items}
        if not isinstance(items, dict):
            raise ConfigError(f"{where}: for_each must be an object or a list of strings")
        for k in sorted(items):
            scopes.append((f'{name}["{k}"]', {**base_scope, 'each': {'key': k, 'value': items[k]}}))
    else:
        scopes.append((name, base_scope))

    # Prefix before substituting variables: values passed in by a parent
    # module already carry absolute addresses
    attributes = _prefix_references(attributes, module)
    provisioners = _prefix_references(provisioners, module)

    instances = []
    for instance_name, scope in scopes:
        instances.append(ResourceConfig(
            type=type_,
            name=instance_name,
            module=module,
            attributes=_interpolate_locals(attributes, scope, where),
            depends_on=[make_key_in_module(d, module) for d in depends_on],
            provisioners=_interpolate_locals(provisioners, scope, where),
        ))
    return instances


def make_key_in_module(address: str, module: Optional[str]) -> str:
    return f'{module}.{address}' if module else address


def _normalize_provisioner(entry: Any, where: str) -> dict:
    """Normalize a provisioner block to {'type': 'local_exec', 'command': ...}."""
    if not isinstance(entry, dict) or len(entry) != 1:
        raise ConfigError(f"{where}: each provisioner must have exactly one type")
    ptype, body = next(iter(entry.items()))
    if ptype != 'local_exec':
        raise ConfigError(f"{where}: unsupported provisioner type '{ptype}'")
    if isinstance(body, str):
        body = {'command': body}
    if not isinstance(body, dict) or not body.get('command'):
        raise ConfigError(f"{where}: local_exec requires a command")
    return {
        'type': 'local_exec',
        'command': body['command'],
        'environment': dict(body.get('environment') or {}),
        'working_dir': body.get('working_dir'),
    }


def _check_duplicates(resources: list[ResourceConfig]) -> None:
    seen: set[str] = set()
    for r in resources:
        if r.key in seen:
            raise ConfigError(f"Duplicate resource address: '{r.key}'")
        seen.add(r.key)


def _resolve_depends_on(resources: list[ResourceConfig]) -> None:
    """Expand depends_on entries naming a counted resource to all instances."""
    keys = {r.key for r in resources}
    for r in resources:
        expanded: list[str] = []
        for dep in r.depends_on:
            if dep in keys:
                expanded.append(dep)
                continue
            instances = sorted(k for k in keys if k.startswith(dep + "["))
            if not instances:
                raise ConfigError(f"{r.key}: depends_on references unknown resource '{dep}'")
            expanded.extend(instances)
        r.depends_on = sorted(set(expanded))


def _validate_references(resources: list[ResourceConfig]) -> None:
    keys = {r.key for r in resources}
    for r in resources:
        for ref in sorted(r.references):
            if ref not in keys:
                raise ConfigError(f"{r.key}: reference to undeclared resource '{ref}'")


def _parse_document(path: Path) -> dict:
    """Parse a YAML or JSON configuration document."""
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must be a YAML object (dict)")
    return data


def load_configuration(path: Path, variables: Optional[dict] = None) -> Configuration:
    """Load a configuration document from a file.

    Raises:
        ConfigError: If the file is missing or invalid
    """
    path = Path(path)
    return Configuration.from_dict(_parse_document(path), source_path=path, variables=variables)
