"""Plan computation: diff desired configuration against stored state.

Each resource is classified as create, update, replace, destroy, or no-op.
The change list holds destroys in reverse dependency order followed by
create/update/replace (and no-op) changes in forward dependency order.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from config import ConfigError
from configuration import UNKNOWN, Configuration, contains_unknown, resolve_references
from engine.graph import DependencyGraph
from engine.state import StateSnapshot, parse_key
from providers import ProviderRegistry

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DESTROY = 'destroy'
NOOP = 'no-op'

SYMBOLS = {
    CREATE: '+',
    UPDATE: '~',
    REPLACE: '-/+',
    DESTROY: '-',
    NOOP: ' ',
}

_MISSING = object()


def _jsonable(value: Any) -> Any:
    if value is UNKNOWN:
        return '(known after apply)'
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class Change:
    """A planned change to one resource.

    Attributes:
        key: Resource address
        action: create, update, replace, destroy, or no-op
        type: Resource type
        before: Stored attributes (None for create)
        after: Desired attributes, UNKNOWN where only known after apply
            (None for destroy)
        dependencies: Keys this change is ordered after. Desired
            dependencies for create/update/replace, stored dependencies
            for destroy.
        changed: Attribute names that differ
        reasons: Human-readable reasons (tainted, forces replacement, ...)
        provisioners: Provisioners to run after creation
        attributes: Configured attributes with unresolved ${...} references
    """
    key: str
    action: str
    type: str
    before: Optional[dict] = None
    after: Optional[dict] = None
    dependencies: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    provisioners: list[dict] = field(default_factory=list)
    attributes: dict = field(default_factory=dict, repr=False)

    @property
    def symbol(self) -> str:
        return SYMBOLS[self.action]

    @property
    def is_noop(self) -> bool:
        return self.action == NOOP

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'action': self.action,
            'type': self.type,
        }
        if self.before is not None:
            d['before'] = self.before
        if self.after is not None:
            d['after'] = _jsonable(self.after)
        if self.changed:
            d['changed'] = list(self.changed)
        if self.reasons:
            d['reasons'] = list(self.reasons)
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        return d


@dataclass
class Plan:
    """Ordered change set.

    Attributes:
        changes: Destroys (reverse order), then forward changes
        lineage: Lineage of the snapshot the plan was computed against
        serial: Serial of that snapshot (0 when no state existed)
        destroy: True for a destroy-everything plan
    """
    changes: list[Change] = field(default_factory=list)
    lineage: Optional[str] = None
    serial: int = 0
    destroy: bool = False

    @property
    def actionable(self) -> list[Change]:
        return [c for c in self.changes if not c.is_noop]

    @property
    def has_changes(self) -> bool:
        return bool(self.actionable)

    def get(self, key: str) -> Change:
        """Get the change for a key.

        Raises:
            KeyError: If key is not in the plan
        """
        for change in self.changes:
            if change.key == key:
                return change
        raise KeyError(key)

    def summary(self) -> dict[str, int]:
        """Counts in Terraform's terms: a replace is one add plus one destroy."""
        counts = {'add': 0, 'change': 0, 'destroy': 0}
        for c in self.changes:
            if c.action in (CREATE, REPLACE):
                counts['add'] += 1
            if c.action in (DESTROY, REPLACE):
                counts['destroy'] += 1
            if c.action == UPDATE:
                counts['change'] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'lineage': self.lineage,
            'serial': self.serial,
            'destroy': self.destroy,
            'summary': self.summary(),
            'changes': [c.to_dict() for c in self.actionable],
        }


class Planner:
    """Computes a Plan from a Configuration and a StateSnapshot.

    Attributes:
        providers: Provider registry (for computed / replace-on attributes
            and refresh)
        refresh: Read current attributes from providers before diffing
    """

    def __init__(self, providers: ProviderRegistry, refresh: bool = True):
        self.providers = providers
        self.refresh = refresh

    def plan(self, configuration: Optional[Configuration], snapshot: Optional[StateSnapshot],
             destroy: bool = False, targets: Optional[Iterable[str]] = None) -> Plan:
        """Compute the change set.

        Args:
            configuration: Desired configuration (ignored when destroy=True)
            snapshot: Stored state (None when no state exists yet)
            destroy: Plan destruction of every stored resource
            targets: Restrict the plan to these keys and what they need

        Raises:
            ConfigError: On unknown targets, resource types, or attributes
            CycleDetected: If dependencies form a cycle
        """
        has_state = snapshot is not None
        snapshot = snapshot if has_state else StateSnapshot(serial=0)
        desired = {} if destroy or configuration is None else {
            r.key: r for r in configuration.resources
        }
        current = self._refreshed(snapshot) if self.refresh and not destroy else {
            r.key: dict(r.attributes) for r in snapshot.resources
        }

        all_keys = set(desired) | set(snapshot.keys())
        graph = DependencyGraph({
            key: desired[key].dependencies if key in desired
            else [d for d in snapshot.get(key).dependencies if d in all_keys]
            for key in all_keys
        })

        selected = self._select(graph, targets, destroy) if targets else set(all_keys)

        forward: list[Change] = []
        destroys: list[Change] = []
        pending: dict[str, Change] = {}

        for key in graph.create_order():
            if key not in selected:
                continue
            if key in desired:
                change = self._diff(key, desired[key], snapshot, current, pending)
                pending[key] = change
                forward.append(change)

        for key in graph.destroy_order():
            if key in selected and key not in desired:
                stored = snapshot.get(key)
                destroys.append(Change(
                    key=key,
                    action=DESTROY,
                    type=stored.type,
                    before=current.get(key) or dict(stored.attributes),
                    dependencies=[d for d in stored.dependencies if d in all_keys],
                    reasons=['destroy requested'] if destroy else ['not in configuration'],
                ))

        plan = Plan(
            changes=destroys + forward,
            lineage=snapshot.lineage if has_state else None,
            serial=snapshot.serial,
            destroy=destroy,
        )
        summary = plan.summary()
        logger.info(
            f"Plan: {summary['add']} to add, {summary['change']} to change, "
            f"{summary['destroy']} to destroy"
        )
        return plan

    def _refreshed(self, snapshot: StateSnapshot) -> dict[str, Optional[dict]]:
        """Current attributes per stored key; None when the object is gone."""
        current: dict[str, Optional[dict]] = {}
        for resource in snapshot.resources:
            provider = self.providers.get(resource.type)
            current[resource.key] = provider.read(resource.key, dict(resource.attributes))
        return current

    def _select(self, graph: DependencyGraph, targets: Iterable[str], destroy: bool) -> set[str]:
        selected: set[str] = set()
        for target in targets:
            if target not in graph:
                raise ConfigError(f"Target '{target}' is not in configuration or state")
            selected.add(target)
            if destroy:
                selected.update(graph.dependents_of(target, transitive=True))
            else:
                selected.update(graph.dependencies_of(target, transitive=True))
        return selected

    def _diff(self, key: str, rc, snapshot: StateSnapshot,
              current: dict[str, Optional[dict]], pending: dict[str, Change]) -> Change:
        """Classify one configured resource."""
        provider = self.providers.get(rc.type)

        def _lookup(ref_key: str, attr: str) -> Any:
            return self._reference_value(ref_key, attr, snapshot, current, pending)

        after = resolve_references(rc.attributes, _lookup)
        change = Change(
            key=key,
            action=NOOP,
            type=rc.type,
            after=after,
            dependencies=rc.dependencies,
            provisioners=rc.provisioners,
            attributes=rc.attributes,
        )

        if key not in snapshot:
            change.action = CREATE
            return change

        stored = snapshot.get(key)
        before = current.get(key)
        if before is None:
            change.action = CREATE
            change.reasons.append('resource no longer exists')
            return change
        change.before = before

        compared = set(after) | (set(before) - set(provider.computed))
        change.changed = sorted(
            attr for attr in compared
            if contains_unknown(after.get(attr)) or after.get(attr, _MISSING) != before.get(attr, _MISSING)
        )

        if stored.is_tainted:
            change.action = REPLACE
            change.reasons.append('tainted')
        elif not change.changed:
            change.action = NOOP
        else:
            forcing = [a for a in change.changed if a in provider.replace_on]
            if forcing:
                change.action = REPLACE
                change.reasons.extend(f'{a} forces replacement' for a in forcing)
            else:
                change.action = UPDATE
        return change

    def _reference_value(self, ref_key: str, attr: str, snapshot: StateSnapshot,
                         current: dict[str, Optional[dict]], pending: dict[str, Change]) -> Any:
        """Value of ${ref_key.attr} as far as it is known at plan time."""
        change = pending.get(ref_key)
        if change is None:
            raise ConfigError(f"Reference to '{ref_key}' which is not planned")

        if change.action in (CREATE, REPLACE):
            return UNKNOWN
        if change.action == UPDATE:
            if attr in change.after:
                return change.after[attr]
            _, type_, _ = parse_key(ref_key)
            if attr in self.providers.get(type_).computed:
                return UNKNOWN

        attrs = current.get(ref_key) or {}
        if attr not in attrs:
            raise ConfigError(f"Resource '{ref_key}' has no attribute '{attr}'")
        return attrs[attr]
