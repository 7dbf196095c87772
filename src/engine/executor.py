"""Plan executor.

Applies a Plan in two phases: destroys (dependents before dependencies),
then create/update/replace (dependencies before dependents). Within a
phase, independent changes run concurrently on a bounded worker pool; a
change starts only once every change it is ordered after has completed.

Every completed change is committed to the state backend on its own
(serial + 1) under the state lock. A failed change marks its dependents
skipped while independent branches carry on; nothing is rolled back.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from configuration import resolve_references
from engine.backends import StateBackend
from engine.errors import EngineError, ResourceApplyFailed, StalePlan
from engine.lock import LockManager
from engine.planner import CREATE, DESTROY, REPLACE, UPDATE, Change, Plan
from engine.state import Resource, StateSnapshot, parse_key
from providers import ProviderRegistry, run_provisioners

logger = logging.getLogger(__name__)


@dataclass
class ChangeResult:
    """Outcome of one planned change.

    Attributes:
        key: Resource address
        action: Planned action
        status: pending, running, completed, failed, skipped, or cancelled
        error: Failure, skip, or cancel reason
    """
    key: str
    action: str
    status: str = 'pending'
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self) -> None:
        self.status = 'running'
        self.started_at = time.time()

    def complete(self) -> None:
        self.status = 'completed'
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = 'skipped'
        self.error = reason

    def cancel(self) -> None:
        self.status = 'cancelled'
        self.error = 'apply was cancelled'

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'action': self.action,
            'status': self.status,
        }
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


@dataclass
class ApplyResult:
    """Per-change outcomes plus the final snapshot."""
    results: dict[str, ChangeResult] = field(default_factory=dict)
    snapshot: Optional[StateSnapshot] = None
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and all(r.status == 'completed' for r in self.results.values())

    def by_status(self, status: str) -> list[str]:
        return sorted(k for k, r in self.results.items() if r.status == status)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'success': self.success,
            'cancelled': self.cancelled,
            'serial': self.snapshot.serial if self.snapshot else 0,
            'changes': [r.to_dict() for r in self.results.values()],
        }
        if self.error:
            d['error'] = self.error
        return d


def check_plan_current(plan: Plan, snapshot: Optional[StateSnapshot]) -> None:
    """Refuse to apply a plan computed against a different state.

    Raises:
        StalePlan: If lineage or serial changed since planning
    """
    if snapshot is None:
        if plan.lineage is not None:
            raise StalePlan("State was removed after the plan was computed")
        return
    if plan.lineage is None:
        raise StalePlan("State was created after the plan was computed")
    if snapshot.lineage != plan.lineage or snapshot.serial != plan.serial:
        raise StalePlan(
            f"State changed after the plan was computed "
            f"(planned against serial {plan.serial}, now {snapshot.serial})"
        )


class Executor:
    """Applies plans against a state backend.

    Attributes:
        backend: Where state is read and written
        lock_manager: Guards the backend's state
        providers: Resource type handlers
        parallelism: Maximum concurrent changes
        lock_timeout: Seconds to wait for a held lock
    """

    def __init__(self, backend: StateBackend, lock_manager: LockManager,
                 providers: ProviderRegistry, parallelism: int = 10,
                 lock_timeout: float = 0.0):
        self.backend = backend
        self.lock_manager = lock_manager
        self.providers = providers
        self.parallelism = max(1, parallelism)
        self.lock_timeout = lock_timeout
        self._cancel = threading.Event()
        self._mutex = threading.Lock()
        self._snapshot: Optional[StateSnapshot] = None
        self._token: Optional[str] = None
        self._fatal: Optional[EngineError] = None

    def cancel(self) -> None:
        """Stop starting new changes; in-flight changes finish."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested, waiting for in-flight changes...")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(self, plan: Plan, lock_token: Optional[str] = None) -> ApplyResult:
        """Execute a plan.

        Args:
            plan: Plan to apply
            lock_token: Token of a lock the caller already holds. When
                omitted the executor takes (and always releases) the lock.

        Raises:
            LockHeld: If the lock is held by someone else
            StateCorrupt: If the stored state fails validation
            StalePlan: If the state changed since the plan was computed
        """
        if lock_token is not None:
            holder = nullcontext(lock_token)
        else:
            holder = self.lock_manager.hold(
                self.backend.key,
                operation='destroy' if plan.destroy else 'apply',
                timeout=self.lock_timeout,
            )

        with holder as token:
            snapshot = self.backend.read()
            check_plan_current(plan, snapshot)
            self._snapshot = snapshot if snapshot is not None else StateSnapshot(serial=0)
            self._token = token
            self._fatal = None

            result = ApplyResult()
            for change in plan.actionable:
                result.results[change.key] = ChangeResult(key=change.key, action=change.action)

            destroys = [c for c in plan.actionable if c.action == DESTROY]
            forward = [c for c in plan.actionable if c.action != DESTROY]

            blocked: set[str] = set()
            self._run_phase(destroys, self._destroy_prerequisites(destroys), result, blocked)
            self._run_phase(forward, self._forward_prerequisites(forward), result, blocked)

            result.snapshot = self._snapshot
            result.cancelled = self.cancelled
            if self._fatal is not None:
                result.error = str(self._fatal)

        completed = len(result.by_status('completed'))
        logger.info(
            f"Apply finished: {completed}/{len(result.results)} change(s) completed, "
            f"{len(result.by_status('failed'))} failed, {len(result.by_status('skipped'))} skipped, "
            f"{len(result.by_status('cancelled'))} cancelled"
        )
        return result

    @staticmethod
    def _destroy_prerequisites(changes: list[Change]) -> dict[str, set[str]]:
        """A resource is destroyed after everything that depends on it."""
        keys = {c.key for c in changes}
        prereqs: dict[str, set[str]] = {c.key: set() for c in changes}
        for c in changes:
            for dep in c.dependencies:
                if dep in keys:
                    prereqs[dep].add(c.key)
        return prereqs

    @staticmethod
    def _forward_prerequisites(changes: list[Change]) -> dict[str, set[str]]:
        """A resource is created/updated after its dependencies."""
        keys = {c.key for c in changes}
        return {c.key: {d for d in c.dependencies if d in keys} for c in changes}

    def _run_phase(self, changes: list[Change], prereqs: dict[str, set[str]],
                   result: ApplyResult, blocked: set[str]) -> None:
        """Run changes respecting prerequisites on a worker pool.

        Keys that fail, are skipped, or are cancelled are added to blocked;
        anything ordered after a blocked key is skipped.
        """
        if not changes:
            return
        by_key = {c.key: c for c in changes}
        remaining = {c.key: set(prereqs[c.key]) for c in changes}
        done: set[str] = set()
        running: dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            while remaining or running:
                progressed = True
                while progressed and not self.cancelled:
                    progressed = False
                    for key in sorted(remaining):
                        waiting_on = remaining[key]
                        failed_deps = sorted(waiting_on & blocked)
                        if failed_deps:
                            result.results[key].skip(f"dependency '{failed_deps[0]}' did not complete")
                            logger.warning(f"[{key}] Skipped: dependency '{failed_deps[0]}' did not complete")
                            blocked.add(key)
                            del remaining[key]
                            progressed = True
                            continue
                        if waiting_on - done or len(running) >= self.parallelism:
                            continue
                        result.results[key].start()
                        running[pool.submit(self._execute, by_key[key])] = key
                        del remaining[key]
                        progressed = True

                if self.cancelled:
                    for key in sorted(remaining):
                        result.results[key].cancel()
                        blocked.add(key)
                    remaining.clear()

                if not running:
                    for key in sorted(remaining):
                        result.results[key].skip('prerequisites could not be satisfied')
                        blocked.add(key)
                    remaining.clear()
                    break

                finished, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in finished:
                    key = running.pop(future)
                    try:
                        future.result()
                    except ResourceApplyFailed as e:
                        result.results[key].fail(str(e))
                        blocked.add(key)
                        logger.error(f"[{key}] {by_key[key].action} failed: {e}")
                    else:
                        result.results[key].complete()
                        done.add(key)
                        logger.info(f"[{key}] {by_key[key].action} complete")

    def _execute(self, change: Change) -> None:
        """Apply one change and commit the outcome to state.

        Raises:
            ResourceApplyFailed: If the change did not complete
        """
        key = change.key
        logger.info(f"[{key}] {change.action.capitalize()}...")
        try:
            provider = self.providers.get(change.type)
            if change.action == DESTROY:
                provider.delete(key, change.before or {})
                self._commit(lambda s: s.remove(key) if key in s else None)
            elif change.action == UPDATE:
                attributes = self._resolve(change)
                try:
                    updated = provider.update(key, change.before or {}, attributes)
                except ResourceApplyFailed:
                    self._commit(lambda s: s.get(key).taint() if key in s else None)
                    raise
                self._commit(lambda s: s.put(self._applied(change, updated)))
            elif change.action == REPLACE:
                self._create(change, provider, replacing=True)
            elif change.action == CREATE:
                self._create(change, provider, replacing=False)
        except ResourceApplyFailed:
            raise
        except EngineError as e:
            # State could not be persisted: stop scheduling further changes
            self._fatal = e
            self.cancel()
            raise ResourceApplyFailed(key, f"state write failed: {e}")
        except Exception as e:
            logger.exception(f"[{key}] Unexpected error")
            raise ResourceApplyFailed(key, f"unexpected error: {e}")

    def _create(self, change: Change, provider, replacing: bool) -> None:
        key = change.key
        attributes = self._resolve(change)
        provisioners = self._resolve(change, change.provisioners)
        if replacing:
            provider.delete(key, change.before or {})
        try:
            created = provider.create(key, attributes)
            run_provisioners(key, provisioners, self.providers.base_dir, created)
        except ResourceApplyFailed as e:
            if e.partial is not None:
                tainted = self._applied(change, e.partial)
                tainted.taint()
                self._commit(lambda s: s.put(tainted))
                logger.warning(f"[{key}] Marked tainted after failed create")
            elif replacing:
                # The prior object was already deleted
                self._commit(lambda s: s.remove(key) if key in s else None)
            raise
        self._commit(lambda s: s.put(self._applied(change, created)))

    def _applied(self, change: Change, attributes: dict) -> Resource:
        module, type_, name = parse_key(change.key)
        resource = Resource(type=type_, name=name, module=module)
        resource.applied(attributes, change.dependencies)
        return resource

    def _resolve(self, change: Change, value: Any = None) -> Any:
        """Resolve ${...} references against the live snapshot.

        Resolves the change's configured attributes unless value is given.
        """

        def _lookup(ref_key: str, attr: str) -> Any:
            with self._mutex:
                if ref_key not in self._snapshot:
                    raise ResourceApplyFailed(change.key, f"referenced resource '{ref_key}' is not in state")
                attrs = self._snapshot.get(ref_key).attributes
            if attr not in attrs:
                raise ResourceApplyFailed(change.key, f"'{ref_key}' has no attribute '{attr}'")
            return attrs[attr]

        if value is None:
            value = change.attributes or change.after or {}
        return resolve_references(value, _lookup)

    def _commit(self, mutate: Callable[[StateSnapshot], Any]) -> None:
        """Write one resource-level change as a new snapshot serial."""
        with self._mutex:
            draft = self._snapshot.copy()
            mutate(draft)
            draft.serial = self._snapshot.serial + 1
            self.backend.write(draft, self._token)
            self._snapshot = draft
