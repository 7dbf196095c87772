"""CLI handlers for state engine commands.

Usage:
    groundstate plan [-c <file>] [--var k=v] [--target <key>] [--destroy] [--json-output]
    groundstate apply [-c <file>] [--var k=v] [--target <key>] [--yes] [--parallelism N]
    groundstate destroy [-c <file>] [--target <key>] [--yes]
    groundstate validate [-c <file>] [--var k=v]
    groundstate state list|show|mv|rm ...
    groundstate taint|untaint <key>
    groundstate lock status
    groundstate force-unlock <id> [--force] [--yes]

Exit codes: 0 success (or no changes), 1 error, 2 changes present (plan).
"""

import argparse
import json
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from config import ConfigError, EngineConfig, load_config
from configuration import UNKNOWN, Configuration, load_configuration
from engine.backends import backend_from_config, lock_manager_for
from engine.errors import EngineError
from engine.executor import ApplyResult, Executor
from engine.graph import DependencyGraph
from engine.lock import LockManager, default_holder
from engine.planner import Plan, Planner
from engine.state import StateSnapshot
from providers import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_CONFIGURATION = 'main.yaml'

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2


def _base_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all commands."""
    parser = argparse.ArgumentParser(prog=f'groundstate {verb}', description=description)
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    parser.add_argument(
        '--lock-timeout',
        type=float,
        help='Seconds to wait for a held state lock (default: from settings)',
    )
    return parser


def _configuration_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--config-file', '-c',
        help=f'Configuration document (default: {DEFAULT_CONFIGURATION} in the working directory)',
    )
    parser.add_argument(
        '--var',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Set a configuration variable (repeatable)',
    )


def _plan_args(parser: argparse.ArgumentParser) -> None:
    _configuration_args(parser)
    parser.add_argument(
        '--target',
        action='append',
        default=[],
        metavar='KEY',
        help='Limit the plan to a resource and what it needs (repeatable)',
    )
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Skip reading current attributes from providers',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _parse_vars(values: list[str]) -> dict:
    """Parse --var NAME=VALUE flags. Values are read as YAML scalars."""
    variables = {}
    for item in values:
        if '=' not in item:
            raise ConfigError(f"Invalid --var '{item}': expected NAME=VALUE")
        name, raw = item.split('=', 1)
        try:
            variables[name.strip()] = yaml.safe_load(raw) if raw else ''
        except yaml.YAMLError:
            variables[name.strip()] = raw
    return variables


class _Session:
    """Settings, backend, and lock manager for one invocation."""

    def __init__(self, args):
        self.settings: EngineConfig = load_config()
        if getattr(args, 'lock_timeout', None) is not None:
            self.settings.lock_timeout = args.lock_timeout
        if getattr(args, 'parallelism', None) is not None:
            self.settings.parallelism = args.parallelism
        self.backend = backend_from_config(self.settings)
        self.locks: LockManager = lock_manager_for(self.settings, self.backend)
        self.providers = ProviderRegistry(self.settings.work_dir)

    @property
    def key(self) -> str:
        return self.backend.key

    def hold(self, operation: str):
        return self.locks.hold(self.key, operation=operation, timeout=self.settings.lock_timeout)

    def configuration(self, args) -> Configuration:
        path = Path(args.config_file) if args.config_file else (
            self.settings.work_dir / DEFAULT_CONFIGURATION
        )
        return load_configuration(path, variables=_parse_vars(args.var))

    def update_state(self, operation: str, mutate: Callable[[StateSnapshot], Any]) -> StateSnapshot:
        """Read-modify-write the stored snapshot under the lock.

        Raises:
            ConfigError: If no state exists yet
        """
        with self.hold(operation) as token:
            snapshot = self.backend.read()
            if snapshot is None:
                raise ConfigError(f"No state found at {self.key}")
            draft = snapshot.copy()
            mutate(draft)
            draft.serial = snapshot.serial + 1
            self.backend.write(draft, token)
            return draft


def _run(handler: Callable[[Any], int], args) -> int:
    """Run a handler, mapping engine and configuration errors to exit code 1."""
    try:
        return handler(args)
    except (EngineError, ConfigError) as e:
        if args.json_output:
            print(json.dumps({'success': False, 'error': str(e), 'error_type': type(e).__name__},
                             indent=2))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


def _require(snapshot: StateSnapshot, key: str) -> None:
    if key not in snapshot:
        raise ConfigError(f"Resource '{key}' is not in state")


def _format_value(value: Any) -> str:
    if value is UNKNOWN:
        return '(known after apply)'
    return json.dumps(value, default=str)


def _print_plan(plan: Plan) -> None:
    """Print a human-readable plan."""
    if not plan.has_changes:
        print("No changes. Infrastructure matches the configuration.")
        return

    print("Planned changes:")
    print()
    for change in plan.actionable:
        reasons = f"  ({', '.join(change.reasons)})" if change.reasons else ''
        print(f"  {change.symbol} {change.key}{reasons}")
        if change.action == 'destroy':
            continue
        before = change.before or {}
        after = change.after or {}
        attrs = change.changed if change.before is not None else sorted(after)
        for attr in attrs:
            if attr in before and attr in after:
                print(f"      {attr}: {_format_value(before[attr])} -> {_format_value(after[attr])}")
            elif attr in after:
                print(f"      {attr}: {_format_value(after[attr])}")
            else:
                print(f"      {attr}: {_format_value(before[attr])} -> null")
    print()
    s = plan.summary()
    print(f"Plan: {s['add']} to add, {s['change']} to change, {s['destroy']} to destroy.")


def _print_result(result: ApplyResult) -> None:
    for r in result.results.values():
        line = f"  {r.key}: {r.status}"
        if r.error and r.status != 'completed':
            line += f" ({r.error})"
        print(line)
    if result.error:
        print(f"\nError: {result.error}")
    state = 'complete' if result.success else ('cancelled' if result.cancelled else 'incomplete')
    print(f"\nApply {state}: {len(result.by_status('completed'))} of "
          f"{len(result.results)} change(s) applied.")


def _emit_json(verb: str, success: bool, duration: float, **extra) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
    }
    output.update(extra)
    print(json.dumps(output, indent=2, default=str))


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N] ").strip().lower()
    return response == 'y'


def _apply_under_lock(args, session: _Session, verb: str, destroy: bool) -> int:
    """Plan and apply while holding the lock for the whole sequence."""
    configuration = None if destroy else session.configuration(args)
    planner = Planner(session.providers, refresh=not args.no_refresh)
    start = time.time()

    with session.hold(verb) as token:
        plan = planner.plan(configuration, session.backend.read(),
                            destroy=destroy, targets=args.target or None)
        if not args.json_output:
            _print_plan(plan)
        if not plan.has_changes:
            if args.json_output:
                _emit_json(verb, True, time.time() - start, plan=plan.to_dict(), changes=[])
            return EXIT_OK

        if not args.yes:
            if args.json_output:
                print("Error: --yes is required with --json-output", file=sys.stderr)
                return EXIT_ERROR
            if not _confirm(f"\nDo you want to perform these actions on '{session.key}'?"):
                print("Aborted.")
                return EXIT_ERROR

        executor = Executor(
            backend=session.backend,
            lock_manager=session.locks,
            providers=session.providers,
            parallelism=session.settings.parallelism,
            lock_timeout=session.settings.lock_timeout,
        )

        def _on_interrupt(signum, frame):
            executor.cancel()

        previous = signal.signal(signal.SIGINT, _on_interrupt)
        try:
            result = executor.apply(plan, lock_token=token)
        finally:
            signal.signal(signal.SIGINT, previous)

    duration = time.time() - start
    if args.json_output:
        outcome = result.to_dict()
        del outcome['success']
        _emit_json(verb, result.success, duration, plan=plan.to_dict(), **outcome)
    else:
        _print_result(result)
    return EXIT_OK if result.success else EXIT_ERROR


def plan_main(argv: list) -> int:
    """Handle 'plan' command."""
    parser = _base_parser('plan', 'Show changes required by the configuration')
    _plan_args(parser)
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Plan destruction of every resource in state',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    def _handler(args) -> int:
        session = _Session(args)
        configuration = None if args.destroy else session.configuration(args)
        planner = Planner(session.providers, refresh=not args.no_refresh)
        with session.hold('plan'):
            plan = planner.plan(configuration, session.backend.read(),
                                destroy=args.destroy, targets=args.target or None)
        if args.json_output:
            print(json.dumps(plan.to_dict(), indent=2, default=str))
        else:
            _print_plan(plan)
        return EXIT_CHANGES if plan.has_changes else EXIT_OK

    return _run(_handler, args)


def apply_main(argv: list) -> int:
    """Handle 'apply' command."""
    parser = _base_parser('apply', 'Create or update infrastructure')
    _plan_args(parser)
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    parser.add_argument('--parallelism', type=int, help='Maximum concurrent changes')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _run(lambda a: _apply_under_lock(a, _Session(a), 'apply', destroy=False), args)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' command."""
    parser = _base_parser('destroy', 'Destroy every resource in state')
    parser.add_argument(
        '--target',
        action='append',
        default=[],
        metavar='KEY',
        help='Destroy only this resource and what depends on it (repeatable)',
    )
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    parser.add_argument('--parallelism', type=int, help='Maximum concurrent changes')
    args = parser.parse_args(argv)
    args.no_refresh = True
    _setup_logging(args.verbose, args.json_output)
    return _run(lambda a: _apply_under_lock(a, _Session(a), 'destroy', destroy=True), args)


def validate_main(argv: list) -> int:
    """Handle 'validate' command.

    Loads the configuration and builds its dependency graph without
    touching state.
    """
    parser = _base_parser('validate', 'Validate a configuration document')
    _configuration_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    def _handler(args) -> int:
        settings = load_config()
        path = Path(args.config_file) if args.config_file else settings.work_dir / DEFAULT_CONFIGURATION
        configuration = load_configuration(path, variables=_parse_vars(args.var))
        graph = DependencyGraph.from_configuration(configuration)
        providers = ProviderRegistry(settings.work_dir)
        for resource in configuration.resources:
            providers.get(resource.type)

        if args.json_output:
            print(json.dumps({
                'success': True,
                'resources': len(graph),
                'order': graph.create_order(),
            }, indent=2))
        else:
            print(f"Configuration is valid: {len(graph)} resource(s), {len(graph.edges())} dependency edge(s)")
            if args.verbose:
                for i, level in enumerate(graph.levels()):
                    print(f"  level {i}: {', '.join(level)}")
        return EXIT_OK

    return _run(_handler, args)


def state_main(argv: list) -> int:
    """Handle 'state' command: list, show, mv, rm."""
    parser = _base_parser('state', 'Inspect and edit stored state')
    sub = parser.add_subparsers(dest='action')
    sub.add_parser('list', help='List resources in state')
    show = sub.add_parser('show', help='Show one resource')
    show.add_argument('key')
    mv = sub.add_parser('mv', help='Rename a resource address')
    mv.add_argument('source')
    mv.add_argument('destination')
    rm = sub.add_parser('rm', help='Forget a resource without destroying it')
    rm.add_argument('keys', nargs='+')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.action:
        parser.print_help()
        return EXIT_ERROR

    def _handler(args) -> int:
        session = _Session(args)

        if args.action == 'list':
            snapshot = session.backend.read()
            resources = snapshot.resources if snapshot else []
            if args.json_output:
                print(json.dumps([
                    {'key': r.key, 'lifecycle': r.lifecycle} for r in resources
                ], indent=2))
            else:
                for r in resources:
                    suffix = ' (tainted)' if r.is_tainted else ''
                    print(f"{r.key}{suffix}")
            return EXIT_OK

        if args.action == 'show':
            snapshot = session.backend.read()
            if snapshot is None or args.key not in snapshot:
                print(f"Error: resource '{args.key}' is not in state", file=sys.stderr)
                return EXIT_ERROR
            resource = snapshot.get(args.key)
            if args.json_output:
                print(json.dumps(resource.to_dict(), indent=2))
            else:
                print(f"# {resource.key} ({resource.lifecycle})")
                for name in sorted(resource.attributes):
                    print(f"  {name} = {_format_value(resource.attributes[name])}")
                if resource.dependencies:
                    print(f"  depends on: {', '.join(resource.dependencies)}")
            return EXIT_OK

        if args.action == 'mv':
            def _move(s: StateSnapshot) -> None:
                _require(s, args.source)
                try:
                    s.move(args.source, args.destination)
                except ValueError as e:
                    raise ConfigError(str(e))
            session.update_state('state mv', _move)
            print(f"Moved {args.source} to {args.destination}")
            return EXIT_OK

        # rm
        def _remove(s: StateSnapshot) -> None:
            for key in args.keys:
                _require(s, key)
                s.remove(key)
        session.update_state('state rm', _remove)
        for key in args.keys:
            print(f"Removed {key}")
        return EXIT_OK

    return _run(_handler, args)


def _set_taint(argv: list, taint: bool) -> int:
    verb = 'taint' if taint else 'untaint'
    parser = _base_parser(verb, f"Mark a resource as {'tainted' if taint else 'not tainted'}")
    parser.add_argument('key', help='Resource address')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    def _handler(args) -> int:
        session = _Session(args)

        def _mark(s: StateSnapshot) -> None:
            _require(s, args.key)
            resource = s.get(args.key)
            if taint:
                resource.taint()
            else:
                resource.untaint()
        session.update_state(verb, _mark)
        print(f"Resource {args.key} has been {'tainted' if taint else 'untainted'}.")
        return EXIT_OK

    return _run(_handler, args)


def taint_main(argv: list) -> int:
    """Handle 'taint' command."""
    return _set_taint(argv, taint=True)


def untaint_main(argv: list) -> int:
    """Handle 'untaint' command."""
    return _set_taint(argv, taint=False)


def lock_main(argv: list) -> int:
    """Handle 'lock status' command."""
    parser = _base_parser('lock', 'Inspect the state lock')
    sub = parser.add_subparsers(dest='action')
    sub.add_parser('status', help='Show the active lock, if any')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if args.action != 'status':
        parser.print_help()
        return EXIT_ERROR

    def _handler(args) -> int:
        session = _Session(args)
        record = session.locks.inspect(session.key)
        unknown = record is None and not session.locks.reports_locks
        if args.json_output:
            output: dict[str, Any] = {
                'key': session.key,
                'locked': None if unknown else record is not None,
            }
            if record is not None:
                output['lock'] = record.to_dict()
                output['stale'] = session.locks.is_stale(record)
            print(json.dumps(output, indent=2))
        elif unknown:
            print(f"Lock state of '{session.key}' is unknown: the backend does not report locks.")
        elif record is None:
            print(f"State '{session.key}' is not locked.")
        else:
            stale = ' (stale)' if session.locks.is_stale(record) else ''
            print(f"State '{session.key}' is locked{stale}:")
            print(f"  ID:        {record.id}")
            print(f"  Who:       {record.who}")
            print(f"  Operation: {record.operation}")
            print(f"  Age:       {record.age():.0f}s")
        return EXIT_OK

    return _run(_handler, args)


def force_unlock_main(argv: list) -> int:
    """Handle 'force-unlock' command."""
    parser = _base_parser('force-unlock', 'Clear a state lock left behind by another process')
    parser.add_argument('lock_id', help='ID of the lock to clear')
    parser.add_argument('--force', action='store_true', help='Clear the lock even if it is not stale')
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    parser.add_argument('--operator', help='Identity recorded in the audit trail (default: user@host)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    def _handler(args) -> int:
        session = _Session(args)
        if not args.yes:
            print(f"\nWARNING: This will remove lock {args.lock_id} on '{session.key}'.")
            print("Only do this if the process holding it is no longer running.")
            if not _confirm("Continue?"):
                print("Aborted.")
                return EXIT_ERROR

        operator: Optional[str] = args.operator or default_holder()
        record = session.locks.force_unlock(session.key, args.lock_id, operator=operator, force=args.force)
        if args.json_output:
            print(json.dumps({'success': True, 'cleared': record.to_dict()}, indent=2))
        else:
            print(f"Lock {record.id} held by {record.who} has been removed.")
        return EXIT_OK

    return _run(_handler, args)
