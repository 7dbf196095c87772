#!/usr/bin/env python3
"""CLI entry point for groundstate.

Commands:
- plan / apply / destroy: Infrastructure lifecycle
- validate: Check a configuration document
- state: Inspect and edit stored state (list/show/mv/rm)
- taint / untaint: Force or cancel replacement of a resource
- lock: Inspect the state lock (status)
- force-unlock: Clear a lock left behind by another process
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

COMMANDS = {
    "plan": "Show changes required by the configuration",
    "apply": "Create or update infrastructure",
    "destroy": "Destroy infrastructure in state",
    "validate": "Validate a configuration document",
    "state": "Inspect and edit stored state (list/show/mv/rm)",
    "taint": "Mark a resource for replacement",
    "untaint": "Clear a resource's tainted mark",
    "lock": "Inspect the state lock (status)",
    "force-unlock": "Clear a lock left behind by another process",
}


def get_version() -> str:
    """Get the installed package version."""
    try:
        return version('groundstate')
    except PackageNotFoundError:
        return 'dev'


def print_usage() -> None:
    """Print top-level usage showing commands."""
    print(f"groundstate {get_version()}")
    print()
    print("Usage: groundstate <command> [options]")
    print()
    print("Commands:")
    for name, desc in COMMANDS.items():
        print(f"  {name:<14} {desc}")
    print()
    print("Run 'groundstate <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  groundstate plan -c main.yaml")
    print("  groundstate apply --yes --var env=dev")
    print("  groundstate state mv null_resource.a null_resource.b")
    print("  groundstate force-unlock 6f1c9d2e-... --force")


def dispatch(command: str, argv: list) -> int:
    """Dispatch to a command handler.

    Args:
        command: The command (e.g., "plan", "state")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from engine import cli as engine_cli

    handlers = {
        "plan": engine_cli.plan_main,
        "apply": engine_cli.apply_main,
        "destroy": engine_cli.destroy_main,
        "validate": engine_cli.validate_main,
        "state": engine_cli.state_main,
        "taint": engine_cli.taint_main,
        "untaint": engine_cli.untaint_main,
        "lock": engine_cli.lock_main,
        "force-unlock": engine_cli.force_unlock_main,
    }
    rc: int = handlers[command](argv)
    return rc


def main(argv: list = None) -> int:
    """CLI entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', 'version'):
        print(f"groundstate {get_version()}")
        return 0
    if first_arg in ('-h', '--help', 'help'):
        print_usage()
        return 0
    if first_arg not in COMMANDS:
        print(f"Error: Unknown command '{first_arg}'")
        print_usage()
        return 1

    return dispatch(first_arg, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
