#!/usr/bin/env python3
"""CLI entry point for airstack.

Supports noun-action subcommands:
- airstack stack apply -S airflow
- airstack stack destroy -S airflow --yes

Nouns:
- stack: Resource graph lifecycle (apply/destroy/preview/refresh/outputs/validate)
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path

from providers.catalog import list_types
from stack import StackLoader

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Resource graph lifecycle (apply/destroy/preview/refresh/outputs/validate)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-S', 'airflow'])

    Returns:
        Exit code
    """
    from stack_opr.cli import VERBS

    if not argv or argv[0].startswith('-'):
        print("Usage: airstack stack <action> [options]")
        print()
        print("Actions:")
        for verb, (_handler, desc) in VERBS.items():
            print(f"  {verb:<9} {desc}")
        print()
        print("Run 'airstack stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    if action not in VERBS:
        print(f"Error: Unknown stack action '{action}'")
        print(f"Available actions: {', '.join(VERBS)}")
        return 1

    handler, _desc = VERBS[action]
    rc: int = handler(argv[1:])
    return rc


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"airstack {get_version()}")
    print()
    print("Usage: airstack <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'airstack <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  airstack stack validate -S airflow")
    print("  airstack stack preview -S airflow")
    print("  airstack stack apply -S airflow --parallel 4")
    print("  airstack stack destroy -S airflow --yes")


def main(argv=None):
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg == 'stack':
        return dispatch_stack(argv[1:])

    if not first_arg.startswith('-'):
        print(f"Error: Unknown command '{first_arg}'")
        print_usage()
        return 1

    parser = argparse.ArgumentParser(
        prog='airstack',
        description='Declarative resource-graph evaluator',
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'airstack {get_version()}'
    )
    parser.add_argument(
        '--list-stacks',
        action='store_true',
        help='List available stacks'
    )
    parser.add_argument(
        '--list-types',
        action='store_true',
        help='List supported resource types'
    )
    args = parser.parse_args(argv)

    if args.list_stacks:
        print("Available stacks:")
        for name in StackLoader().list_stacks():
            print(f"  {name}")
        return 0

    if args.list_types:
        print("Supported resource types:")
        for token in list_types():
            print(f"  {token}")
        return 0

    print_usage()
    return 0


if __name__ == '__main__':
    sys.exit(main())
