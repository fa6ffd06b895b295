"""CLI handlers for stack verb commands.

Usage:
    airstack stack apply -S <stack> [--dry-run] [--json-output] [--verbose] [--parallel N]
    airstack stack destroy -S <stack> [--dry-run] [--yes]
    airstack stack preview -S <stack> [--json-output]
    airstack stack refresh -S <stack> [--reconcile]
    airstack stack outputs -S <stack> [--json-output]
    airstack stack validate -S <stack> [--verbose]
"""

import argparse
import json
import logging
import signal
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

from config import ConfigError, get_state_dir
from providers import PROVIDERS, get_provider
from stack import Stack, StackLoader, load_stack
from stack_opr.executor import DeploymentExecutor, DeploymentResult
from stack_opr.graph import StackGraph
from stack_opr.state import STATE_FILE, StateStore
from stack_opr.values import snapshot

logger = logging.getLogger(__name__)


def _common_parser(verb: str, description: Optional[str] = None) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'airstack stack {verb}',
        description=description or f'{verb.capitalize()} resources from a stack',
    )
    parser.add_argument(
        '--stack', '-S',
        help=f'Stack name from stacks/. Available: {", ".join(StackLoader().list_stacks()) or "none"}',
    )
    parser.add_argument(
        '--stack-file',
        help='Path to stack file',
    )
    parser.add_argument(
        '--provider',
        choices=PROVIDERS,
        default='local',
        help='Resource provider (default: local)',
    )
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
    return parser


def _add_execution_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--parallel',
        type=int,
        help='Maximum concurrent resource operations (default: stack settings.parallel)',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
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


def _load(args) -> Stack:
    """Load the stack selected by args.

    Raises:
        SystemExit: On configuration errors
    """
    if not args.stack and not args.stack_file:
        print("Error: specify a stack with -S or --stack-file", file=sys.stderr)
        sys.exit(1)
    try:
        return load_stack(name=args.stack, file_path=args.stack_file)
    except ConfigError as e:
        print(f"Error loading stack: {e}", file=sys.stderr)
        sys.exit(1)


def _build_executor(args, stack: Stack) -> DeploymentExecutor:
    """Assemble graph, provider and state store for a stack.

    Raises:
        SystemExit: On configuration errors
    """
    try:
        graph = StackGraph(stack)
        provider = get_provider(args.provider, stack.name)
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    store = StateStore.open(stack.name, get_state_dir() / stack.name / STATE_FILE)
    return DeploymentExecutor(
        stack=stack,
        graph=graph,
        provider=provider,
        store=store,
        parallel=getattr(args, 'parallel', None),
        dry_run=getattr(args, 'dry_run', False),
        json_output=args.json_output,
    )


@contextmanager
def _cancel_on_interrupt(executor: DeploymentExecutor) -> Iterator[None]:
    """Route SIGINT to executor.cancel() while the block runs."""
    def _handler(signum, frame):
        print("\nInterrupted: finishing in-flight operations (Ctrl-C again to abort)",
              file=sys.stderr)
        executor.cancel()
        signal.signal(signal.SIGINT, previous)

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _emit_json(result: DeploymentResult) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': result.operation,
        'success': result.success,
        'cancelled': result.cancelled,
        'duration_seconds': round(result.duration, 2),
        'resources': [o.to_dict() for o in result.outcomes],
        'outputs': snapshot(result.outputs),
    }
    if result.steps:
        output['plan'] = [step.to_dict() for step in result.steps]
    print(json.dumps(output, indent=2))


def _run(executor: DeploymentExecutor, operation, json_output: bool) -> int:
    """Run an executor operation and report the result."""
    try:
        with _cancel_on_interrupt(executor):
            result = operation()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if json_output:
        _emit_json(result)
    elif not executor.dry_run:
        _print_outcomes(result)
    return 0 if result.success else 1


def _print_outcomes(result: DeploymentResult) -> None:
    problems = [o for o in result.outcomes if not o.ok]
    if problems:
        print(f"\n{result.operation.capitalize()} completed with problems:")
        for outcome in problems:
            print(f"  \u2717 {outcome.name} [{outcome.status}] {outcome.message}")
    if result.mismatches:
        print("\nResources recorded in state no longer exist in the provider.")
        print("Run 'airstack stack refresh --reconcile' to forget them.")
    for export, value in result.outputs.items():
        print(f"  {export}: {snapshot(value)}")


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply')
    _add_execution_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load(args)
    executor = _build_executor(args, stack)

    logger.info(f"Applying stack '{stack.name}' ({len(stack.resources)} resources)")
    return _run(executor, executor.apply, args.json_output)


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('destroy')
    _add_execution_args(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load(args)
    executor = _build_executor(args, stack)

    # Confirmation for destructive operation
    if not args.dry_run and not args.yes:
        count = len(executor.store.state)
        print(f"\nWARNING: This will destroy {count} recorded resource(s) of stack '{stack.name}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    logger.info(f"Destroying stack '{stack.name}'")
    return _run(executor, executor.destroy, args.json_output)


def preview_main(argv: list) -> int:
    """Handle 'stack preview' verb."""
    parser = _common_parser('preview', 'Show the operations an apply would perform')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load(args)
    executor = _build_executor(args, stack)
    executor.dry_run = True
    return _run(executor, executor.apply, args.json_output)


def refresh_main(argv: list) -> int:
    """Handle 'stack refresh' verb."""
    parser = _common_parser('refresh', 'Check recorded resources against the provider')
    parser.add_argument(
        '--reconcile',
        action='store_true',
        help='Forget records of resources the provider no longer has',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load(args)
    executor = _build_executor(args, stack)
    return _run(executor, lambda: executor.refresh(reconcile=args.reconcile), args.json_output)


def outputs_main(argv: list) -> int:
    """Handle 'stack outputs' verb."""
    parser = _common_parser('outputs', 'Show exported outputs from the last apply')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load(args)
    store = StateStore.open(stack.name, get_state_dir() / stack.name / STATE_FILE)
    outputs = snapshot(store.state.outputs)

    if args.json_output:
        print(json.dumps(outputs, indent=2))
        return 0
    if not outputs:
        print(f"Stack '{stack.name}' has no recorded outputs")
        return 0
    for export, value in outputs.items():
        print(f"{export}: {value}")
    return 0


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Validates the stack file, its references and dependency graph, and the
    resource types and required inputs against the provider.
    """
    parser = _common_parser('validate', 'Validate stack structure and references')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    stack = _load(args)
    try:
        graph = StackGraph(stack)
        graph.validate_types(get_provider(args.provider, stack.name))
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.verbose:
        for depth, level in enumerate(graph.levels()):
            print(f"  level {depth}: {', '.join(node.name for node in level)}")

    count = len(graph)
    print(f"Stack '{stack.name}' is valid ({count} resource{'s' if count != 1 else ''}, "
          f"depth {graph.max_depth + 1})")
    return 0


VERBS = {
    'apply': (apply_main, 'Create or update resources to match the stack'),
    'destroy': (destroy_main, 'Delete every recorded resource'),
    'preview': (preview_main, 'Show planned operations without executing'),
    'refresh': (refresh_main, 'Check recorded resources against the provider'),
    'outputs': (outputs_main, 'Show exported outputs'),
    'validate': (validate_main, 'Validate stack structure and references'),
}

