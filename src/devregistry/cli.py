"""CLI entry point for devregistry."""

import argparse
import json
import logging
import signal
import sys
import threading

import yaml

from .config import ProjectConfig, apply_env, load_config, merge_cli_args
from .definitions import DurableObjectRef, WorkerDefinition, WorkerMode, PROTOCOLS
from .registry import (
    DevRegistryClient,
    is_worker_registry_running,
    start_worker_registry,
    stop_worker_registry,
)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by every subcommand."""
    parser.add_argument("--config", type=str, help="Path to YAML project config file")
    parser.add_argument("--host", type=str, help="Registry host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Registry port (default: 6284)")
    parser.add_argument(
        "--timeout", type=float,
        help="Seconds to wait on each registry request (default: no timeout)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")


def _add_format_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def _build_config(args) -> ProjectConfig:
    """Build a ProjectConfig from a config file, the environment and CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = ProjectConfig()
    apply_env(config.registry)
    merge_cli_args(config.registry, args)
    return config


def _client(args) -> DevRegistryClient:
    return DevRegistryClient.from_config(_build_config(args).registry)


def _format_workers(workers, fmt: str) -> str:
    """Format a name -> WorkerDefinition mapping for output."""
    if workers is None:
        return "null" if fmt == "json" else "Registry is not running."
    if fmt == "json":
        return json.dumps({n: d.to_dict() for n, d in workers.items()}, indent=2)
    lines = []
    for name, d in sorted(workers.items()):
        address = d.url or "(starting)"
        line = f"{name}  {d.mode.value}  {address}"
        if d.durable_objects:
            line += "  do=" + ",".join(f"{o.name}:{o.class_name}" for o in d.durable_objects)
        lines.append(line)
    return "\n".join(lines) if lines else "(no workers)"


def _parse_durable_object(value: str) -> DurableObjectRef:
    name, sep, class_name = value.partition("=")
    if not sep or not name or not class_name:
        raise argparse.ArgumentTypeError(f"expected NAME=CLASS, got {value!r}")
    return DurableObjectRef(name=name, class_name=class_name)


def cmd_serve(args) -> None:
    """Run the registry in the foreground until interrupted."""
    registry = _build_config(args).registry
    if not start_worker_registry(registry.host, registry.port):
        print(
            f"Error: {registry.host}:{registry.port} is already in use, "
            "probably by another dev registry.",
            file=sys.stderr,
        )
        sys.exit(1)
    print(f"Dev registry listening on {registry.host}:{registry.port}", file=sys.stderr)

    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda *_: stop.set())
    try:
        stop.wait()
    finally:
        stop_worker_registry()
        print("Dev registry stopped.", file=sys.stderr)


def cmd_list(args) -> None:
    print(_format_workers(_client(args).list_workers(), args.format))


def cmd_register(args) -> None:
    definition = WorkerDefinition(
        mode=WorkerMode(args.mode),
        port=args.worker_port,
        protocol=args.protocol,
        host=args.worker_host,
        durable_objects=args.durable_objects or [],
    )
    _client(args).register(args.name, definition)
    if is_worker_registry_running():
        print(
            "Warning: no registry was running, so this command started one that exits with it. "
            "Run 'devregistry serve' to keep registrations.",
            file=sys.stderr,
        )


def cmd_unregister(args) -> None:
    _client(args).unregister(args.name)


def cmd_clear(args) -> None:
    _client(args).clear()


def cmd_bound(args) -> None:
    """Show the registered workers the configured bindings point at."""
    config = _build_config(args)
    services = config.bindings.service_names + (args.services or [])
    scripts = config.bindings.durable_object_script_names + (args.scripts or [])
    client = DevRegistryClient.from_config(config.registry)
    print(_format_workers(client.query_bound(services, scripts), args.format))


def cmd_prune(args) -> None:
    pruned = _client(args).prune_unreachable(probe_timeout=args.probe_timeout)
    if pruned:
        for name in pruned:
            print(f"Pruned {name}")
    else:
        print("Nothing to prune.")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="devregistry",
        description="devregistry: local development worker registry",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the registry server in the foreground")
    _add_common_args(serve_parser)
    serve_parser.set_defaults(func=cmd_serve)

    # list
    list_parser = subparsers.add_parser("list", help="List registered workers")
    _add_common_args(list_parser)
    _add_format_arg(list_parser)
    list_parser.set_defaults(func=cmd_list)

    # register
    reg_parser = subparsers.add_parser(
        "register", help="Register a worker (starts the registry if needed)",
    )
    _add_common_args(reg_parser)
    reg_parser.add_argument("name", type=str, help="Worker name")
    reg_parser.add_argument(
        "--mode", choices=[m.value for m in WorkerMode], default=WorkerMode.LOCAL.value,
        help="Whether the worker runs locally or is a remote reference (default: local)",
    )
    reg_parser.add_argument("--worker-port", type=int, dest="worker_port", help="Worker port")
    reg_parser.add_argument("--worker-host", type=str, dest="worker_host", help="Worker host")
    reg_parser.add_argument("--protocol", choices=PROTOCOLS, help="Worker protocol")
    reg_parser.add_argument(
        "--durable-object", type=_parse_durable_object, action="append", dest="durable_objects",
        metavar="NAME=CLASS", help="Durable object hosted by the worker (repeatable)",
    )
    reg_parser.set_defaults(func=cmd_register)

    # unregister
    unreg_parser = subparsers.add_parser("unregister", help="Remove a worker from the registry")
    _add_common_args(unreg_parser)
    unreg_parser.add_argument("name", type=str, help="Worker name")
    unreg_parser.set_defaults(func=cmd_unregister)

    # clear
    clear_parser = subparsers.add_parser("clear", help="Remove every registered worker")
    _add_common_args(clear_parser)
    clear_parser.set_defaults(func=cmd_clear)

    # bound
    bound_parser = subparsers.add_parser(
        "bound", help="Show registered workers targeted by service or durable-object bindings",
    )
    _add_common_args(bound_parser)
    _add_format_arg(bound_parser)
    bound_parser.add_argument(
        "--service", action="append", dest="services", metavar="NAME",
        help="Service binding target (repeatable, added to --config bindings)",
    )
    bound_parser.add_argument(
        "--durable-object-script", action="append", dest="scripts", metavar="NAME",
        help="Durable-object binding script name (repeatable, added to --config bindings)",
    )
    bound_parser.set_defaults(func=cmd_bound)

    # prune
    prune_parser = subparsers.add_parser(
        "prune", help="Unregister local workers whose address refuses connections",
    )
    _add_common_args(prune_parser)
    prune_parser.add_argument(
        "--probe-timeout", type=float, default=1.0, dest="probe_timeout",
        help="Seconds to wait when probing each worker (default: 1.0)",
    )
    prune_parser.set_defaults(func=cmd_prune)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        args.func(args)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
