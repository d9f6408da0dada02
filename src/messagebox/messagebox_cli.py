#!/usr/bin/env python3
"""
CLI entry point for the MessageBox.

Usage:
    messagebox --config config/messagebox.yaml init
    messagebox --config config/messagebox.yaml transport --interface orders
    messagebox --config config/messagebox.yaml send --interface orders
    messagebox --config config/messagebox.yaml poll --interface orders --max-polls 10
    messagebox --config config/messagebox.yaml stats
    messagebox --config config/messagebox.yaml list --interface orders --status Error
    messagebox --config config/messagebox.yaml list --interface orders --exhausted
    messagebox --config config/messagebox.yaml requeue --interface orders --all-errors
    messagebox --config config/messagebox.yaml gc --interface orders
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from messagebox.config import MessageBoxConfig
from messagebox.core.exceptions import MessageBoxError
from messagebox.core.logging import configure_logging
from messagebox.core.message_box import MessageBox
from messagebox.core.models import MessageStatus
from messagebox.runner import TransportRunner
from messagebox.state import create_message_box


logger = logging.getLogger("messagebox.cli")


def setup_logging(verbose: bool = False, structured: bool = False) -> None:
    """Configure logging."""
    configure_logging(
        level=logging.DEBUG if verbose else logging.INFO,
        structured=structured,
        stream=sys.stderr,
    )


def build_message_box(config: MessageBoxConfig) -> MessageBox:
    """Build the MessageBox backend from configuration."""
    store = config.get_store_config()
    backend = store.get("backend", "sqlite")

    if backend == "sqlite":
        return create_message_box(
            backend="sqlite",
            db_path=store.get("sqlite", {}).get("path"),
        )

    sqlserver = store.get("sqlserver", {})
    return create_message_box(
        backend=backend,
        connection_string=sqlserver.get("connection_string"),
        host=sqlserver.get("host", "localhost"),
        port=sqlserver.get("port", 1433),
        database=sqlserver.get("database", "MessageBox"),
        username=sqlserver.get("user", "sa"),
        password=sqlserver.get("password"),
        driver=sqlserver.get("driver", "ODBC Driver 18 for SQL Server"),
        schema=sqlserver.get("schema", "messagebox"),
    )


def _interface_names(runner: TransportRunner, interface: Optional[str]) -> List[str]:
    return [interface] if interface else [
        name for name, cfg in runner.interfaces.items() if cfg.enabled
    ]


def cmd_init(args, config: MessageBoxConfig, message_box: MessageBox) -> int:
    runner = TransportRunner(message_box, config)
    try:
        runner.initialize()
    finally:
        runner.close()
    for instance in message_box.get_adapter_instances():
        print(f"{instance.interface_name}\t{instance.role.value}\t"
              f"{instance.instance_name}\t{instance.adapter_instance_id}")
    return 0


def cmd_send(args, config: MessageBoxConfig, message_box: MessageBox) -> int:
    runner = TransportRunner(message_box, config)
    try:
        for name in _interface_names(runner, args.interface):
            if runner.interfaces[name].source is None:
                continue
            ids = runner.run_source(name)
            logger.info(f"Wrote {len(ids)} messages to {name}")
    finally:
        runner.close()
    return 0


def cmd_poll(args, config: MessageBoxConfig, message_box: MessageBox) -> int:
    runner = TransportRunner(message_box, config)
    interval = args.interval if args.interval is not None else config.get("consumer.poll_interval", 5.0)
    failed = 0
    try:
        for poll in range(args.max_polls):
            acquired = 0
            for name in _interface_names(runner, args.interface):
                for metrics in runner.run_destinations(name).values():
                    acquired += metrics.acquired
                    failed += metrics.failed
            if args.until_idle and acquired == 0:
                break
            if poll < args.max_polls - 1:
                time.sleep(interval)
    finally:
        runner.close()
    return 1 if failed and args.strict else 0


def cmd_transport(args, config: MessageBoxConfig, message_box: MessageBox) -> int:
    runner = TransportRunner(message_box, config)
    failed = 0
    try:
        for name in _interface_names(runner, args.interface):
            result = runner.run_transport(name)
            failed += result.failed
    finally:
        runner.close()
    return 1 if failed and args.strict else 0


def cmd_stats(args, config: MessageBoxConfig, message_box: MessageBox) -> int:
    if args.interface:
        stats = {args.interface: message_box.get_stats(args.interface).to_dict()}
    else:
        stats = {name: s.to_dict() for name, s in message_box.get_stats_by_interface().items()}
    print(json.dumps(stats, indent=2))
    return 0


def _max_retries(args, config: MessageBoxConfig) -> int:
    if args.max_retries is not None:
        return args.max_retries
    names = [interface.name for interface in config.get_interfaces()]
    if args.interface in names:
        return config.to_loop_config(config.get_interface(args.interface)).max_retries
    return config.to_loop_config().max_retries


def cmd_list(args, config: MessageBoxConfig, message_box: MessageBox) -> int:
    if args.exhausted:
        messages = message_box.read_exhausted(args.interface, _max_retries(args, config))
        messages = messages[:args.limit]
    else:
        messages = message_box.read(args.interface, MessageStatus(args.status), limit=args.limit)
    for message in messages:
        line = {
            "message_id": message.message_id,
            "status": message.status.value,
            "created_at": message.created_at.isoformat() if message.created_at else None,
            "retry_count": message.retry_count,
            "error_message": message.error_message,
        }
        if args.show_payload:
            line["payload"] = message.payload
        print(json.dumps(line))
    return 0


def cmd_requeue(args, config: MessageBoxConfig, message_box: MessageBox) -> int:
    if args.message_id:
        requeued = message_box.requeue(args.message_id)
        logger.info(f"Message {args.message_id} {'re-queued' if requeued else 'is not in Error'}")
        return 0 if requeued else 1

    if not (args.interface and args.all_errors):
        logger.error("Pass --message-id, or --interface with --all-errors")
        return 2
    max_retries = args.max_retries if args.max_retries is not None else 2**31 - 1
    count = message_box.requeue_errors(args.interface, max_retries)
    logger.info(f"Re-queued {count} messages on {args.interface}")
    return 0


def cmd_gc(args, config: MessageBoxConfig, message_box: MessageBox) -> int:
    removed = message_box.collect_garbage(args.interface)
    logger.info(f"Removed {removed} consumed messages from {args.interface}")
    return 0


COMMANDS = {
    "init": cmd_init,
    "send": cmd_send,
    "poll": cmd_poll,
    "transport": cmd_transport,
    "stats": cmd_stats,
    "list": cmd_list,
    "requeue": cmd_requeue,
    "gc": cmd_gc,
}


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be zero or positive, got {number}")
    return number


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="MessageBox - connector-to-connector data transport"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to configuration file (YAML)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--structured-logs",
        action="store_true",
        help="Emit JSON log lines",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create tables, register adapters, prepare destinations")

    send = subparsers.add_parser("send", help="Debatch source data into the MessageBox")
    send.add_argument("--interface", help="Interface name (default: all)")

    poll = subparsers.add_parser("poll", help="Consume Pending messages into destinations")
    poll.add_argument("--interface", help="Interface name (default: all)")
    poll.add_argument("--max-polls", type=int, default=1, help="Number of poll cycles")
    poll.add_argument("--interval", type=float, help="Seconds between poll cycles")
    poll.add_argument("--until-idle", action="store_true", help="Stop after a cycle with no work")
    poll.add_argument("--strict", action="store_true", help="Exit 1 if any message failed")

    transport = subparsers.add_parser("transport", help="Run source then destinations")
    transport.add_argument("--interface", help="Interface name (default: all)")
    transport.add_argument("--strict", action="store_true", help="Exit 1 if any message failed")

    stats = subparsers.add_parser("stats", help="Show message counts by status")
    stats.add_argument("--interface", help="Interface name (default: all)")

    list_cmd = subparsers.add_parser("list", help="List messages of an interface")
    list_cmd.add_argument("--interface", required=True, help="Interface name")
    list_cmd.add_argument(
        "--status",
        default=MessageStatus.PENDING.value,
        choices=[s.value for s in MessageStatus],
        help="Message status (default: Pending)",
    )
    list_cmd.add_argument("--limit", type=_non_negative_int, default=100,
                          help="Maximum messages to list")
    list_cmd.add_argument("--show-payload", action="store_true", help="Include payloads")
    list_cmd.add_argument("--exhausted", action="store_true",
                          help="List Error messages that have used up their retries")
    list_cmd.add_argument("--max-retries", type=int,
                          help="Retry limit for --exhausted (default: from config)")

    requeue = subparsers.add_parser("requeue", help="Move Error messages back to Pending")
    requeue.add_argument("--message-id", help="Single message to re-queue")
    requeue.add_argument("--interface", help="Interface for --all-errors")
    requeue.add_argument("--all-errors", action="store_true", help="Re-queue every Error message")
    requeue.add_argument("--max-retries", type=int, help="Only messages with fewer retries")

    gc = subparsers.add_parser("gc", help="Remove fully consumed messages")
    gc.add_argument("--interface", required=True, help="Interface name")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose, structured=args.structured_logs)

    try:
        config = MessageBoxConfig(config_path=args.config)
        message_box = build_message_box(config)
    except (MessageBoxError, FileNotFoundError, ImportError) as e:
        logger.error(f"Failed to start: {e}")
        return 1

    try:
        return COMMANDS[args.command](args, config, message_box)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 1
    except MessageBoxError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1
    finally:
        message_box.close()


if __name__ == "__main__":
    sys.exit(main())
