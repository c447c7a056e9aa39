#!/usr/bin/env python3
"""
Command-line interface for Stream Notifier.

This CLI runs the notifier daemon and edits the stored subscriptions.
Edits made while the daemon is not running are picked up, and joined,
on its next start.
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from .config import NotifierConfig, create_default_config
from .events.stream_events import EventKind
from .exceptions import StreamNotifierError, SubscriptionError
from .registry import SubscriptionRegistry, SubscriptionStatus
from .services.notifier_service import StreamNotifierService, setup_logging
from .storage import JsonSubscriptionStore


def create_parser():
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        description="Stream Notifier - Command Line Interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run                                     # Connect and deliver notifications
  %(prog)s status                                  # Show stored subscription status
  %(prog)s subscribe 1234 cryptopunks              # Subscribe user 1234 to every event kind
  %(prog)s subscribe 1234 azuki --events item_sold # Only sales
  %(prog)s filter 1234 item-sold listing-created   # Replace the event filter
  %(prog)s filter 1234                             # Reset the filter to every kind
  %(prog)s unsubscribe 1234 azuki                  # Remove one subscription
  %(prog)s clear 1234                              # Remove everything for a user
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Configuration file path'
    )

    parser.add_argument(
        '--state-file', '-s',
        type=Path,
        help='Subscriptions file path (overrides the configuration)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Run command
    subparsers.add_parser('run', help='Connect to the feed and deliver notifications')

    # Status command
    status_parser = subparsers.add_parser('status', help='Show stored subscription status')
    status_parser.add_argument('--json', action='store_true', help='Output as JSON')

    # Subscriptions command
    subs_parser = subparsers.add_parser('subscriptions', help='List subscriptions of a user')
    subs_parser.add_argument('user', help='Subscriber id')

    # Events command
    subparsers.add_parser('events', help='List recognized event kinds')

    # Subscribe command
    subscribe_parser = subparsers.add_parser('subscribe', help='Subscribe a user to a collection')
    subscribe_parser.add_argument('user', help='Subscriber id')
    subscribe_parser.add_argument('collection', help='Collection slug (e.g. cryptopunks)')
    subscribe_parser.add_argument('--events', nargs='+', help='Event kinds to receive (default: all)')

    # Unsubscribe command
    unsubscribe_parser = subparsers.add_parser('unsubscribe', help='Unsubscribe a user from a collection')
    unsubscribe_parser.add_argument('user', help='Subscriber id')
    unsubscribe_parser.add_argument('collection', help='Collection slug')

    # Clear command
    clear_parser = subparsers.add_parser('clear', help='Remove every subscription of a user')
    clear_parser.add_argument('user', help='Subscriber id')

    # Filter command
    filter_parser = subparsers.add_parser('filter', help='Set the event filter of a user')
    filter_parser.add_argument('user', help='Subscriber id')
    filter_parser.add_argument('kinds', nargs='*', help='Event kinds; none resets to all')

    return parser


def load_config(args) -> NotifierConfig:
    """Configuration from --config (or defaults) with command line overrides."""
    if args.config:
        config = NotifierConfig.load_from_file(args.config)
    else:
        config = create_default_config()

    if args.state_file:
        config.state_file = args.state_file
    if args.verbose:
        config.log_level = "DEBUG"
    return config


def open_registry(config: NotifierConfig) -> SubscriptionRegistry:
    """Registry over the stored document, without a connection."""
    registry = SubscriptionRegistry.from_config(config, JsonSubscriptionStore(config.state_file))
    registry.load()
    return registry


def format_kinds(kinds) -> str:
    if set(kinds) == EventKind.all():
        return "All Events"
    return ", ".join(kind.display_name for kind in EventKind if kind in kinds)


def cmd_run(args, config):
    """Handle run command."""
    print("Starting Stream Notifier...")
    print("Press Ctrl+C to stop")
    return asyncio.run(_run_daemon(config))


async def _run_daemon(config) -> int:
    service = StreamNotifierService(config=config)
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable on this platform; Ctrl+C still raises
            pass

    await service.start()
    try:
        stop_task = asyncio.create_task(stop_requested.wait())
        supervisor_task = asyncio.create_task(service.wait_until_stopped())
        done, pending = await asyncio.wait(
            {stop_task, supervisor_task}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
    finally:
        await service.stop()

    if service.supervisor.is_exhausted():
        print("Connection failed permanently - restart required")
        return 1

    print("Stream Notifier stopped")
    return 0


def cmd_status(args, config):
    """Handle status command."""
    registry = open_registry(config)
    status = registry.get_status()
    status["state_file"] = str(config.state_file)
    status["max_subscriptions"] = config.max_subscriptions

    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return

    print("Stream Notifier Status")
    print("=" * 22)
    print(f"Subscriptions file: {status['state_file']}")
    print(f"Total users: {status['total_users']}")
    print(f"Event filters: {status['event_filters']}")
    print(f"Active collections: {len(status['active_collections'])}")
    for collection in status['active_collections']:
        subscribers = registry.subscribers_for(collection)
        print(f"  {collection} ({len(subscribers)} subscribers)")


def cmd_subscriptions(args, config):
    """Handle subscriptions command."""
    registry = open_registry(config)
    collections = registry.subscriptions_for(args.user)

    if not collections:
        print(f"{args.user} has no subscriptions")
        return

    print(f"Subscriptions for {args.user} ({len(collections)}/{config.max_subscriptions}):")
    for collection in collections:
        print(f"  {collection}")
    print(f"Event filter: {format_kinds(registry.get_filter(args.user))}")


def cmd_events(args, config):
    """Handle events command."""
    print("Recognized event kinds:")
    for kind in EventKind:
        print(f"  {kind.value:<24} {kind.label:<20} {kind.display_name}")


def cmd_subscribe(args, config):
    """Handle subscribe command."""
    registry = open_registry(config)
    result = asyncio.run(registry.subscribe(args.user, args.collection, args.events))

    print(f"Subscribed {args.user} to {args.collection}")
    print(f"Event filter: {format_kinds(registry.get_filter(args.user))}")
    if result.status is SubscriptionStatus.PENDING:
        print("The collection will be joined when the notifier connects")


def cmd_unsubscribe(args, config):
    """Handle unsubscribe command."""
    registry = open_registry(config)
    asyncio.run(registry.unsubscribe(args.user, args.collection))

    print(f"Unsubscribed {args.user} from {args.collection}")
    remaining = registry.subscribers_for(args.collection)
    if remaining:
        print(f"{args.collection} stays active for {len(remaining)} other subscribers")


def cmd_clear(args, config):
    """Handle clear command."""
    registry = open_registry(config)
    count = len(registry.subscriptions_for(args.user))
    deactivated = asyncio.run(registry.clear_all(args.user))

    print(f"Cleared {count} subscriptions for {args.user}")
    if deactivated:
        print(f"Deactivated collections: {', '.join(deactivated)}")


def cmd_filter(args, config):
    """Handle filter command."""
    registry = open_registry(config)
    effective = registry.set_filter(args.user, args.kinds)
    print(f"Event filter for {args.user}: {format_kinds(effective)}")


COMMANDS = {
    'run': cmd_run,
    'status': cmd_status,
    'subscriptions': cmd_subscriptions,
    'events': cmd_events,
    'subscribe': cmd_subscribe,
    'unsubscribe': cmd_unsubscribe,
    'clear': cmd_clear,
    'filter': cmd_filter,
}


def main(argv=None):
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args)
        if args.command != 'run':
            # Offline edits only report problems unless asked for more
            if not args.verbose:
                config.log_level = "WARNING"
            setup_logging(config)
        return COMMANDS[args.command](args, config) or 0

    except SubscriptionError as e:
        print(f"Error: {e}")
        return 2
    except StreamNotifierError as e:
        print(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
