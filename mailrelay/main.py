"""
Mailbox Notification Relay - CLI Entry Point

Command-line interface for running the relay and managing tracked mailboxes.
"""

import asyncio
import logging
import sys
from typing import List, Optional

import click

from mailrelay.core.config import ConfigManager, get_config
from mailrelay.core.database import DatabaseManager
from mailrelay.core.logging_config import setup_logging
from mailrelay.core.exceptions import ConfigurationError, MailRelayException
from mailrelay.dispatch import CompositeSink, ConnectionRegistry, DispatchSink, WebSocketSink
from mailrelay.provider import MailProviderClient
from mailrelay.relay import RelayLoop, TokenRefreshPolicy
from mailrelay.services import MailboxService


logger = logging.getLogger(__name__)

CHILD_TIMEOUT_SHARE = 0.8


def _load_config() -> ConfigManager:
    try:
        config = get_config()
    except ConfigurationError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    errors = config.validate()
    if errors:
        for error in errors:
            click.echo(f"❌ {error}", err=True)
        sys.exit(1)
    return config


def _build_service(config: ConfigManager):
    db = DatabaseManager(config.database.connection_string)
    client = MailProviderClient(config.provider)
    return db, client, MailboxService(db, client)


def build_sink(
    config: ConfigManager, registry: Optional[ConnectionRegistry], use_telegram: bool = True
) -> DispatchSink:
    """Combine the transports that are enabled into one sink."""
    sinks: List[DispatchSink] = []
    if registry is not None:
        sinks.append(WebSocketSink(registry))
    if use_telegram and config.telegram.is_configured():
        from mailrelay.dispatch.telegram import TelegramSink

        sinks.append(TelegramSink(token=config.telegram.bot_token))
    if not sinks:
        raise click.UsageError("No transport enabled: configure TELEGRAM_BOT_TOKEN or enable the push server")
    # Children must answer inside the relay's own delivery bound
    return CompositeSink(sinks, child_timeout_seconds=config.relay.dispatch_timeout_seconds * CHILD_TIMEOUT_SHARE)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--log-file", type=str, help="Log file path")
@click.pass_context
def cli(ctx, verbose, log_file):
    """Disposable mailbox notification relay."""
    ctx.ensure_object(dict)

    setup_logging(log_level="DEBUG" if verbose else "INFO", log_file=log_file)

    ctx.obj["verbose"] = verbose
    ctx.obj["log_file"] = log_file


# ============================================================================
# RELAY
# ============================================================================


@cli.command()
@click.option("--once", is_flag=True, help="Run a single tick and exit")
@click.option("--interval", type=int, help="Polling interval in seconds (overrides config)")
@click.option("--no-push", is_flag=True, help="Do not start the WebSocket push server")
@click.option("--no-telegram", is_flag=True, help="Do not send Telegram notifications")
def run(once, interval, no_push, no_telegram):
    """Run the relay loop (and the push server unless --no-push).

    Examples:
        python -m mailrelay.main run
        python -m mailrelay.main run --once --no-push
    """
    config = _load_config()
    db = DatabaseManager(config.database.connection_string)
    db.create_tables()

    client = MailProviderClient(config.provider)
    push_enabled = config.websocket.enabled and not no_push and not once
    registry = ConnectionRegistry() if push_enabled else None
    sink = build_sink(config, registry, use_telegram=not no_telegram)

    relay = RelayLoop(db, client, sink, config.relay, policy=TokenRefreshPolicy(client, db))

    if once:
        stats = asyncio.run(_tick_once(relay))
        click.echo(
            f"✅ Tick complete: {stats['active']} active, {stats['polled']} polled, "
            f"{stats['notified']} notified, {stats['errors']} errors"
        )
        return

    click.echo(f"🚀 Relay running (interval: {interval or config.relay.poll_interval_seconds}s)")
    if push_enabled:
        click.echo(f"🔌 Push server on ws://{config.websocket.host}:{config.websocket.port}/ws")
    click.echo("⚠️  Press Ctrl+C to stop")

    try:
        asyncio.run(_serve(relay, registry, config, interval))
    except KeyboardInterrupt:
        click.echo("\n🛑 Relay stopped")


async def _tick_once(relay: RelayLoop):
    try:
        return await relay.tick()
    finally:
        await relay.sink.close()


async def _serve(relay: RelayLoop, registry: Optional[ConnectionRegistry], config: ConfigManager, interval):
    """Relay loop plus, when enabled, the push server in the same event loop."""
    try:
        if registry is None:
            await relay.run_forever(interval)
            return

        from mailrelay.web.app import build_server, create_app

        server = build_server(create_app(registry), host=config.websocket.host, port=config.websocket.port)
        relay_task = asyncio.create_task(relay.run_forever(interval))
        try:
            await server.serve()
        finally:
            await relay.stop()
            relay_task.cancel()
            await asyncio.gather(relay_task, return_exceptions=True)
    finally:
        await relay.sink.close()


# ============================================================================
# SESSION MANAGEMENT
# ============================================================================


@cli.group()
def sessions():
    """Manage tracked mailboxes."""
    pass


@sessions.command("add")
@click.argument("user_id")
@click.argument("address")
@click.option("--secret", prompt=True, hide_input=True, help="Mailbox password")
@click.option("--create", is_flag=True, help="Create the account on the provider first")
def sessions_add(user_id, address, secret, create):
    """Track a mailbox for a user.

    Example:
        python -m mailrelay.main sessions add 123456789 temp123456@example.test --create
    """
    config = _load_config()
    try:
        db, _, service = _build_service(config)
        db.create_tables()
        session = service.register(user_id, address, secret, create_account=create)
        click.echo(f"✅ Tracking {session.mailbox_address} for user {session.user_id} (ID: {session.id})")
    except MailRelayException as e:
        click.echo(f"❌ Failed to add session: {e}", err=True)
        sys.exit(1)


@sessions.command("list")
@click.option("--user-id", help="Only show mailboxes of this user")
def sessions_list(user_id):
    """List tracked mailboxes.

    Example:
        python -m mailrelay.main sessions list --user-id 123456789
    """
    config = _load_config()
    db = DatabaseManager(config.database.connection_string)
    records = db.get_sessions_for_user(user_id) if user_id else db.list_sessions()

    if not records:
        click.echo("No sessions found")
        return

    click.echo(f"\n📋 Sessions ({len(records)}):")
    click.echo("-" * 80)
    for record in records:
        status = "❌ Failing" if record.consecutive_failures else "✅ OK"
        click.echo(f"\n{status}")
        click.echo(f"  Address:     {record.mailbox_address}")
        click.echo(f"  User:        {record.user_id}")
        click.echo(f"  Last access: {record.last_access.strftime('%Y-%m-%d %H:%M:%S')}")
        if record.last_error:
            click.echo(f"  Last error:  {record.last_error} ({record.consecutive_failures}x)")
    click.echo("")


@sessions.command("recover")
@click.argument("address")
@click.option("--user-id", help="Re-attach the mailbox to this user")
def sessions_recover(address, user_id):
    """Re-authenticate a stored mailbox and make it active again.

    Example:
        python -m mailrelay.main sessions recover temp123456@example.test
    """
    config = _load_config()
    try:
        _, _, service = _build_service(config)
        session = service.recover(address, user_id=user_id)
        click.echo(f"♻️  Recovered {session.mailbox_address} for user {session.user_id}")
    except MailRelayException as e:
        click.echo(f"❌ Failed to recover {address}: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("address")
def inbox(address):
    """Show the current inbox of a tracked mailbox.

    Example:
        python -m mailrelay.main inbox temp123456@example.test
    """
    config = _load_config()
    try:
        _, _, service = _build_service(config)
        messages = service.check_inbox(address)
    except MailRelayException as e:
        click.echo(f"❌ Failed to load inbox: {e}", err=True)
        sys.exit(1)

    if not messages:
        click.echo(f"📭 No messages in {address}")
        return

    click.echo(f"\n📥 {address} ({len(messages)} messages):")
    for message in messages:
        marker = "  " if message.seen else "🆕"
        click.echo(f"{marker} [{message.id}] {message.from_address} - {message.subject or 'No Subject'}")
    click.echo("")


# ============================================================================
# DATABASE MANAGEMENT
# ============================================================================


@cli.group()
def db():
    """Database management commands."""
    pass


@db.command("init")
@click.option("--drop", is_flag=True, help="Drop existing tables first (DESTRUCTIVE!)")
def db_init(drop):
    """Initialize database schema.

    Example:
        python -m mailrelay.main db init
    """
    config = _load_config()
    manager = DatabaseManager(config.database.connection_string)

    if drop:
        if not click.confirm("⚠️  This will drop all existing tables. Are you sure?"):
            click.echo("Aborted.")
            return
        manager.drop_tables()

    manager.create_tables()
    click.echo("✅ Database initialized successfully")


# ============================================================================
# ENTRY POINT
# ============================================================================


if __name__ == "__main__":
    cli(obj={})
