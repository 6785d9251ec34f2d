"""Command-line interface for the notifier.

Provides commands for:
- Running the dispatcher and triggering sweeps on demand
- Creating, listing and force-sending notifications
- Viewing delivery statistics
- Serving the HTTP API
"""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from notifier import __version__
from notifier.dispatcher.core import Dispatcher, SweepResult
from notifier.exceptions import NotificationNotFoundError, NotificationValidationError, NotifierError
from notifier.models import Channel, NotificationPriority, NotificationStatus, NotificationType, init_db
from notifier.models.database import get_db_session
from notifier.services.notification_service import NotificationService, Recipient
from notifier.utils.config import Config, load_config, set_config
from notifier.utils.timeutil import utcnow

console = Console()


# --- Utility Functions ---


def get_status_style(status: NotificationStatus) -> str:
    """Get rich style for notification status."""
    styles = {
        NotificationStatus.PENDING: "white",
        NotificationStatus.SENT: "cyan",
        NotificationStatus.DELIVERED: "green",
        NotificationStatus.READ: "dim",
        NotificationStatus.FAILED: "red",
    }
    return styles.get(status, "white")


def get_priority_style(priority: NotificationPriority) -> str:
    """Get rich style for priority level."""
    styles = {
        NotificationPriority.URGENT: "bold red",
        NotificationPriority.HIGH: "red",
        NotificationPriority.NORMAL: "yellow",
        NotificationPriority.LOW: "green",
    }
    return styles.get(priority, "white")


def run_async(coro):
    """Run an async coroutine."""
    return asyncio.run(coro)


def with_dispatcher(config: Config, action: Callable[[Dispatcher], Awaitable[Any]]) -> Any:
    """Run ``action`` against a fresh dispatcher, closing its transports afterwards."""

    async def runner():
        dispatcher = Dispatcher(config)
        try:
            return await action(dispatcher)
        finally:
            await dispatcher.close()

    return run_async(runner())


def print_sweep_result(result: SweepResult) -> None:
    """Print a sweep summary table."""
    table = Table(title=f"{result.kind.capitalize()} sweep")
    table.add_column("Selected", justify="right")
    table.add_column("Claimed", justify="right")
    table.add_column("Sent", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Channels disabled", justify="right", style="yellow")
    table.add_column("Exhausted", justify="right", style="red")
    table.add_column("Skipped", justify="right", style="dim")
    table.add_row(
        str(result.selected),
        str(result.claimed),
        str(result.sent),
        str(result.failed),
        str(result.disabled_channels),
        str(result.exhausted),
        str(result.skipped),
    )
    console.print(table)
    console.print(f"[dim]Completed in {result.duration:.2f}s[/dim]")


# --- Main CLI Group ---


@click.group()
@click.version_option(version=__version__, prog_name="notifier")
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config file")
@click.pass_context
def cli(ctx, config):
    """Notifier - multi-channel notification delivery with retries.

    Use 'notifier <command> --help' for more information about a command.
    """
    ctx.ensure_object(dict)

    # Load configuration
    config_path = config if config else None
    loaded = load_config(config_path)
    set_config(loaded)
    ctx.obj["config"] = loaded

    logging.basicConfig(
        level=loaded.dispatcher.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Initialize database
    init_db()


# --- Dispatcher Commands ---


@cli.group()
def dispatcher():
    """Dispatcher control commands."""
    pass


@dispatcher.command("start")
@click.pass_context
def dispatcher_start(ctx):
    """Run the dispatcher in the foreground until interrupted."""
    config = ctx.obj["config"]

    console.print(Panel(
        f"[green]Starting notification dispatcher[/green]\n"
        f"Instance: [cyan]{config.dispatcher.instance_id}[/cyan]\n"
        f"Pending sweep: [cyan]every {config.dispatcher.pending_interval_seconds}s[/cyan]\n"
        f"Retry sweep: [cyan]every {config.dispatcher.retry_interval_seconds}s[/cyan]",
        title="Dispatcher Starting",
    ))

    async def run_forever(d: Dispatcher) -> None:
        await d.start()
        console.print("[green]Dispatcher started. Press Ctrl+C to stop.[/green]")
        try:
            while d.state.is_running:
                await asyncio.sleep(1)
        finally:
            if d.state.is_running:
                await d.stop()

    try:
        with_dispatcher(config, run_forever)
    except KeyboardInterrupt:
        console.print("\n[yellow]Dispatcher stopped.[/yellow]")


@dispatcher.command("status")
@click.pass_context
def dispatcher_status(ctx):
    """Show dispatcher configuration and delivery backlog."""
    config = ctx.obj["config"]

    async def read_status(d: Dispatcher) -> dict[str, Any]:
        return d.get_status()

    status = with_dispatcher(config, read_status)

    with get_db_session() as db:
        stats = NotificationService(db, config).get_statistics()

    policy = status["retry_policy"]
    info_lines = [
        f"Instance: [cyan]{status['instance_id']}[/cyan]",
        f"Channels: [cyan]{', '.join(status['channels'])}[/cyan]",
        f"Retry policy: {policy['max_retries']} retries, "
        f"{policy['base_delay_minutes']}m base delay x{policy['backoff_factor']}",
        "",
        f"Pending: {stats['by_status']['pending']}",
        f"Retrying: [yellow]{stats['retrying']}[/yellow]",
        f"Terminally failed: [red]{stats['terminally_failed']}[/red]",
    ]
    console.print(Panel("\n".join(info_lines), title="Dispatcher Status"))


@cli.command("process-pending")
@click.pass_context
def process_pending(ctx):
    """Run one pending sweep now."""
    try:
        result = with_dispatcher(ctx.obj["config"], lambda d: d.run_pending_sweep())
    except NotifierError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    print_sweep_result(result)


@cli.command("retry-failed")
@click.pass_context
def retry_failed(ctx):
    """Run one retry sweep now."""
    try:
        result = with_dispatcher(ctx.obj["config"], lambda d: d.run_retry_sweep())
    except NotifierError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    print_sweep_result(result)


@cli.command()
@click.pass_context
def reap(ctx):
    """Delete expired notifications."""
    async def run_reap(d: Dispatcher) -> int:
        return d.reap_expired()

    removed = with_dispatcher(ctx.obj["config"], run_reap)
    console.print(f"[green]Removed {removed} expired notification(s).[/green]")


@cli.command()
@click.argument("notification_id", type=int)
@click.option("--force/--no-force", default=True, help="Ignore the scheduled time and retry backoff")
@click.pass_context
def send(ctx, notification_id, force):
    """Dispatch a single notification now."""
    try:
        attempted = with_dispatcher(
            ctx.obj["config"], lambda d: d.dispatch_notification(notification_id, force=force)
        )
    except NotifierError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if attempted:
        console.print(f"[green]Dispatched notification {notification_id}.[/green]")
    else:
        console.print(f"[yellow]Notification {notification_id} had nothing to send.[/yellow]")


# --- Notification Commands ---


@cli.command()
@click.argument("user_id")
@click.argument("title")
@click.argument("content")
@click.option("--username", "-u", help="Recipient display name (defaults to user ID)")
@click.option("--type", "-t", "notification_type", type=click.Choice([t.value for t in NotificationType]),
              default=NotificationType.GENERAL.value, help="Notification type")
@click.option("--priority", "-p", type=click.Choice([p.value for p in NotificationPriority]),
              default=NotificationPriority.NORMAL.value, help="Priority level")
@click.option("--email", help="Recipient email address")
@click.option("--wechat", "wechat_open_id", help="Recipient WeChat open id")
@click.option("--channel", "channels", multiple=True, type=click.Choice([c.value for c in Channel]),
              help="Enable only these channels (can specify multiple)")
@click.pass_context
def create(ctx, user_id, title, content, username, notification_type, priority, email, wechat_open_id, channels):
    """Create a notification."""
    selected = {c.value: c.value in channels for c in Channel} if channels else None

    with get_db_session() as db:
        service = NotificationService(db, ctx.obj["config"])
        try:
            notification = service.create_notification(
                title=title,
                content=content,
                type=notification_type,
                recipient=Recipient(
                    user_id=user_id,
                    username=username or user_id,
                    email=email,
                    wechat_open_id=wechat_open_id,
                ),
                priority=priority,
                channels=selected,
                source="cli",
            )
        except NotificationValidationError as e:
            for error in e.errors:
                console.print(f"[red]✗[/red] {error}")
            sys.exit(1)

        channels_str = ", ".join(ch.value for ch in notification.enabled_channels()) or "none"
        console.print(
            f"[green]✓[/green] Created notification [cyan]#{notification.id}[/cyan] "
            f"({notification.status.value}; channels: {channels_str})"
        )


@cli.command("list")
@click.option("--user", "-u", "user_id", required=True, help="Recipient user ID")
@click.option("--status", "-s", type=click.Choice([s.value for s in NotificationStatus]), help="Filter by status")
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.option("--limit", "-n", default=20, help="Number of notifications to show")
@click.pass_context
def list_notifications(ctx, user_id, status, unread, limit):
    """List a user's notifications, newest first."""
    with get_db_session() as db:
        service = NotificationService(db, ctx.obj["config"])
        notifications, total = service.list_notifications(
            user_id,
            status=NotificationStatus(status) if status else None,
            unread_only=unread,
            limit=limit,
        )

        if not notifications:
            console.print("[dim]No notifications found.[/dim]")
            return

        table = Table(title=f"Notifications for {user_id} ({len(notifications)} of {total})")
        table.add_column("ID", style="dim", width=5)
        table.add_column("Title", style="white")
        table.add_column("Type", style="cyan")
        table.add_column("Priority", width=8)
        table.add_column("Status", width=10)
        table.add_column("Retries", justify="right", width=7)
        table.add_column("Created", width=16)

        for n in notifications:
            priority_style = get_priority_style(n.priority)
            status_style = get_status_style(n.status)
            table.add_row(
                str(n.id),
                n.title[:50] + ("..." if len(n.title) > 50 else ""),
                n.type.value,
                f"[{priority_style}]{n.priority.value}[/{priority_style}]",
                f"[{status_style}]{n.status.value}[/{status_style}]",
                str(n.retry_count),
                n.created_at.strftime("%Y-%m-%d %H:%M") if n.created_at else "-",
            )

        console.print(table)


@cli.command()
@click.argument("notification_id", type=int)
@click.pass_context
def show(ctx, notification_id):
    """Show full delivery detail for a notification."""
    with get_db_session() as db:
        service = NotificationService(db, ctx.obj["config"])
        try:
            n = service.get_notification(notification_id)
        except NotificationNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)

        max_retries = service.policy.max_retries
        console.print(Panel(
            f"[bold]{n.title}[/bold]\n{n.content}\n\n"
            f"Recipient: {n.recipient_username} ({n.recipient_user_id})\n"
            f"Status: [{get_status_style(n.status)}]{n.status.value}[/{get_status_style(n.status)}]  "
            f"Priority: {n.priority.value}  Type: {n.type.value}\n"
            f"Scheduled: {n.scheduled_for:%Y-%m-%d %H:%M}  Expires: {n.expires_at:%Y-%m-%d %H:%M}"
            f"{' [red](expired)[/red]' if n.is_expired(utcnow()) else ''}\n"
            f"Retries: {n.retry_count}/{max_retries}  Next retry: "
            f"{n.next_retry_at.strftime('%Y-%m-%d %H:%M') if n.next_retry_at else '-'}"
            f"{'  [yellow](will retry)[/yellow]' if n.can_retry(max_retries) else ''}",
            title=f"Notification #{n.id}",
        ))

        table = Table(title="Channels")
        table.add_column("Channel", style="cyan")
        table.add_column("Enabled")
        table.add_column("Sent")
        table.add_column("Message ID", style="dim")
        table.add_column("Error", style="red")
        for ch in Channel:
            state = n.channel_state(ch)
            table.add_row(
                ch.value,
                "[green]Yes[/green]" if state["enabled"] else "[dim]No[/dim]",
                "[green]Yes[/green]" if state["sent"] else "[dim]No[/dim]",
                state["message_id"] or "-",
                state["error"] or "",
            )
        console.print(table)


@cli.command()
@click.option("--user", "-u", "user_id", help="Limit to one recipient (default: all users)")
@click.pass_context
def stats(ctx, user_id):
    """Show notification statistics."""
    with get_db_session() as db:
        data = NotificationService(db, ctx.obj["config"]).get_statistics(user_id)

    scope = f"user {user_id}" if user_id else "all users"
    console.print(Panel(
        f"Total: [cyan]{data['total']}[/cyan]   Unread: [yellow]{data['unread']}[/yellow]\n"
        f"Retrying: [yellow]{data['retrying']}[/yellow]   "
        f"Terminally failed: [red]{data['terminally_failed']}[/red]",
        title=f"Notification Statistics ({scope})",
    ))

    table = Table(title="By Status")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for status, count in data["by_status"].items():
        table.add_row(status, str(count))
    console.print(table)

    table = Table(title="Channels")
    table.add_column("Channel", style="cyan")
    table.add_column("Enabled", justify="right")
    table.add_column("Sent", justify="right", style="green")
    table.add_column("Errors", justify="right", style="red")
    for channel, counts in data["channels"].items():
        table.add_row(channel, str(counts["enabled"]), str(counts["sent"]), str(counts["errors"]))
    console.print(table)


# --- Setup Commands ---


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Overwrite existing config")
def init(force):
    """Create a default config file."""
    config_path = Path("config.yaml")

    if config_path.exists() and not force:
        console.print("[yellow]config.yaml already exists. Use --force to overwrite.[/yellow]")
        return

    default_config = """# Notifier Configuration
# Every value can also be set with NOTIFIER_<SECTION>__<KEY> environment variables

database:
  url: sqlite:///notifier.db

retry:
  max_retries: 3
  base_delay_minutes: 5
  backoff_factor: 2

dispatcher:
  pending_interval_seconds: 30
  retry_interval_seconds: 60
  reap_interval_minutes: 60
  max_workers: 10
  send_timeout_seconds: 10
  lease_seconds: 120
  autostart: false
  log_level: INFO

notifications:
  expiry_days: 7
  default_web: true
  default_wechat: true
  default_email: false

wechat:
  enabled: false
  app_id: ""
  app_secret: ""  # Or NOTIFIER_WECHAT__APP_SECRET

email:
  enabled: false
  smtp_host: localhost
  smtp_port: 587
  username: ""
  password: ""  # Or NOTIFIER_EMAIL__PASSWORD
  use_tls: true
  from_address: notifications@localhost
"""

    config_path.write_text(default_config)
    console.print(f"[green]Created {config_path}[/green]")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", "-p", default=8000, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload (dev mode)")
def server(host, port, reload):
    """Start the API server."""
    import uvicorn

    console.print(Panel(
        f"Starting API server at [cyan]http://{host}:{port}[/cyan]\n"
        f"API docs at [cyan]http://{host}:{port}/docs[/cyan]",
        title="Notifier API",
    ))

    uvicorn.run(
        "notifier.api.main:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    cli()
