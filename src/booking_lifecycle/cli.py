"""CLI entry point for the booking engine."""

from __future__ import annotations

import click


@click.group()
def main() -> None:
    """Booking lifecycle engine."""


@main.command()
@click.argument("booking_id")
@click.option("--config", default=None, help="Config file path")
def replay(booking_id: str, config: str | None) -> None:
    """Print a booking's event stream and the state it folds to."""
    import asyncio

    from .core.errors import BookingError
    from .domain.booking import BookingAggregate
    from .infrastructure.event_store import create_event_store
    from .main import configure

    settings = configure(config_path=config)
    store = create_event_store(settings.event_store)

    async def _replay() -> tuple[list, BookingAggregate]:
        events = [e async for e in store.load(booking_id)]
        aggregate = BookingAggregate.from_events(events, booking_id=booking_id)
        dispose = getattr(store, "dispose", None)
        if dispose is not None:
            await dispose()
        return events, aggregate

    try:
        events, aggregate = asyncio.run(_replay())
    except BookingError as exc:
        raise click.ClickException(str(exc)) from exc

    if not events:
        click.echo(f"No events for {booking_id}.")
        return
    for event in events:
        ts = event.metadata.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"  v{event.version:<4} {ts}  {event.event_type.value}")
    click.echo()
    click.echo(f"Status:   {aggregate.status.value}")
    if aggregate.start_time and aggregate.end_time:
        click.echo(
            f"Interval: {aggregate.start_time.isoformat()} -> {aggregate.end_time.isoformat()}"
        )
    click.echo(f"Version:  {aggregate.version}")


@main.command("check-conflict")
@click.argument("start1")
@click.argument("end1")
@click.argument("start2")
@click.argument("end2")
def check_conflict(start1: str, end1: str, start2: str, end2: str) -> None:
    """Compare two ISO-8601 intervals [START1, END1) and [START2, END2)."""
    from .core.errors import ValidationError
    from .core.ids import from_iso
    from .domain.conflicts import Interval, classify

    try:
        a = Interval(from_iso(start1), from_iso(end1))
        b = Interval(from_iso(start2), from_iso(end2))
    except (ValueError, ValidationError) as exc:
        raise click.BadParameter(str(exc)) from exc

    severity = classify(a, b)
    if severity is None:
        click.echo("no conflict")
    else:
        click.echo(f"conflict: {severity.value}")


@main.command("serve-metrics")
@click.option("--port", default=None, type=int, help="Metrics port (defaults to config)")
@click.option("--config", default=None, help="Config file path")
def serve_metrics(port: int | None, config: str | None) -> None:
    """Expose Prometheus metrics until interrupted."""
    import time

    from .main import configure
    from .observability.metrics import start_metrics_server

    settings = configure(config_path=config)
    port = port or settings.observability.metrics_port
    start_metrics_server(port)
    click.echo(f"Serving metrics on :{port}")
    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
