"""
Main CLI application using Typer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Dict, List, Optional

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..adapters.appointment_api import AppointmentAPI
from ..adapters.mock_store import InMemoryAppointmentStore
from ..config import AppConfig, get_default_config_path
from ..domain.booking import Appointment
from ..domain.exceptions import AppointmentAPIError, BookingEngineError
from ..domain.models import TimeOfDay, parse_date
from ..services.booking_coordinator import BookingCoordinator, BookingState

app = typer.Typer(
    name="slotbooking",
    help="Check availability and book appointments against the appointment API",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[Optional[Path], typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml")]
MockOption = Annotated[bool, typer.Option("--mock", help="Use the in-memory appointment store instead of the API.")]
TokenOption = Annotated[Optional[str], typer.Option("--token", envvar="SLOTBOOKING_TOKEN", help="Bearer token for the appointment API.")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging.")]


@app.callback()
def main(verbose: VerboseOption = False):
    """
    Appointment availability and booking.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _load_config(config_file: Optional[Path]) -> AppConfig:
    config_path = config_file or get_default_config_path()
    if not config_path.exists() and config_file is None:
        # No config file anywhere: run on defaults
        return AppConfig()
    return AppConfig.load_from_yaml(config_path)


def _open_api(config: AppConfig, mock: bool, token: Optional[str]):
    if mock:
        return InMemoryAppointmentStore.from_file(
            config.mock_data_file,
            buffer_minutes=config.booking.buffer_minutes,
            today=pendulum.today(config.timezone).date(),
        )
    return AppointmentAPI(
        config.api_base_url,
        access_token=token,
        timeout=config.booking.submit_timeout_seconds,
        default_duration_minutes=config.booking.default_duration_minutes,
    )


def _parse_day(value: str):
    try:
        return parse_date(value)
    except ValueError as e:
        console.print(f"[red]Invalid date {value!r}: {e}[/red]")
        raise typer.Exit(1)


def _parse_time(value: str) -> TimeOfDay:
    try:
        return TimeOfDay.parse(value)
    except ValueError as e:
        console.print(f"[red]Invalid time {value!r}: {e}[/red]")
        raise typer.Exit(1)


def _group_by_period(times: List[TimeOfDay]) -> Dict[str, List[TimeOfDay]]:
    """Split times into morning (<12:00), afternoon (<17:00) and evening."""
    grouped: Dict[str, List[TimeOfDay]] = {"Morning": [], "Afternoon": [], "Evening": []}
    for time in times:
        if time.hour < 12:
            grouped["Morning"].append(time)
        elif time.hour < 17:
            grouped["Afternoon"].append(time)
        else:
            grouped["Evening"].append(time)
    return grouped


def _print_times(times: List[TimeOfDay], title: str) -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Period", style="bold yellow")
    table.add_column("Start times")

    for period, entries in _group_by_period(times).items():
        if entries:
            table.add_row(period, "  ".join(str(time) for time in entries))

    console.print()
    console.print(table)
    console.print()


@app.command()
def slots(
    business_id: Annotated[str, typer.Argument(help="Business id")],
    day: Annotated[str, typer.Option("--date", "-d", help="Date (YYYY-MM-DD)")],
    duration: Annotated[Optional[int], typer.Option("--duration", help="Service duration in minutes")] = None,
    config_file: ConfigOption = None,
    mock: MockOption = False,
    token: TokenOption = None,
):
    """
    Show the bookable start times of a business on a date.

    Examples:

        slotbooking slots barbershop --date 2024-11-25 --duration 45 --mock
    """
    try:
        config = _load_config(config_file)
        target_day = _parse_day(day)
        minutes = config.booking.default_duration_minutes if duration is None else duration

        async def run() -> List[TimeOfDay]:
            async with _open_api(config, mock, token) as api:
                coordinator = BookingCoordinator(api, settings=config.booking, timezone=config.timezone)
                coordinator.validate_date(target_day)
                return await coordinator.load_availability(business_id, target_day, minutes)

        times = asyncio.run(run())

        if not times:
            console.print(
                f"[yellow]No available times for {business_id} on {target_day}.[/yellow]\n"
                "Try a different date or a shorter service."
            )
            return

        _print_times(times, f"{business_id} · {target_day} · {minutes} min")

    except (FileNotFoundError, ValueError, BookingEngineError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def book(
    business_id: Annotated[str, typer.Argument(help="Business id")],
    service_id: Annotated[str, typer.Argument(help="Service id")],
    day: Annotated[str, typer.Option("--date", "-d", help="Date (YYYY-MM-DD)")],
    time: Annotated[str, typer.Option("--time", "-t", help="Start time (HH:MM)")],
    user: Annotated[str, typer.Option("--user", "-u", help="Requesting user (id or phone)")],
    duration: Annotated[Optional[int], typer.Option("--duration", help="Service duration in minutes")] = None,
    notes: Annotated[str, typer.Option("--notes", help="Notes for the business")] = "",
    config_file: ConfigOption = None,
    mock: MockOption = False,
    token: TokenOption = None,
):
    """
    Book an appointment. On a conflict the remaining times are listed.
    """
    try:
        config = _load_config(config_file)
        target_day = _parse_day(day)
        start = _parse_time(time)

        async def run():
            async with _open_api(config, mock, token) as api:
                coordinator = BookingCoordinator(api, settings=config.booking, timezone=config.timezone)
                attempt = coordinator.begin(
                    business_id=business_id,
                    service_id=service_id,
                    requester=user,
                    duration_minutes=duration,
                    notes=notes,
                )
                await attempt.select_date(target_day)
                attempt.select_time(start)
                await attempt.confirm()
                return attempt

        attempt = asyncio.run(run())

        if attempt.state == BookingState.COMMITTED:
            console.print(
                f"[bold green]✓ Booked[/bold green] {target_day} at {start} "
                f"(appointment {attempt.appointment.id})"
            )
        elif attempt.state == BookingState.AWAITING_RESELECTION:
            console.print(
                f"[yellow]⚠ {start} is no longer available ({attempt.last_conflict.kind.value}).[/yellow] "
                "Please choose one of the updated times."
            )
            _print_times(attempt.available_times, f"{business_id} · {target_day}")
            raise typer.Exit(2)
        elif attempt.state == BookingState.AWAITING_DATE_CHANGE:
            console.print(
                f"[yellow]⚠ No available times left on {target_day}.[/yellow] Please select a different date."
            )
            raise typer.Exit(2)
        else:
            console.print(f"[bold red]✗ Booking failed:[/bold red] {attempt.error}")
            raise typer.Exit(1)

    except (FileNotFoundError, ValueError, BookingEngineError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def cancel(
    appointment_id: Annotated[str, typer.Argument(help="Appointment id")],
    business_id: Annotated[str, typer.Option("--business", "-b", help="Business id")],
    day: Annotated[str, typer.Option("--date", "-d", help="Date (YYYY-MM-DD)")],
    time: Annotated[str, typer.Option("--time", "-t", help="Start time (HH:MM)")],
    duration: Annotated[Optional[int], typer.Option("--duration", help="Service duration in minutes")] = None,
    reason: Annotated[str, typer.Option("--reason", help="Cancellation reason")] = "",
    config_file: ConfigOption = None,
    mock: MockOption = False,
    token: TokenOption = None,
):
    """
    Cancel an appointment and free its slot.
    """
    try:
        config = _load_config(config_file)
        appointment = Appointment(
            id=appointment_id,
            business_id=business_id,
            service_id="",
            date=_parse_day(day),
            time=_parse_time(time),
            duration_minutes=config.booking.default_duration_minutes if duration is None else duration,
        )

        async def run() -> None:
            async with _open_api(config, mock, token) as api:
                coordinator = BookingCoordinator(api, settings=config.booking, timezone=config.timezone)
                await coordinator.cancel_appointment(appointment, reason)

        asyncio.run(run())
        console.print(f"[green]✓ Appointment {appointment_id} cancelled.[/green]")

    except AppointmentAPIError as e:
        console.print(f"[bold red]✗ Cancel failed:[/bold red] {e}")
        raise typer.Exit(1)

    except (FileNotFoundError, ValueError, BookingEngineError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotbooking[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
