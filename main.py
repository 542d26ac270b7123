import asyncio
import logging
import sys

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from apexlive.config import ReplayConfig, setup_logging
from apexlive.data.openf1 import OpenF1Client
from apexlive.data.session import group_by_meeting, pick_default_session
from apexlive.errors import ApexLiveError
from apexlive.lib.arg_parser import parse_args
from apexlive.lib.time import format_clock
from apexlive.replay.engine import ReplayEngine

console = Console()


def list_sessions(client, year):
    sessions = client.list_sessions(year)
    if not sessions:
        console.print(f"[red]No sessions found for {year}[/]")
        return
    for meeting_sessions in group_by_meeting(sessions).values():
        console.print(f"[bold]{meeting_sessions[0].meeting_name}[/]")
        for s in meeting_sessions:
            console.print(f"  {s.session_key:>6}  {s.session_name}")


def find_session(client, year, session_key=None):
    sessions = client.list_sessions(year)
    if session_key is None:
        return pick_default_session(sessions)
    for s in sessions:
        if s.session_key == session_key:
            return s
    return None


def build_frame(engine, top_n=5):
    """One text frame of the replay: clock, leaderboard head and the tracked car."""
    state = engine.get_clock_state()
    mode = "LIVE" if state.is_live_head else ("PLAY" if state.is_playing else "PAUSE")
    race_status = engine.get_race_status()
    standings = engine.get_standings()

    table = Table(
        title=f"{format_clock(state.virtual_time)}  {mode} {state.rate:g}x  "
              f"Lap {standings.display_lap}/{standings.total_laps}  Track: {race_status.track_status}",
        show_header=True,
    )
    table.add_column("Pos", style="bold")
    table.add_column("Driver")
    table.add_column("Gap", justify="right")
    table.add_column("Last lap", justify="right")
    table.add_column("Tyre")
    table.add_column("Age", justify="right")
    table.add_column("", style="dim")

    for row in standings.rows[:top_n]:
        table.add_row(
            f"P{row.position}" if row.position else "-",
            f"[{row.color}]{row.code}[/]",
            row.gap_text,
            row.last_lap_time,
            row.tyre,
            str(row.tyre_age),
            "DRS" if row.drs_available else row.status,
        )

    driver = engine.tracked_entity
    telemetry = engine.get_car_telemetry(driver)
    if telemetry:
        table.caption = (f"#{driver}: {telemetry['speed']:.0f} km/h  gear {telemetry['gear']:.0f}  "
                         f"throttle {telemetry['throttle']:.0f}%  {telemetry['g_force']:+.2f} g  "
                         f"sector {engine.get_sector(driver) or '-'}")
    else:
        table.caption = f"#{driver}: waiting for data"
    return table


async def replay(engine, session, args):
    with Progress(
        SpinnerColumn(style="bold red"),
        TextColumn("[bold]Loading session data…"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task("load", total=None)
        await engine.load_session(session, tracked_entity=args.driver)

    if args.live:
        if not engine.go_live():
            console.print("[yellow]Session is not live, starting replay from the beginning instead[/]")
            engine.play()
    else:
        engine.set_rate(args.speed)
        engine.play()

    runner = asyncio.create_task(engine.run())
    elapsed = 0.0
    try:
        while args.duration is None or elapsed < args.duration:
            await asyncio.sleep(1.0)
            elapsed += 1.0
            console.print(build_frame(engine))
            state = engine.get_clock_state()
            if state.reached_end:
                console.print("[bold green]End of session[/]")
                break
    finally:
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)


def main(argv=None):
    args = parse_args(argv)
    config = ReplayConfig(args.config)
    setup_logging(config, level=logging.DEBUG if args.verbose else None)

    client = OpenF1Client(config.base_url, timeout=config.request_timeout)

    try:
        if args.list_sessions:
            list_sessions(client, args.year)
            client.close()
            return 0
        session = find_session(client, args.year, args.session)
    except ApexLiveError as e:
        console.print(f"[red]Could not reach OpenF1: {e}[/]")
        client.close()
        return 1

    if session is None:
        console.print("[red]Replay not started due to invalid session selection.[/]")
        client.close()
        return 1

    console.print(f"[bold green]Loaded:[/] {session.meeting_name} - {session.session_name} ({session.session_key})")

    engine = ReplayEngine(config, client=client)
    try:
        asyncio.run(replay(engine, session, args))
    except ApexLiveError as e:
        console.print(f"[red]Replay stopped: {e}[/]")
        return 1
    except ValueError as e:
        console.print(f"[red]Invalid option: {e}[/]")
        return 1
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/]")
    finally:
        engine.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
