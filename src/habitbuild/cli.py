from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from datetime import date
from pathlib import Path

import uvicorn

from .api import create_app
from .config import Config, load_config
from .errors import HabitBuildError
from .models import DEFAULT_DURATION, DURATION_PRESETS, GOAL_COLORS
from .paths import ensure_home_dirs, habitbuild_home
from .server import SyncServer, hash_token, load_tokens
from .service import HabitService
from .store import JsonFileStore
from .telemetry import TelemetryLogger


def _config() -> Config:
    home = habitbuild_home()
    ensure_home_dirs(home)
    return load_config(home)


def _service() -> HabitService:
    return HabitService.create(_config(), source="cli")


def _server(config: Config) -> SyncServer:
    server_dir = config.home / "server"
    return SyncServer(
        load_tokens(config.tokens_path),
        store_factory=lambda user_id: JsonFileStore(server_dir / f"{user_id}.json"),
        telemetry=TelemetryLogger(server_dir / "events.jsonl"),
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=True))


def _parse_goal(value: str) -> tuple[str, str]:
    name, sep, color = value.rpartition(":")
    if not sep or color not in GOAL_COLORS:
        raise argparse.ArgumentTypeError(f"goal must be NAME:COLOR with COLOR in {', '.join(GOAL_COLORS)}")
    return name, color


async def _status(service: HabitService) -> int:
    ended = await service.refresh_progress()
    if ended is not None:
        print(f"Challenge '{ended.name}' {ended.status}" + (f" on day {ended.failed_on_day}" if ended.failed_on_day else ""))
    challenge = await service.get_current_challenge()
    if challenge is None:
        print("No active challenge.")
        return 0
    stats = await service.stats()
    assert stats is not None
    print(f"{challenge.name} (day {stats.current_day}/{challenge.duration}{', strict' if challenge.strict_mode else ''})")
    print(
        f"Streak: {stats.current_streak} (best {stats.best_streak}) | "
        f"Completion: {stats.completion_rate}% | Days remaining: {stats.days_remaining}"
    )
    for row in await service.today_goals_status():
        goal = row["goal"]
        mark = "x" if row["completed"] else " "
        print(f"[{mark}] {goal.name} ({goal.color}) id={goal.id}")
    return 0


async def _run(args: argparse.Namespace, service: HabitService) -> int:
    if args.command == "status":
        return await _status(service)

    if args.command == "create":
        challenge = await service.create_challenge(
            args.name,
            args.goal,
            duration=args.duration,
            strict_mode=args.strict,
            start_date=args.start_date,
        )
        _print_json(challenge.to_dict())
        return 0

    if args.command == "checkin":
        if args.done is None:
            entry = await service.toggle_entry(args.date, args.goal_id)
        else:
            entry = await service.set_entry(args.date, args.goal_id, args.done, args.note)
        _print_json(entry.to_dict())
        return 0

    if args.command == "note":
        entry = await service.update_entry_note(args.date, args.goal_id, args.text)
        if entry is None:
            print("No entry recorded for that goal and date.", file=sys.stderr)
            return 1
        _print_json(entry.to_dict())
        return 0

    if args.command == "abandon":
        current = await service.get_current_challenge()
        challenge_id = args.challenge_id or (current.id if current else None)
        if challenge_id is None:
            print("No active challenge to abandon.", file=sys.stderr)
            return 1
        _print_json((await service.abandon_challenge(challenge_id)).to_dict())
        return 0

    if args.command == "history":
        _print_json([challenge.to_dict() for challenge in await service.past_challenges()])
        return 0

    if args.command == "days":
        _print_json([asdict(status) for status in await service.day_statuses()])
        return 0

    if args.command == "sync":
        result = await service.sync() if args.force else await service.sync_on_open()
        if result is None:
            print("Synced recently; use --force to sync now.")
            return 0
        _print_json(result.to_dict())
        return 0 if result.success or result.skipped else 1

    if args.command == "recover":
        result = await service.recover_if_empty()
        _print_json(result.to_dict())
        return 0

    if args.command == "export":
        payload = await service.export_data()
        if args.out:
            Path(args.out).write_text(json.dumps(payload, indent=2), encoding="utf-8")
            print(f"Exported to {args.out}")
        else:
            _print_json(payload)
        return 0

    if args.command == "import":
        await service.import_data(Path(args.file).read_text(encoding="utf-8"))
        print(f"Imported {args.file}")
        return 0

    if args.command == "clear":
        if not args.yes:
            print("Refusing to clear local data without --yes.", file=sys.stderr)
            return 1
        await service.clear_all_data()
        print("Local data cleared.")
        return 0

    raise ValueError(f"Unsupported command: {args.command}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Habit Build CLI")
    sub = parser.add_subparsers(dest="command", required=True)
    today = date.today().isoformat()

    sub.add_parser("status", help="Show the current challenge and today's goals")

    create_cmd = sub.add_parser("create", help="Start a new challenge")
    create_cmd.add_argument("name", help="Challenge name")
    create_cmd.add_argument("--goal", action="append", type=_parse_goal, required=True, help="NAME:COLOR (repeatable)")
    create_cmd.add_argument("--duration", type=int, default=DEFAULT_DURATION, help=f"Days; presets {DURATION_PRESETS}")
    create_cmd.add_argument("--strict", action="store_true", help="Fail the challenge on the first missed day")
    create_cmd.add_argument("--start-date", default=None, help="Date in YYYY-MM-DD (default today)")

    checkin_cmd = sub.add_parser("checkin", help="Record a goal for a day (toggles by default)")
    checkin_cmd.add_argument("goal_id")
    checkin_cmd.add_argument("--date", default=today, help="Date in YYYY-MM-DD")
    state = checkin_cmd.add_mutually_exclusive_group()
    state.add_argument("--done", dest="done", action="store_const", const=True, default=None)
    state.add_argument("--undone", dest="done", action="store_const", const=False)
    checkin_cmd.add_argument("--note", default=None)

    note_cmd = sub.add_parser("note", help="Attach a note to an existing entry")
    note_cmd.add_argument("goal_id")
    note_cmd.add_argument("text")
    note_cmd.add_argument("--date", default=today, help="Date in YYYY-MM-DD")

    abandon_cmd = sub.add_parser("abandon", help="Abandon a challenge (default: current)")
    abandon_cmd.add_argument("challenge_id", nargs="?", default=None)

    sub.add_parser("history", help="List finished challenges")
    sub.add_parser("days", help="Per-day status of the current challenge")

    sync_cmd = sub.add_parser("sync", help="Reconcile with the sync server")
    sync_cmd.add_argument("--force", action="store_true", help="Ignore the minimum sync interval")

    sub.add_parser("recover", help="Restore an empty local store from the sync server")

    export_cmd = sub.add_parser("export", help="Export all local data as JSON")
    export_cmd.add_argument("--out", default=None, help="Output JSON path")

    import_cmd = sub.add_parser("import", help="Replace local data with an export file")
    import_cmd.add_argument("file")

    clear_cmd = sub.add_parser("clear", help="Delete all local data")
    clear_cmd.add_argument("--yes", action="store_true")

    login_cmd = sub.add_parser("login", help="Store a sync credential issued by the server operator")
    login_cmd.add_argument("--user-id", required=True)
    login_cmd.add_argument("--token", required=True)
    login_cmd.add_argument("--name", default="")

    sub.add_parser("logout", help="Forget the stored sync credential")

    serve_cmd = sub.add_parser("serve", help="Run the sync server")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8000)

    token_cmd = sub.add_parser("hash-token", help="Print the tokens-file digest for a bearer token")
    token_cmd.add_argument("token")

    telemetry_cmd = sub.add_parser("telemetry", help="Telemetry operations")
    telemetry_sub = telemetry_cmd.add_subparsers(dest="telemetry_command", required=True)
    telemetry_summary = telemetry_sub.add_parser("summary", help="Summarize sync outcomes")
    telemetry_summary.add_argument("--range", default="7d", help="Range window like 7d or 24h")
    telemetry_sub.add_parser("purge", help="Delete the local event log")

    args = parser.parse_args()

    if args.command == "hash-token":
        print(hash_token(args.token))
        return 0

    if args.command == "serve":
        try:
            server = _server(_config())
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        uvicorn.run(create_app(server), host=args.host, port=args.port, log_level="info")
        return 0

    service = _service()

    if args.command == "login":
        account = service.accounts.login(args.user_id, args.token, args.name)
        print(f"Logged in as {account.id}")
        return 0

    if args.command == "logout":
        print("Logged out." if service.accounts.logout() else "No stored credential.")
        return 0

    if args.command == "telemetry":
        if args.telemetry_command == "summary":
            try:
                _print_json(service.telemetry.summarize(args.range))
            except ValueError as exc:
                print(str(exc), file=sys.stderr)
                return 1
            return 0
        print("Event log deleted." if service.telemetry.purge() else "No event log.")
        return 0

    try:
        return asyncio.run(_run(args, service))
    except HabitBuildError as exc:
        _print_json(exc.to_dict())
        return 1
    except (KeyError, OSError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
