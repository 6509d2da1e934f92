"""Entry point for `python -m mechanicscope` and the `mechanicscope` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from dotenv import load_dotenv

from mechanicscope.engine import DependencyEngine, EngineSnapshot
from mechanicscope.errors import MechanicScopeError
from mechanicscope.procedure_store import ProcedureStore
from mechanicscope.progress_store import ProgressStore
from mechanicscope.settings import RuntimeSettings
from mechanicscope.sharing import ProcedureSharing


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Track step progress through guided repair procedures")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", help="List procedures available for a piece of equipment")
    list_cmd.add_argument("equipment")

    status_cmd = commands.add_parser("status", help="Show completed, available and active steps")
    status_cmd.add_argument("equipment")
    status_cmd.add_argument("procedure")

    complete_cmd = commands.add_parser("complete", help="Mark an available step completed")
    complete_cmd.add_argument("equipment")
    complete_cmd.add_argument("procedure")
    complete_cmd.add_argument("step", type=int)
    complete_cmd.add_argument("--equipment-name", default=None, help="Label recorded in history on completion")
    complete_cmd.add_argument("--notes", default=None, help="Notes recorded in history on completion")
    complete_cmd.add_argument("--rating", type=int, default=None, choices=range(1, 6), help="1-5 rating for history")

    uncomplete_cmd = commands.add_parser("uncomplete", help="Reopen a completed step")
    uncomplete_cmd.add_argument("equipment")
    uncomplete_cmd.add_argument("procedure")
    uncomplete_cmd.add_argument("step", type=int)

    reset_cmd = commands.add_parser("reset", help="Clear all progress for a procedure")
    reset_cmd.add_argument("equipment")
    reset_cmd.add_argument("procedure")

    history_cmd = commands.add_parser("history", help="Show completed repairs, newest first")
    history_cmd.add_argument("--equipment", default=None, help="Filter by equipment name")
    history_cmd.add_argument("--limit", type=int, default=None)

    export_proc_cmd = commands.add_parser("export-procedure", help="Write a shareable procedure package")
    export_proc_cmd.add_argument("equipment")
    export_proc_cmd.add_argument("procedure")
    export_proc_cmd.add_argument("--no-media", action="store_true", help="Leave media files out of the package")

    import_proc_cmd = commands.add_parser("import-procedure", help="Validate and install a procedure package")
    import_proc_cmd.add_argument("path", type=Path)
    import_proc_cmd.add_argument("--equipment", default=None, help="Install under this equipment id instead")

    export_progress_cmd = commands.add_parser("export-progress", help="Write progress, history and preferences to a file")
    export_progress_cmd.add_argument("path", type=Path)

    import_progress_cmd = commands.add_parser("import-progress", help="Merge a progress export into local data")
    import_progress_cmd.add_argument("path", type=Path)

    return parser.parse_args(argv)


def _print_snapshot(engine: DependencyEngine, snapshot: EngineSnapshot) -> None:
    procedure = engine.procedure
    name = procedure.name if procedure is not None and procedure.name else snapshot.procedure_id
    print(f"procedure={snapshot.procedure_id} name={name!r} equipment={snapshot.equipment_id}")
    print(f"state={snapshot.state.value} progress={snapshot.progress_percentage:.0f}%")
    print(f"completed={sorted(snapshot.completed)}")
    print(f"available={list(snapshot.available)}")
    active = engine.active
    if active is not None:
        print(f"active={active.id} action={active.action!r}")
        if active.part_ref:
            print(f"part={active.part_ref}")
        if active.torque_spec is not None:
            print(f"torque={active.torque_spec}")
        for warning in active.warnings:
            print(f"warning={warning}")
    else:
        print("active=none")


def run(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    procedure_store = ProcedureStore.from_settings(settings)
    progress_store = ProgressStore.from_settings(settings)

    if args.command == "list":
        summaries = procedure_store.list_procedures(args.equipment)
        for summary in summaries:
            origin = "user" if summary.writable else "bundled"
            print(f"{summary.procedure_id}\t{summary.name}\t{summary.step_count} steps\t{origin}")
        if not summaries:
            print(f"no procedures found for {args.equipment}")
        return 0

    if args.command in {"status", "complete", "uncomplete", "reset"}:
        engine = DependencyEngine(procedure_store, progress_store)
        snapshot = engine.load(args.procedure, args.equipment)
        if args.command == "complete":
            snapshot = engine.complete(args.step)
            if snapshot.is_completed:
                entry = engine.build_repair_log(
                    equipment_name=args.equipment_name,
                    notes=args.notes,
                    rating=args.rating,
                )
                progress_store.log_completion(entry)
                print(f"procedure_completed=True history_id={entry.id}")
        elif args.command == "uncomplete":
            snapshot = engine.uncomplete(args.step)
        elif args.command == "reset":
            snapshot = engine.reset()
        _print_snapshot(engine, snapshot)
        return 0

    if args.command == "history":
        limit = args.limit if args.limit is not None else settings.history_limit
        for entry in progress_store.get_repair_history(args.equipment, limit=limit):
            print(
                f"{entry.completed_at.isoformat()}\t{entry.equipment_name}\t{entry.procedure_id}"
                f"\t{entry.duration_minutes} min\t{entry.notes or ''}"
            )
        return 0

    sharing = ProcedureSharing.from_settings(procedure_store, settings)
    if args.command == "export-procedure":
        procedure = procedure_store.load_procedure(args.equipment, args.procedure)
        path = sharing.export_package(procedure, include_media=False if args.no_media else None)
        print(f"package={path}")
        return 0

    if args.command == "import-procedure":
        procedure = sharing.import_package(args.path, target_equipment_id=args.equipment)
        print(f"imported={procedure.id} equipment={procedure.equipment_id} steps={len(procedure.steps)}")
        return 0

    if args.command == "export-progress":
        args.path.parent.mkdir(parents=True, exist_ok=True)
        args.path.write_text(progress_store.export_data(), encoding="utf-8")
        print(f"exported={args.path}")
        return 0

    if args.command == "import-progress":
        records, history = progress_store.import_data(args.path.read_text(encoding="utf-8"))
        print(f"records_added={records} history_added={history}")
        return 0

    raise ValueError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_dotenv()

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        return run(args, settings)
    except (MechanicScopeError, OSError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
