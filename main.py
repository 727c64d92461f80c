"""Command-line interface for the enrollment core service."""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    venv_dir = Path(__file__).resolve().parent / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


if __name__ == "__main__":
    _bootstrap_virtualenv()

try:
    import anyio
except ImportError as exc:  # pragma: no cover - exercised in environments missing deps
    raise SystemExit(
        "The 'anyio' package is required. Run `pip install -e .` to install dependencies."
    ) from exc

from enrollment_core.config import Settings, load_settings
from enrollment_core.errors import CoreError

logger = logging.getLogger("enrollment.main")

_KNOWN_COMMANDS = {"serve", "resolve", "import-roster", "exceeded-report"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enrollment core utilities")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the YAML configuration (default: $ENROLLMENT_CONFIG or config/enrollment.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the enrollment HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )

    resolve_parser = subparsers.add_parser(
        "resolve", help="Resolve a phone number to an admin, mentor or student record"
    )
    resolve_parser.add_argument("phone", help="Phone number in any common notation")

    import_parser = subparsers.add_parser(
        "import-roster", help="Import partner-school students from a CSV roster"
    )
    import_parser.add_argument("file", type=Path, help="CSV file with name and school columns")
    import_parser.add_argument(
        "--offset",
        type=int,
        default=0,
        help="Resume from this position in the deduplicated roster",
    )
    import_parser.add_argument(
        "--all",
        action="store_true",
        dest="import_all",
        help="Keep calling with the returned offset until the whole roster is processed",
    )

    subparsers.add_parser(
        "exceeded-report", help="List students ranked past the seat limit of their class"
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]

    # Global options come before the subcommand; anything else without one means "serve".
    position = 0
    while position < len(args_list):
        if args_list[position] == "--config":
            position += 2
        elif args_list[position].startswith("--config="):
            position += 1
        else:
            break
    rest = args_list[position:]
    if not rest:
        args_list = [*args_list, "serve"]
    elif rest[0] not in _KNOWN_COMMANDS:
        if any(flag in rest for flag in ("-h", "--help")):
            return parser.parse_args(args_list)
        args_list = [*args_list[:position], "serve", *rest]

    return parser.parse_args(args_list)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _serve(settings: Settings, *, host: str, port: int) -> None:
    from enrollment_core.api import create_app
    import uvicorn

    logger.info("Starting enrollment API on http://%s:%s", host, port)
    uvicorn.run(create_app(settings=settings), host=host, port=port, log_level="info")


async def _resolve(settings: Settings, phone: str) -> dict:
    from enrollment_core.identity import IdentityResolver
    from enrollment_core.phone import format_phone_for_display
    from enrollment_core.record_store import RecordStore

    async with RecordStore(settings.record_store) as store:
        resolver = IdentityResolver(store, country_code=settings.enrollment.country_code)
        contact, resolution = await resolver.resolve_identity(phone)

    result: dict = {
        "normalized": contact.normalized,
        "bare_variant": contact.bare_variant,
        "display": format_phone_for_display(contact.normalized),
    }
    if resolution is None:
        result["status"] = "not_found"
    else:
        result.update(
            status="found",
            role=resolution.role.value,
            entity_id=resolution.entity_id,
            document_id=resolution.document_id,
        )
    return result


async def _import_roster(settings: Settings, path: Path, *, offset: int, import_all: bool) -> list:
    from enrollment_core.importer import RosterImporter
    from enrollment_core.record_store import RecordStore
    from enrollment_core.roster_files import load_roster_file

    rows = load_roster_file(path)
    logger.info("Loaded %d row(s) from %s", len(rows), path)

    reports = []
    async with RecordStore(settings.record_store) as store:
        importer = RosterImporter(store, settings.imports)
        next_offset: int | None = offset
        while next_offset is not None:
            report = await importer.run(rows, next_offset)
            reports.append(report.to_dict())
            next_offset = report.next_offset if import_all else None
    return reports


async def _exceeded_report(settings: Settings) -> dict:
    from enrollment_core.record_store import RecordStore
    from enrollment_core.roster import RosterService

    async with RecordStore(settings.record_store) as store:
        report = await RosterService(store, capacity=settings.enrollment.max_seats).exceeded_report()

    return {
        "total_overflow": report.total_overflow,
        "total_enabled": report.total_enabled,
        "overflow_percentage": report.overflow_percentage,
        "classes": [
            {
                "class_id": item.class_id,
                "title": item.title,
                "slug": item.slug,
                "level": item.level,
                "enrolled": len(item.partition.enrolled),
                "overflow": [
                    {
                        "student_id": enrollment.student_id,
                        "name": enrollment.student_name,
                        "enrolled_at": enrollment.enrolled_at.isoformat(),
                    }
                    for enrollment in item.partition.overflow
                ],
            }
            for item in report.classes
        ],
    }


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    try:
        settings = load_settings(args.config)
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
        return 0

    try:
        if args.command == "resolve":
            _print_json(anyio.run(_resolve, settings, args.phone))
        elif args.command == "import-roster":
            if args.offset < 0:
                raise SystemExit("--offset must not be negative")
            if not args.file.is_file():
                raise SystemExit(f"Roster file {args.file} does not exist")
            reports = anyio.run(
                lambda: _import_roster(
                    settings, args.file, offset=args.offset, import_all=args.import_all
                )
            )
            _print_json(reports if len(reports) != 1 else reports[0])
        elif args.command == "exceeded-report":
            _print_json(anyio.run(_exceeded_report, settings))
    except CoreError as exc:
        logger.error("%s: %s", exc.code, exc.message)
        return 1
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
