"""Print the live seat count of one class."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import anyio

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from enrollment_core.config import Settings, load_settings  # noqa: E402
from enrollment_core.errors import CoreError  # noqa: E402
from enrollment_core.record_store import RecordStore  # noqa: E402
from enrollment_core.roster import RosterService  # noqa: E402


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Show how many seats a class has left")
    parser.add_argument("class_id", type=int, help="Numeric id of the class")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Override the configuration file (defaults to ENROLLMENT_CONFIG or config/enrollment.yaml)",
    )
    return parser.parse_args(argv)


async def _check(args: argparse.Namespace, settings: Settings) -> int:
    async with RecordStore(settings.record_store) as store:
        rosters = RosterService(store, capacity=settings.enrollment.max_seats)
        try:
            report = await rosters.classify_roster(args.class_id)
        except CoreError as exc:
            print(f"{exc.code}: {exc.message}", file=sys.stderr)
            return 1

    split = report.partition
    state = "open" if report.course.enrollment_open else "closed"
    print(f"Class #{report.course.id} {report.course.title!r} ({state})")
    print(f"Seated: {len(split.enrolled)}/{split.capacity}  Seats left: {split.seats_left}")
    if split.overflow:
        print(f"Past capacity: {len(split.overflow)}")
        for enrollment in split.overflow:
            print(f"- #{enrollment.student_id} {enrollment.student_name} ({enrollment.enrolled_at:%Y-%m-%d %H:%M})")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(list(argv) if argv is not None else None)
    try:
        settings = load_settings(args.config)
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc
    return anyio.run(_check, args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
