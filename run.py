import argparse
import sys
from pathlib import Path

import uvicorn

from attendance_tracker.config import ROSTER_URL, STORE_BACKEND
from attendance_tracker.exceptions import AttendanceError
from attendance_tracker.ledger import AttendanceLedger, report_filename
from attendance_tracker.logger import setup_logger
from attendance_tracker.roster import create_roster_source
from attendance_tracker.storage import create_store


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face recognition attendance tracker")

    subparsers = parser.add_subparsers(dest="command", required=True)

    web = subparsers.add_parser("web", help="Start the camera loop and the operator/roster HTTP API")
    web.add_argument("--host", default="0.0.0.0", help="Host interface")
    web.add_argument("--port", type=int, default=3000, help="Port")
    web.add_argument("--camera", type=int, default=None, help="Camera index override")

    subparsers.add_parser("names", help="List enrolled names")
    subparsers.add_parser("absent", help="List enrolled names not yet marked present")

    report = subparsers.add_parser("report", help="Write the attendance report to a text file")
    report.add_argument("--output", type=Path, default=None, help="Report path (default: Attendance-<date>.txt)")

    subparsers.add_parser("clear", help="Clear the stored attendance")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("CLI")

    try:
        if args.command == "web":
            from attendance_tracker.web_app import create_web_app

            app = create_web_app(camera_index=args.camera)
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        roster = create_roster_source(ROSTER_URL)
        ledger = AttendanceLedger(create_store(STORE_BACKEND))

        if args.command == "names":
            names = roster.known_names()
            if not names:
                print("No one enrolled yet.")
                return 0
            for name in names:
                print(name)
            return 0

        if args.command == "absent":
            absent = ledger.list_absent(roster.known_names())
            if not absent:
                print("🎉 Everyone is present!")
                return 0
            for name in absent:
                print(name)
            return 0

        if args.command == "report":
            output = args.output or Path(report_filename())
            output.write_text(ledger.export_report(roster.known_names()), encoding="utf-8")
            print(f"Report written to {output}")
            return 0

        if args.command == "clear":
            ledger.clear()
            print("Attendance cleared.")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
