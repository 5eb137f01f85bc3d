import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from townly.database import Database, resolve_database_path
from townly.scheduling import calculate_next_email_send

DEFAULT_SCHEDULES = [
    ("저녁 날씨 안내 (18:00)", "저녁 6시 날씨 안내 이메일", "🌤️ 오늘 저녁 날씨 안내", "18:00"),
    ("저녁 날씨 안내 (19:00)", "저녁 7시 날씨 안내 이메일", "🌤️ 오늘 저녁 날씨 안내", "19:00"),
    ("밤 날씨 안내 (23:00)", "밤 11시 내일 날씨 안내 이메일", "🌙 내일 날씨 미리보기", "23:00"),
    ("새벽 날씨 안내 (01:00)", "새벽 1시 오늘 날씨 안내 이메일", "🌃 새벽 날씨 안내", "01:00"),
    ("아침 날씨 안내 (06:00)", "아침 6시 오늘 날씨 안내 이메일", "☀️ 좋은 아침! 오늘의 날씨", "06:00"),
]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the default Townly weather email schedules")
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to TOWNLY_DB_PATH or data/townly.sqlite3)",
    )
    parser.add_argument("--timezone", default="Asia/Seoul", help="IANA timezone for the send times")
    parser.add_argument("--inactive", action="store_true", help="Create the schedules disabled")
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    db_env = args.db_path or os.getenv("TOWNLY_DB_PATH")
    database = Database(resolve_database_path(db_env), secret_key=os.getenv("TOWNLY_SECRET_KEY"))
    database.initialize()

    existing = {schedule.title for schedule in database.list_email_schedules()}
    created = 0
    for title, description, subject, schedule_time in DEFAULT_SCHEDULES:
        if title in existing:
            print(f"Skipping '{title}': already exists")
            continue
        schedule = database.create_email_schedule(
            title=title,
            description=description,
            email_subject=subject,
            schedule_time=schedule_time,
            timezone_name=args.timezone,
            is_active=not args.inactive,
            next_send_at=calculate_next_email_send(schedule_time, args.timezone, None),
        )
        created += 1
        print(f"Created schedule #{schedule.id}: {schedule.title} (next send {schedule.next_send_at.isoformat()})")

    print(f"{created} schedule(s) created, {len(DEFAULT_SCHEDULES) - created} skipped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
