from datetime import datetime, timezone

from screen_time.config import settings
from screen_time.service import ScreenTimeService


def main() -> None:
    service = ScreenTimeService.from_settings(settings)
    rows = service.outstanding(limit=1000)
    now = datetime.now(timezone.utc)
    for row in rows:
        age = (now - row["submitted_at"]).total_seconds()
        print(
            f"{row['command_id']}  status={row['status']}  attempts={row['attempts']}  "
            f"age={age:.0f}s  last_error={row['last_error'] or '-'}"
        )

    print(f"Outstanding commands: {len(rows)}")


if __name__ == "__main__":
    main()
