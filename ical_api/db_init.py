from __future__ import annotations

from .config import AppSettings
from .db import count_events, init_db


def main() -> None:
    """Create the events store if needed and report what it holds."""
    settings = AppSettings()
    path = init_db(settings)
    print(f"Events store ready at {path} ({count_events(settings)} events)")


if __name__ == "__main__":
    main()
