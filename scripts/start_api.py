import os
import sys

import uvicorn


def _read_port() -> int:
    """Fetch and validate the PORT environment variable."""
    value = os.environ.get("PORT", "8000")
    try:
        return int(value)
    except ValueError as exc:  # pragma: no cover - fatal configuration
        raise SystemExit(f"Invalid PORT '{value}': {exc}") from exc


def _read_workers() -> int:
    # The scheduler runs in-process; more than one worker would run every job twice
    value = os.environ.get("WEB_CONCURRENCY", "1")
    try:
        workers = int(value)
    except ValueError as exc:  # pragma: no cover - fatal configuration
        raise SystemExit(f"Invalid WEB_CONCURRENCY '{value}': {exc}") from exc
    if workers != 1 and os.environ.get("SCHEDULER_ENABLED", "true").lower() != "false":
        raise SystemExit("WEB_CONCURRENCY must be 1 while SCHEDULER_ENABLED; run run_scheduler.py separately")
    return workers


def main() -> None:
    port = _read_port()
    uvicorn.run("bonded_ledger.main:app", host="0.0.0.0", port=port, workers=_read_workers())


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:  # pragma: no cover - last line of defense
        print(f"Failed to start API: {exc}", file=sys.stderr)
        raise
