# src/align_planner/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs the console REPL.
A single command can also be run non-interactively: `align /push`.
"""

from __future__ import annotations

import logging
import sys

from ..config import get_settings
from ..errors import StorageError
from ..logging_setup import setup_logging
from .bootstrap import create_initial_state
from .console import handle_line, run_console_loop

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", settings.app_name)

    try:
        state = create_initial_state(settings=settings)
    except StorageError as e:
        logger.error("Cannot open local storage: %s", e)
        print(f"Cannot open local storage: {e}", file=sys.stderr)
        return 1

    if argv:
        reply = handle_line(state, " ".join(argv))
        if reply:
            print(reply)
        return 0

    if settings.console_enabled:
        run_console_loop(state)
    logger.info("Bye.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
