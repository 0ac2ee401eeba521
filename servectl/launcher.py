"""
servectl Launcher: command-line entry point.

    servectl start | stop | restart

Responsibilities:
  - Parse the action
  - Load settings and configure logging
  - Run the lifecycle controller under the action lock
  - Map supervisor errors to exit codes (0 ok, 1 fatal)
"""

import argparse
import logging
import pathlib
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional, Sequence

from servectl.config import APP_ROOT, SupervisorConfig, load_settings, log_dir_for, settings_path_for
from servectl.errors import InvalidAction, SupervisorError
from servectl.lifecycle import LifecycleController, parse_action

log = logging.getLogger("launcher")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _setup_logging(log_dir: pathlib.Path) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / "launcher.log", maxBytes=2 * 1024 * 1024, backupCount=2, encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logging.basicConfig(
        level=logging.INFO, format=_LOG_FORMAT, handlers=[file_handler, logging.StreamHandler()],
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="servectl",
        description="Start, stop or restart the local web server (single instance).",
    )
    parser.add_argument("action", nargs="?", metavar="{start,stop,restart}")
    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: Optional[Sequence[str]] = None, root: Optional[pathlib.Path] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        action = parse_action(args.action)
    except InvalidAction as e:
        parser.print_usage(sys.stderr)
        print(f"servectl: error: {e}", file=sys.stderr)
        return 1

    root = APP_ROOT if root is None else root
    _setup_logging(log_dir_for(root))

    try:
        settings = load_settings(settings_path_for(root))
        config = SupervisorConfig.from_settings(settings, root=root)
        controller = LifecycleController(config)
        controller.run(action)
    except SupervisorError as e:
        log.error("%s failed: %s", action.value, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
