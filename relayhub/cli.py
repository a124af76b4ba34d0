from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import uvicorn


PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3021
DEFAULT_DB = Path("data/relayhub.db")


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="relayhub",
        description="Run the relayhub endpoint admin API",
    )
    parser.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"Admin API bind host (default: {DEFAULT_HOST})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Admin API bind port (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=Path(os.environ.get("RELAYHUB_DB", DEFAULT_DB)),
        help=f"SQLite store path (default: $RELAYHUB_DB or {DEFAULT_DB})",
    )
    parser.add_argument(
        "--reload",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Enable FastAPI autoreload (default: off)",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug", "trace"],
        help="Uvicorn and application log level",
    )
    return parser.parse_args(argv)


def _configure_logging(level: str) -> None:
    numeric = logging.DEBUG if level == "trace" else getattr(logging, level.upper())
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run_admin(host: str, port: int, reload: bool, log_level: str) -> None:
    config = uvicorn.Config(
        "relayhub.admin.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
        reload_dirs=[str(PROJECT_ROOT / "relayhub")],
    )
    server = uvicorn.Server(config)
    server.run()


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.log_level)
    # The app module reads the store location at import time.
    os.environ["RELAYHUB_DB"] = str(args.db.resolve())

    print(f"[relayhub] Store at {args.db}")
    print(f"[relayhub] Starting admin API at http://{args.host}:{args.port}")
    try:
        _run_admin(args.host, args.port, args.reload, args.log_level)
    except KeyboardInterrupt:  # pragma: no cover - interactive session
        pass
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
