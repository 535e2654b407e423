from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from .config import load_settings


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ChainRaffle HTTP service")
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file with settings")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Interface to bind.")
    parser.add_argument("--port", type=int, default=5000, help="Port to listen on.")
    parser.add_argument(
        "--verbose", action="store_true", help="Enable debug logging (default INFO)."
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbose)
    settings = load_settings(args.env_file)

    # Imported late so the database engine is built from the loaded settings.
    from .app import create_app

    app = create_app()
    logging.getLogger("chainraffle.service").info(
        "Serving raffle on %s:%s (fee=%s, interval=%ss)",
        args.host,
        args.port,
        settings.raffle.entrance_fee,
        settings.raffle.interval_seconds,
    )
    try:
        app.run(host=args.host, port=args.port, debug=settings.flask.debug, use_reloader=False)
    except KeyboardInterrupt:
        print("Raffle service stopped by user.")


if __name__ == "__main__":
    main()
