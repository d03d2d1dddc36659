import argparse
import logging

from .api import build_services, create_app
from .config import DATABASE_URL, SERVER_HOST, SERVER_PORT


def _setup_logging(level: int = logging.INFO) -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=level,
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Segment league server")
    parser.add_argument("--host", default=SERVER_HOST)
    parser.add_argument("--port", type=int, default=SERVER_PORT)
    parser.add_argument(
        "--database-url",
        default=DATABASE_URL,
        help="SQLAlchemy database URL (defaults to DATABASE_URL)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    _setup_logging(logging.DEBUG if args.debug else logging.INFO)
    services = build_services(args.database_url)
    app = create_app(services)
    logging.info("Serving segment league on %s:%s", args.host, args.port)
    try:
        app.run(host=args.host, port=args.port, threaded=True)
    finally:
        logging.info("Waiting for pending webhook events ...")
        services.webhooks.shutdown(wait=True)


if __name__ == "__main__":
    main()
