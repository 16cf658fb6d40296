from __future__ import annotations

# HTTP API process.
#
#   python -m salon_tokens.server --database-url sqlite:///salon.db --mqtt-host 127.0.0.1

import argparse

import uvicorn

from .api import create_app
from .config import Settings, add_mqtt_args, add_otp_args, add_store_args, settings_from_args
from .log import configure_logging


def run_server(*, settings: Settings, host: str, port: int, log_level: str = "info") -> None:
    configure_logging(log_level.upper())
    app = create_app(settings=settings)
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def add_server_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    add_store_args(p)
    add_mqtt_args(p)
    add_otp_args(p)


def main() -> None:
    parser = argparse.ArgumentParser(description="Salon token HTTP API")
    add_server_args(parser)
    args = parser.parse_args()

    run_server(settings=settings_from_args(args), host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
