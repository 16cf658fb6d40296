from __future__ import annotations

# Single-entrypoint runner.
#
#   python -m salon_tokens.app api --database-url sqlite:///salon.db [--mqtt-host HOST]
#   python -m salon_tokens.app submit --queue male --service Haircut --name Asha --mobile 9876543210
#   python -m salon_tokens.app serve-next --queue male
#   python -m salon_tokens.app watch --mqtt-host HOST
#
# The desk commands (submit, serve, serve-next, waiting, serving, recent,
# board) open the store directly, run one engine operation and exit. Tokens
# issued from the desk skip OTP, like walk-ins registered by staff.

import argparse
import sys
from typing import Callable

from .config import add_mqtt_args, add_store_args, settings_from_args
from .engine import QueueEngine
from .errors import (
    InvalidTransition,
    NotFound,
    StoreUnavailable,
    TokenError,
    ValidationError,
    VerificationRequired,
)
from .log import configure_logging
from .models import Token
from .runtime import open_runtime

EXIT_CODES: list[tuple[type[TokenError], int]] = [
    (ValidationError, 2),
    (VerificationRequired, 3),
    (NotFound, 4),
    (InvalidTransition, 5),
    (StoreUnavailable, 75),
]


def exit_code_for(exc: TokenError) -> int:
    for cls, code in EXIT_CODES:
        if isinstance(exc, cls):
            return code
    return 1


def describe(token: Token) -> str:
    return f"{token.label} {token.status.value:<7} {token.service:<14} {token.customer_name} ({token.customer_mobile})"


def _cmd_submit(engine: QueueEngine, args: argparse.Namespace) -> None:
    token = engine.submit_token(args.queue, args.service, args.name, args.mobile)
    ahead = len(engine.find_waiting(token.queue)) - 1
    print(f"[submit] issued {token.label} ({token.service}) for {token.customer_name}; {ahead} ahead")
    print(f"[submit] id={token.id}")


def _cmd_serve(engine: QueueEngine, args: argparse.Namespace) -> None:
    token = engine.serve_specific(args.token_id)
    print(f"[serve] now serving {token.label} ({token.customer_name})")


def _cmd_serve_next(engine: QueueEngine, args: argparse.Namespace) -> None:
    token = engine.serve_next(args.queue)
    if token is None:
        print(f"[serve-next] no tokens waiting in {args.queue}")
        return
    print(f"[serve-next] now serving {token.label} ({token.customer_name})")


def _cmd_waiting(engine: QueueEngine, args: argparse.Namespace) -> None:
    tokens = engine.find_waiting(args.queue)
    if not tokens:
        print(f"[waiting] {args.queue}: (none)")
    for t in tokens:
        print(f"[waiting] {describe(t)}")


def _cmd_serving(engine: QueueEngine, args: argparse.Namespace) -> None:
    token = engine.current_serving(args.queue)
    print(f"[serving] {describe(token)}" if token else f"[serving] {args.queue}: (nobody)")


def _cmd_recent(engine: QueueEngine, args: argparse.Namespace) -> None:
    token = engine.most_recent_issued(args.queue)
    print(f"[recent] {describe(token)}" if token else f"[recent] {args.queue}: (no tokens yet)")


def _cmd_board(engine: QueueEngine, args: argparse.Namespace) -> None:
    board = engine.board(args.queue)
    serving = board.serving.label if board.serving else "-"
    last = board.last_issued.label if board.last_issued else "-"
    served = ", ".join(t.label for t in board.recently_served) or "-"
    print(f"[board] {board.queue}: serving={serving} last_issued={last} waiting={board.waiting_count} recent={served}")


DESK_COMMANDS: dict[str, Callable[[QueueEngine, argparse.Namespace], None]] = {
    "submit": _cmd_submit,
    "serve": _cmd_serve,
    "serve-next": _cmd_serve_next,
    "waiting": _cmd_waiting,
    "serving": _cmd_serving,
    "recent": _cmd_recent,
    "board": _cmd_board,
}


def build_parser() -> argparse.ArgumentParser:
    from .server import add_server_args

    parser = argparse.ArgumentParser(description="Salon token system - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def desk(name: str, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        add_store_args(p)
        add_mqtt_args(p)
        p.add_argument("--log-level", default="WARNING")
        return p

    # ---- Services ----
    p_api = sub.add_parser("api", help="Run the HTTP API")
    add_server_args(p_api)

    p_watch = sub.add_parser("watch", help="Print queue events from MQTT")
    add_mqtt_args(p_watch)
    p_watch.add_argument("--queue", default=None)
    p_watch.add_argument("--max-events", type=int, default=None)

    # ---- Desk commands ----
    p_submit = desk("submit", help_text="Issue a token")
    p_submit.add_argument("--queue", required=True)
    p_submit.add_argument("--service", required=True)
    p_submit.add_argument("--name", required=True)
    p_submit.add_argument("--mobile", required=True)

    p_serve = desk("serve", help_text="Serve a specific token")
    p_serve.add_argument("token_id")

    for name, help_text in (
        ("serve-next", "Serve the next waiting token"),
        ("waiting", "List waiting tokens"),
        ("serving", "Show the token being served"),
        ("recent", "Show the last issued token"),
        ("board", "Show a queue summary"),
    ):
        desk(name, help_text=help_text).add_argument("--queue", required=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "api":
        from .server import run_server

        run_server(settings=settings_from_args(args), host=args.host, port=args.port, log_level=args.log_level)
        return 0

    if args.cmd == "watch":
        from .watch import run_watch

        configure_logging("WARNING")
        run_watch(
            mqtt_host=args.mqtt_host or "127.0.0.1",
            mqtt_port=args.mqtt_port,
            namespace=args.namespace,
            queue=args.queue,
            max_events=args.max_events,
        )
        return 0

    configure_logging(args.log_level.upper())
    settings = settings_from_args(args)
    try:
        with open_runtime(settings) as runtime:
            DESK_COMMANDS[args.cmd](runtime.engine, args)
    except TokenError as e:
        print(f"[error] {e.code}: {e}", file=sys.stderr)
        return exit_code_for(e)
    return 0


if __name__ == "__main__":
    sys.exit(main())
