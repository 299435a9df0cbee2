from __future__ import annotations

import argparse
import json
import signal
import sys
from typing import Any, Optional

from .config import ConfigError, load_config
from .daemon.relay import Relay
from .daemon.sessions import SessionManager
from .kernel.session_store import SessionStore
from .ports.chat.adapters.mattermost import MattermostAdapter
from .util.obslog import setup_root_json_logging


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = load_config()
    except ConfigError as e:
        print(f"[error] {e}", file=sys.stderr)
        return 2
    setup_root_json_logging(component="relay", level=args.log_level or config.log_level)

    adapter = MattermostAdapter(
        url=config.mattermost_url,
        token=config.bot_token,
        bot_id=config.bot_id,
        channel_ids=list(config.channels.keys()),
    )
    sessions = SessionManager(config=config, store=SessionStore())
    relay = Relay(config=config, adapter=adapter, sessions=sessions)

    def handle_signal(signum: int, frame: Any) -> None:
        _ = frame
        print(f"\n[signal] Received signal {signum}, stopping...", file=sys.stderr)
        relay.shutdown()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    if not relay.start():
        print("[error] Failed to start relay", file=sys.stderr)
        return 1
    print(f"[info] Relay started; watching {len(config.channels)} channel(s). Press Ctrl+C to stop", file=sys.stderr)
    try:
        relay.run_forever(poll_interval=args.poll_interval)
    finally:
        relay.shutdown()
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    _ = args
    records = SessionStore().load()
    _print_json({"ok": True, "result": {"sessions": {k: v.model_dump() for k, v in records.items()}}})
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="threadrelay", description="Relay chat threads to Claude CLI sessions")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the relay in the foreground")
    p_run.add_argument("--log-level", default="", help="Override THREADRELAY_LOG_LEVEL")
    p_run.add_argument("--poll-interval", type=float, default=1.0, help="Seconds between inbound polls (default 1.0)")
    p_run.set_defaults(func=cmd_run)

    p_sessions = sub.add_parser("sessions", help="List persisted sessions")
    p_sessions.set_defaults(func=cmd_sessions)

    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
