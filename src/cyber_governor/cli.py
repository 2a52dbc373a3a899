"""cyber_governor.cli

CLI entrypoint for Cyber Governor.

Usage:
    cyber-governor pre                      Run the PreToolUse hook (stdin -> stdout)
    cyber-governor post                     Run the PostToolUse hook (stdin -> stdout)
    cyber-governor debug enable|disable     Toggle debug mode via the sentinel file
    cyber-governor debug status             Show whether debug mode is on
    cyber-governor history show --session ID
    cyber-governor history clear --session ID
    cyber-governor version                  Print version
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from .config import DEBUG_ENV_VAR, GovernorConfig
from .history import FileSessionStore, entries_to_json, history_stats
from .hooks import run_post_hook, run_pre_hook


def configure_logging(config: GovernorConfig) -> None:
    """Diagnostics go to stderr; stdout carries only the hook response."""
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if config.debug else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def cmd_pre(args: argparse.Namespace) -> int:
    """Run the PreToolUse hook."""
    return run_pre_hook(config=args.config)


def cmd_post(args: argparse.Namespace) -> int:
    """Run the PostToolUse hook."""
    return run_post_hook(config=args.config)


def cmd_debug(args: argparse.Namespace) -> int:
    cfg: GovernorConfig = args.config
    flag = cfg.debug_flag_path

    if args.action == "enable":
        flag.parent.mkdir(parents=True, exist_ok=True)
        flag.touch()
        print(f"Debug mode enabled ({flag})")
    elif args.action == "disable":
        if flag.exists():
            flag.unlink()
        print("Debug mode disabled")
        if os.environ.get(DEBUG_ENV_VAR):
            print(f"  Note: {DEBUG_ENV_VAR} is still set in this environment.")
    else:
        print(f"Debug mode: {'on' if cfg.debug else 'off'}")
        print(f"  Sentinel file: {flag} ({'present' if flag.exists() else 'absent'})")
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    cfg: GovernorConfig = args.config
    store = FileSessionStore.from_config(cfg)

    if args.action == "clear":
        store.clear(args.session)
        print(f"History cleared for session {args.session}")
        return 0

    history = store.load(args.session)
    stats = history_stats(history, cfg)
    report = {
        "session": args.session,
        "path": str(store.path_for(args.session)),
        "stats": {
            "totalCalls": stats.total_calls,
            "recentCalls": stats.recent_calls,
            "toolCounts": stats.tool_counts,
            "failureCounts": stats.failure_counts,
            "windowMs": stats.window_ms,
        },
        "history": entries_to_json(history),
    }
    print(json.dumps(report, indent=2, default=str))
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Print version."""
    from . import __version__
    print(f"cyber-governor {__version__}")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="cyber-governor",
        description="Cyber Governor: validation, loop detection and damping hooks for tool-using agents.",
    )
    subparsers = parser.add_subparsers(dest="command")

    # pre / post
    pre_parser = subparsers.add_parser("pre", help="Run the PreToolUse hook on stdin")
    pre_parser.set_defaults(func=cmd_pre)

    post_parser = subparsers.add_parser("post", help="Run the PostToolUse hook on stdin")
    post_parser.set_defaults(func=cmd_post)

    # debug
    debug_parser = subparsers.add_parser("debug", help="Enable, disable or inspect debug mode")
    debug_parser.add_argument("action", choices=("enable", "disable", "status"))
    debug_parser.set_defaults(func=cmd_debug)

    # history
    history_parser = subparsers.add_parser("history", help="Inspect or reset a session history")
    history_parser.add_argument("action", choices=("show", "clear"))
    history_parser.add_argument("--session", type=str, required=True, help="Session ID")
    history_parser.set_defaults(func=cmd_history)

    # version
    version_parser = subparsers.add_parser("version", help="Print version")
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    args.config = GovernorConfig.from_env()
    configure_logging(args.config)

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
