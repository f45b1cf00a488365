# kubeconsole/cli.py

import sys
import uuid
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Dict, Any

import uvicorn
from dotenv import load_dotenv
from sqlalchemy import text

from kubeconsole.api.server import create_app
from kubeconsole.boot.app_context import AppContext, build_engine
from kubeconsole.boot.load_settings import AppConfigLoader
from kubeconsole.backends.session_store import SessionStore
from kubeconsole.orchestration.errors import ConsoleError
from kubeconsole.orchestration.run_once import run_chat_once


# ──────────────────────────────────────────────────────────────────────────────
# UI helpers
# ──────────────────────────────────────────────────────────────────────────────

def _box(title: str) -> str:
    """Return a single-line title in a lightweight box."""
    pad = f"  {title.strip()}  "
    return f"┌{'─' * len(pad)}┐\n│{pad}│\n└{'─' * len(pad)}┘"

def _rule(text: str = "") -> str:
    """Horizontal rule with optional label."""
    label = f" {text.strip()} " if text else ""
    line = "─" * max(4, 72 - len(label))
    return f"{label}{line}"

def _print_welcome(session_id: str) -> None:
    print(_box("Kube Console Copilot"))
    print(f"Session {session_id}")
    print("Type ':quit' to exit - Ask about clusters, nodes, pods, services.\n")

def _print_prompt_header() -> None:
    print(_rule(" ask "))

def _print_answer_header() -> None:
    print(_rule(" response "))

def _print_footer() -> None:
    print(_rule())

def _stream_out(fragment: str) -> None:
    sys.stdout.write(fragment)
    sys.stdout.flush()


# ──────────────────────────────────────────────────────────────────────────────
# Logging
# ──────────────────────────────────────────────────────────────────────────────

def setup_logging(runtime_cfg: Dict[str, Any], *, verbose: bool = False, debug: bool = False) -> None:
    """
    Initialize application logging using config values and verbosity flags.

    Args:
        runtime_cfg: Merged configuration dictionary.
        verbose: If True, log INFO and above to console.
        debug: If True, log DEBUG and above to console (overrides verbose).
    """
    log_cfg = runtime_cfg.get("logging", {})
    fmt = log_cfg.get("format", "%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    logfile = log_cfg.get("file", "logs/app.log")
    base_level = log_cfg.get("level", "WARNING").upper()

    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = getattr(logging, base_level, logging.WARNING)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    formatter = logging.Formatter(fmt)

    if verbose or debug:
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        root.addHandler(ch)

    if logfile:
        Path(logfile).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setFormatter(formatter)
        root.addHandler(fh)


# ──────────────────────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_chat(app_cfg: Dict[str, Any], session_id: str, user_id: str) -> int:
    """
    Interactive chat loop; every answer streams to the terminal as it is produced.
    """
    ctx = await AppContext.create(app_cfg)
    try:
        _print_welcome(session_id)
        while True:
            try:
                _print_prompt_header()
                user_text = input(" - ").strip()
                _print_footer()
            except (EOFError, KeyboardInterrupt):
                print()
                break

            if user_text.lower() in {":quit", "exit", "quit"}:
                break
            if not user_text:
                continue

            try:
                turn = await ctx.service.open_turn(
                    {"message": user_text, "sessionId": session_id, "userId": user_id}
                )
                _print_answer_header()
                await run_chat_once(ctx.graph, turn.session_id, turn.message, on_text=_stream_out)
                print()
                _print_footer()
            except ConsoleError as exc:
                logging.error("Chat execution error: %s", exc)
                print(_box("Something went wrong"))
                print(f"Reason: {exc}")
                _print_footer()
                continue
    finally:
        await ctx.aclose()
    return 0


async def _with_store(app_cfg: Dict[str, Any], action):
    engine = build_engine(app_cfg.get("database", {}))
    try:
        store = SessionStore(engine)
        await store.initialize()
        return await action(store)
    finally:
        await engine.dispose()


async def cmd_sessions(app_cfg: Dict[str, Any], user_id: str, include_deleted: bool) -> int:
    sessions = await _with_store(app_cfg, lambda store: store.list_sessions(user_id, include_deleted=include_deleted))
    print(_box(f"Sessions • {user_id}"))
    if not sessions:
        print("No sessions.")
    for s in sessions:
        flag = " (deleted)" if s.is_deleted else ""
        print(f"• {s.session_id:<38} | {s.updated_at:%Y-%m-%d %H:%M} | {s.title or ''}{flag}")
    return 0


async def cmd_cleanup(app_cfg: Dict[str, Any], days: int) -> int:
    removed = await _with_store(app_cfg, lambda store: store.cleanup(days))
    print(_box(f"Removed {removed} session(s) deleted more than {days} day(s) ago"))
    return 0


async def cmd_check_db(app_cfg: Dict[str, Any]) -> int:
    """
    Validate database connectivity and make sure the tables exist.

    Returns:
        0 on success, 1 on failure.
    """
    engine = build_engine(app_cfg.get("database", {}))
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await SessionStore(engine).initialize()
        print(_box(f"Database OK • {engine.url.render_as_string(hide_password=True)}"))
        return 0
    except Exception as exc:
        logging.error("Database check failed: %s", exc, exc_info=True)
        print(_box("Database check failed"))
        print(f"Reason: {exc}")
        return 1
    finally:
        await engine.dispose()


def cmd_serve(app_cfg: Dict[str, Any]) -> int:
    server_cfg = app_cfg.get("server", {})
    app = create_app(cfg=app_cfg)
    uvicorn.run(
        app,
        host=server_cfg.get("host", "0.0.0.0"),
        port=int(server_cfg.get("port", 8080)),
        log_config=None,
    )
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--database-url", dest="database_url", default=None, help="SQLAlchemy async URL (overrides settings file)")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose logs to console")
    p.add_argument("--debug", action="store_true", help="Debug logs (most detailed)")


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the CLI argument parser.
    """
    parser = argparse.ArgumentParser(description="Kube Console Copilot (CLI)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # chat
    p_chat = subparsers.add_parser("chat", help="Interactive session with the console assistant")
    p_chat.add_argument("--session", default=None, help="Session id to continue (new one when omitted)")
    p_chat.add_argument("--user", default="cli", help="User id owning the session")
    p_chat.add_argument("--model", default=None, help="Gemini model name (overrides settings file)")
    _add_common(p_chat)

    # serve
    p_serve = subparsers.add_parser("serve", help="Run the HTTP/SSE server")
    p_serve.add_argument("--host", default=None, help="Bind address (overrides settings file)")
    p_serve.add_argument("--port", type=int, default=None, help="Port (overrides settings file)")
    p_serve.add_argument("--model", default=None, help="Gemini model name (overrides settings file)")
    _add_common(p_serve)

    # sessions
    p_sessions = subparsers.add_parser("sessions", help="List a user's chat sessions")
    p_sessions.add_argument("--user", required=True, help="User id")
    p_sessions.add_argument("--include-deleted", action="store_true", help="Show soft-deleted sessions too")
    _add_common(p_sessions)

    # cleanup-sessions
    p_cleanup = subparsers.add_parser("cleanup-sessions", help="Purge soft-deleted sessions past retention")
    p_cleanup.add_argument("--days", type=int, default=None, help="Retention in days (default: database.retention_days)")
    _add_common(p_cleanup)

    # check-db
    p_check = subparsers.add_parser("check-db", help="Verify database connectivity and create tables")
    _add_common(p_check)

    return parser


def main() -> None:
    """
    Main entry point for the Kube Console Copilot CLI.
    """
    parser = build_parser()
    args = parser.parse_args()

    # Load .env (best-effort) before settings so env overrides apply
    try:
        load_dotenv()
    except OSError as exc:
        print(f"Unable to load .env: {exc}", file=sys.stderr)

    # Merge config
    settings_loader = AppConfigLoader()
    cfg = settings_loader.merge_with_args(args)

    # Logging
    setup_logging(cfg, verbose=args.verbose, debug=args.debug)

    if args.command == "chat":
        session_id = args.session or str(uuid.uuid4())
        sys.exit(asyncio.run(cmd_chat(cfg, session_id, args.user)))

    if args.command == "serve":
        sys.exit(cmd_serve(cfg))

    if args.command == "sessions":
        sys.exit(asyncio.run(cmd_sessions(cfg, args.user, args.include_deleted)))

    if args.command == "cleanup-sessions":
        days = args.days if args.days is not None else int(cfg.get("database", {}).get("retention_days", 30))
        sys.exit(asyncio.run(cmd_cleanup(cfg, days)))

    if args.command == "check-db":
        sys.exit(asyncio.run(cmd_check_db(cfg)))

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
