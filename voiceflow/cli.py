#!/usr/bin/env python3
"""VoiceFlow CLI.

Usage:
    voiceflow serve              Start the HTTP API
    voiceflow status             Show server, settings and calendar status
    voiceflow integrations       List connected calendars
    voiceflow sync <provider>    Re-sync a connected calendar
    voiceflow settings           Show/edit user settings
    voiceflow type               Type notes into a capture session (demo mode)
"""

import argparse
import asyncio
import json
import logging
import sys

import httpx
import uvicorn

from voiceflow.calendar_providers import CalendarError, build_providers
from voiceflow.calendar_sync import CalendarSyncManager
from voiceflow.client import TranscriptionClient
from voiceflow.config import PROVIDERS, load_config
from voiceflow.database import VoiceFlowDB
from voiceflow.speech_session import RecognitionSession, SessionState
from voiceflow.transcription import TranscriptionAnalyzer

# ── ANSI Colors ────────────────────────────────────────────────────────


class C:
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    RESET = "\033[0m"

    @staticmethod
    def strip():
        """Disable colors if not a TTY."""
        if not sys.stdout.isatty():
            for attr in ["BOLD", "DIM", "GREEN", "RED", "YELLOW", "CYAN", "RESET"]:
                setattr(C, attr, "")


# ── Helpers ────────────────────────────────────────────────────────────


def base_url(cfg: dict) -> str:
    return f"http://localhost:{cfg['server']['port']}"


def check_health(cfg: dict) -> dict | None:
    try:
        resp = httpx.get(f"{base_url(cfg)}/health", timeout=2)
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPError:
        return None


def open_db(cfg: dict) -> VoiceFlowDB:
    return VoiceFlowDB(cfg["database"]["path"])


def build_sync_manager(cfg: dict, db: VoiceFlowDB) -> CalendarSyncManager:
    return CalendarSyncManager(db, build_providers(cfg),
                               sync_window_days=cfg["calendar"]["sync_window_days"])


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.0f}m"
    return f"{seconds / 3600:.1f}h"


# ── Commands ───────────────────────────────────────────────────────────


def cmd_serve(args):
    """Start the HTTP API."""
    cfg = args.cfg
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]
    print(f"{C.BOLD}{C.CYAN}⦿ VoiceFlow Server{C.RESET}", file=sys.stderr)
    print(f"  API:      http://{host}:{port}", file=sys.stderr)
    print(f"  Database: {cfg['database']['path']}", file=sys.stderr)
    print(file=sys.stderr)
    from voiceflow.server import init_app

    uvicorn.run(
        init_app(cfg),
        host=host,
        port=port,
        log_level="info",
    )


def cmd_status(args):
    """Show server, settings and calendar status."""
    cfg = args.cfg
    print(f"\n{C.BOLD}{C.CYAN}⦿ VoiceFlow Status{C.RESET}\n")

    health = check_health(cfg)
    port = cfg["server"]["port"]
    if health:
        print(f"  {C.GREEN}●{C.RESET} Server        {C.GREEN}running{C.RESET} on port {port}")
        if health.get("uptime"):
            print(f"  {C.DIM}  Uptime:       {format_duration(health['uptime'])}{C.RESET}")
    else:
        print(f"  {C.RED}●{C.RESET} Server        {C.RED}not running{C.RESET}")

    db = open_db(cfg)
    try:
        settings = db.get_all_settings()
        listening = db.get_bool_setting("always_listening", True)
        print(f"\n  {C.BOLD}Voice{C.RESET}")
        print(f"  Wake word:      {C.BOLD}{settings.get('wake_word')}{C.RESET}")
        print(f"  Always listen:  {C.BOLD}{'on' if listening else 'off'}{C.RESET}")

        user_id = cfg["user"]["default_user_id"]
        status = build_sync_manager(cfg, db).integration_status(user_id)
        print(f"\n  {C.BOLD}Calendars{C.RESET}")
        for provider in PROVIDERS:
            if status[provider]:
                print(f"  {C.GREEN}●{C.RESET} {provider:<13} {C.GREEN}connected{C.RESET}")
            else:
                print(f"  {C.DIM}○ {provider:<13} not connected{C.RESET}")

        notes = db.get_notes(user_id, limit=1)
        tasks = db.get_tasks(user_id, limit=5)
        print(f"\n  {C.BOLD}Notes{C.RESET}")
        if notes:
            print(f"  Latest:         {C.BOLD}{notes[0]['title']}{C.RESET}")
        else:
            print(f"  {C.DIM}No notes yet{C.RESET}")
        for t in tasks:
            mark = f"{C.GREEN}✓{C.RESET}" if t["completed"] else "○"
            print(f"  {mark} {t['title']} {C.DIM}[{t['priority']}]{C.RESET}")
    finally:
        db.close()
    print()


def cmd_integrations(args):
    """List calendar integrations (tokens are never printed)."""
    cfg = args.cfg
    db = open_db(cfg)
    try:
        user_id = cfg["user"]["default_user_id"]
        integrations = db.get_integrations(user_id)
        if args.json:
            print(json.dumps([i.to_public_dict() for i in integrations], indent=2))
            return
        if not integrations:
            print(f"{C.DIM}No calendar integrations. Connect one via POST /api/calendar/connect{C.RESET}")
            return
        print(f"\n{C.BOLD}{C.CYAN}📅 Calendar integrations{C.RESET}\n")
        for i in integrations:
            state = f"{C.GREEN}enabled{C.RESET}" if i.enabled else f"{C.YELLOW}disabled{C.RESET}"
            events = db.count_events(i.id)
            print(f"  [{i.id}] {C.BOLD}{i.provider}{C.RESET}  {state}  "
                  f"{C.DIM}calendar={i.calendar_id or 'primary'}  events={events}{C.RESET}")
        print()
    finally:
        db.close()


def cmd_sync(args):
    """Re-sync a provider's calendar."""
    cfg = args.cfg
    db = open_db(cfg)
    manager = build_sync_manager(cfg, db)
    try:
        count = asyncio.run(manager.sync_provider(cfg["user"]["default_user_id"], args.provider))
    except CalendarError as e:
        print(f"{C.RED}✗{C.RESET} {e}")
        sys.exit(1)
    finally:
        db.close()
    print(f"{C.GREEN}✓{C.RESET} Synced {C.BOLD}{count}{C.RESET} {args.provider} events")


def cmd_settings(args):
    """Show or edit user settings."""
    cfg = args.cfg
    db = open_db(cfg)
    try:
        if args.set:
            key, _, value = args.set.partition("=")
            if not key or not value:
                print(f"{C.RED}Usage: --set key=value{C.RESET}")
                return
            if value.lower() in ("true", "false"):
                value = value.lower()
            db.set_setting(key, value)
            print(f"{C.GREEN}✓{C.RESET} Set {C.BOLD}{key}{C.RESET} = {value}")
            return

        print(f"\n{C.BOLD}{C.CYAN}⚙ Settings{C.RESET}\n")
        for key, value in sorted(db.get_all_settings().items()):
            print(f"  {key:<20} {value}")
        print()
    finally:
        db.close()


async def _type_session(cfg: dict, analyzer) -> int:
    db = open_db(cfg)
    try:
        wake_word = db.get_setting("wake_word", "hey assistant")
    finally:
        db.close()

    processed = 0

    def on_complete(task_count, result):
        nonlocal processed
        processed += 1
        title = (result.get("analysis") or result).get("title", "")
        print(f"  {C.GREEN}✓{C.RESET} {title} {C.DIM}({task_count} task(s)){C.RESET}")

    def on_error(message):
        print(f"  {C.YELLOW}!{C.RESET} {message}")

    # no platform recognizer on a terminal: the session falls back to typed input
    session = RecognitionSession(
        None, analyzer, wake_word=wake_word, always_listening=False,
        switch_delay=cfg["speech"]["switch_delay"],
        restart_delay=cfg["speech"]["restart_delay"],
        lang=cfg["speech"]["lang"],
        on_complete=on_complete, on_error=on_error)
    await session.start()
    await session.drain()
    if session.state == SessionState.DEMO_MODE:
        print(f"{C.DIM}Demo mode: type a note and press Enter (Ctrl-D to finish){C.RESET}")

    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            if not line.strip():
                continue
            session.submit_text(line)
            await session.drain()
    finally:
        await session.close()
    return processed


def cmd_type(args):
    """Type notes into a demo-mode capture session."""
    cfg = args.cfg
    if args.local:
        analyzer = TranscriptionAnalyzer(cfg["openai"]["api_key"], cfg["openai"]["model"]).analyze
    else:
        analyzer = TranscriptionClient(args.url or base_url(cfg))
    count = asyncio.run(_type_session(cfg, analyzer))
    print(f"\n{C.DIM}{count} note(s) processed{C.RESET}")


def main():
    parser = argparse.ArgumentParser(
        prog="voiceflow",
        description="VoiceFlow: voice notes, tasks and calendar sync",
    )
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command")

    # serve
    p_serve = sub.add_parser("serve", help="Start the HTTP API")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    # status
    sub.add_parser("status", help="Show server, settings and calendar status")

    # integrations
    p_int = sub.add_parser("integrations", help="List calendar integrations")
    p_int.add_argument("--json", action="store_true")

    # sync
    p_sync = sub.add_parser("sync", help="Re-sync a connected calendar")
    p_sync.add_argument("provider", help="google, outlook or apple")

    # settings
    p_set = sub.add_parser("settings", help="Show/edit user settings")
    p_set.add_argument("--set", default=None, metavar="KEY=VALUE")

    # type
    p_type = sub.add_parser("type", help="Type notes into a capture session (demo mode)")
    p_type.add_argument("--local", action="store_true",
                        help="Analyze in-process instead of posting to the server")
    p_type.add_argument("--url", default=None, help="Server base URL")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    C.strip()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.cfg = load_config(args.config)

    cmds = {
        "serve": cmd_serve,
        "status": cmd_status,
        "integrations": cmd_integrations,
        "sync": cmd_sync,
        "settings": cmd_settings,
        "type": cmd_type,
    }
    cmds[args.command](args)


if __name__ == "__main__":
    main()
