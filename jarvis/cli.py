#!/usr/bin/env python3
"""Jarvis CLI: run and inspect the OMI webhook receiver.

Usage:
    jarvis serve      Start the receiver (webhook + REST API)
    jarvis status     Show status of a running receiver
    jarvis sessions   List stored sessions
    jarvis purge      Delete stored sessions
    jarvis audit      Show row counts and storage size
    jarvis config     Show/edit configuration
"""

import argparse
import json
import logging
import sys
import time
from datetime import datetime
from urllib.error import URLError
from urllib.request import urlopen

from jarvis import __version__
from jarvis.config import CONFIG_FILE, config_warnings, load_config, save_config

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

C.strip()

# ── Helpers ────────────────────────────────────────────────────────────

def fetch_status(port: int) -> dict | None:
    try:
        resp = urlopen(f"http://localhost:{port}/status", timeout=2)
        return json.loads(resp.read())
    except (URLError, OSError, ValueError):
        return None


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.0f}m {seconds % 60:.0f}s"
    else:
        h = int(seconds // 3600)
        m = int((seconds % 3600) // 60)
        return f"{h}h {m}m"


def _open_db(cfg: dict):
    from jarvis.database import JarvisDB
    return JarvisDB(cfg["database"]["path"])


def _parse_value(value: str):
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    for kind in (int, float):
        try:
            return kind(value)
        except ValueError:
            pass
    return value

# ── Commands ───────────────────────────────────────────────────────────

def cmd_serve(args):
    """Start the receiver."""
    import uvicorn

    cfg = load_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"{C.BOLD}{C.CYAN}⦿ Jarvis Receiver {__version__}{C.RESET}", file=sys.stderr)
    print(f"  Listening: http://{host}:{port}", file=sys.stderr)
    print(f"  Database:  {cfg['database']['path']}", file=sys.stderr)
    for warning in config_warnings(cfg):
        print(f"  {C.YELLOW}!{C.RESET} {warning}", file=sys.stderr)
    print(file=sys.stderr)

    uvicorn.run(
        "jarvis.receiver:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=args.log_level.lower(),
    )


def cmd_status(args):
    """Show receiver status."""
    print(f"\n{C.BOLD}{C.CYAN}⦿ Jarvis Status{C.RESET}\n")
    cfg = load_config()
    port = args.port or cfg["server"]["port"]
    status = fetch_status(port)
    if not status:
        print(f"  {C.RED}●{C.RESET} Server        {C.RED}not running{C.RESET} on port {port}\n")
        return
    print(f"  {C.GREEN}●{C.RESET} Server        {C.GREEN}running{C.RESET} on port {port}")
    print(f"  {C.DIM}  Uptime:       {format_duration(status.get('uptime', 0))}{C.RESET}")
    print(f"  {C.BOLD}Buffers:{C.RESET}       {status.get('active_sessions', 0)} active in memory")
    print(f"  {C.BOLD}Stored:{C.RESET}        {status.get('database_sessions', 0)} sessions active in the last hour")
    print()


def cmd_sessions(args):
    """List stored sessions."""
    db = _open_db(load_config())
    rows = db.get_sessions(args.uid, limit=args.limit) if args.uid else db.list_sessions(limit=args.limit)
    db.close()

    if not rows:
        print(f"{C.DIM}No sessions found.{C.RESET}")
        return

    print(f"\n{C.BOLD}{C.CYAN}📝 Sessions{C.RESET}\n")
    for row in rows:
        ts = datetime.fromtimestamp(row["last_activity"]).strftime("%Y-%m-%d %H:%M")
        messages = row.get("messages") or []
        preview = " ".join(m.get("text", "") for m in messages)[:60]
        print(f"  {C.DIM}{ts}{C.RESET}  {C.BOLD}{row['session_id']}{C.RESET}  "
              f"{C.DIM}uid={row.get('uid') or '-'} {len(messages):>3} msgs{C.RESET}  {preview}")
    print()


def cmd_purge(args):
    """Delete stored sessions."""
    cfg = load_config()
    db = _open_db(cfg)

    if args.session:
        if db.delete_session(args.session):
            print(f"{C.GREEN}✓{C.RESET} Purged session {args.session}")
        else:
            print(f"{C.YELLOW}No session {args.session}{C.RESET}")
    elif args.all:
        if not args.confirm:
            print(f"{C.RED}Error:{C.RESET} Use --confirm to delete all sessions")
            db.close()
            return
        count = db.delete_sessions_before(float("inf"))
        print(f"{C.GREEN}✓{C.RESET} Purged all {count} sessions")
    else:
        hours = args.older_than if args.older_than is not None else cfg["buffer"]["store_retention"] / 3600
        count = db.delete_sessions_before(time.time() - hours * 3600)
        print(f"{C.GREEN}✓{C.RESET} Purged {count} sessions older than {hours:g} hours")

    db.close()


def cmd_audit(args):
    """Show data stats."""
    db = _open_db(load_config())
    stats = db.audit()
    db.close()

    print(f"\n{C.BOLD}{C.CYAN}📊 Jarvis Data Audit{C.RESET}\n")
    for table, count in stats.items():
        if table == "storage_bytes":
            size_mb = count / (1024 * 1024)
            print(f"  {C.BOLD}Storage:{C.RESET}        {size_mb:.2f} MB")
        else:
            label = table.replace("_", " ").title()
            print(f"  {C.BOLD}{label}:{C.RESET}  {count:>8,}")
    print()


def cmd_config(args):
    """Show or edit config."""
    if args.set:
        key, _, value = args.set.partition("=")
        if not value:
            print(f"{C.RED}Usage: --set key=value{C.RESET}")
            return
        cfg = {}
        if CONFIG_FILE.exists():
            with open(CONFIG_FILE) as f:
                cfg = json.load(f)
        # Dotted keys like buffer.analysis_interval
        parts = key.split(".")
        obj = cfg
        for p in parts[:-1]:
            obj = obj.setdefault(p, {})
        obj[parts[-1]] = _parse_value(value)
        save_config(cfg)
        print(f"{C.GREEN}✓{C.RESET} Set {C.BOLD}{key}{C.RESET} = {obj[parts[-1]]}")
        return

    cfg = load_config()
    for section in ("security", "assistant"):
        for k, v in cfg[section].items():
            if v and ("key" in k or "secret" in k) and isinstance(v, str):
                cfg[section][k] = "****"
    print(f"\n{C.BOLD}{C.CYAN}⚙ Configuration{C.RESET}\n")
    print(f"  {C.DIM}File: {CONFIG_FILE}{C.RESET}\n")
    print(json.dumps(cfg, indent=2))
    print()


# ── Main ───────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="jarvis",
        description="Jarvis: OMI webhook receiver and assistant backend",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    # serve
    p_serve = sub.add_parser("serve", help="Start the receiver")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    # status
    p_status = sub.add_parser("status", help="Show receiver status")
    p_status.add_argument("--port", type=int, default=None)

    # sessions
    p_sess = sub.add_parser("sessions", help="List stored sessions")
    p_sess.add_argument("--uid", default=None)
    p_sess.add_argument("--limit", type=int, default=20)

    # purge
    p_purge = sub.add_parser("purge", help="Delete stored sessions")
    p_purge.add_argument("--older-than", type=float, default=None, metavar="HOURS",
                         help="Delete sessions idle for more than N hours (default: retention window)")
    p_purge.add_argument("--session", default=None, metavar="ID", help="Delete a specific session")
    p_purge.add_argument("--all", action="store_true", help="Delete all sessions")
    p_purge.add_argument("--confirm", action="store_true", help="Confirm destructive action")

    # audit
    sub.add_parser("audit", help="Show row counts and storage size")

    # config
    p_cfg = sub.add_parser("config", help="Show/edit configuration")
    p_cfg.add_argument("--set", default=None, metavar="KEY=VALUE")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, getattr(args, "log_level", "INFO")),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cmds = {
        "serve": cmd_serve,
        "status": cmd_status,
        "sessions": cmd_sessions,
        "purge": cmd_purge,
        "audit": cmd_audit,
        "config": cmd_config,
    }
    cmds[args.command](args)


if __name__ == "__main__":
    main()
