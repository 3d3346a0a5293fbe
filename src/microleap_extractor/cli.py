from __future__ import annotations

import argparse
import json
import logging
import os
import time
from datetime import date
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv

from .activity_log import ActivityLog
from .config import AppConfig, load_config
from .coordinator import REQUEST_TIMED_OUT, ControlResponse, Coordinator
from .errors import WalkStateError
from .events import Event
from .logging_config import configure_logging
from .portal.client import DashboardClient
from .portal.scraper import HtmlTableScraper
from .portal.selectors import DashboardSelectors
from .state import StateStore
from .util.debug_bundle import create_debug_bundle


logger = logging.getLogger("microleap_extractor")

EXPORT_NAME_TEMPLATE = "microleap-investments-{day}.json"


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="microleap-extractor")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _browser_flags(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--headless", action="store_true", help="Run the browser headless (needs a stored session)")
        sp.add_argument(
            "--fresh-session",
            action="store_true",
            help="Do not reuse the stored browser session (cookies/localStorage). You will have to log in again.",
        )
        sp.add_argument("--slowmo-ms", type=int, default=0, help="Playwright slow motion in milliseconds (debug).")
        sp.add_argument(
            "--login-timeout",
            type=float,
            default=None,
            help="Seconds to wait for you to log in by hand (default: timeouts.login_wait_s).",
        )

    open_ = sub.add_parser("open", help="Open the dashboard in a browser window and report login status")
    _browser_flags(open_)
    open_.add_argument(
        "--no-wait",
        action="store_true",
        help="Close the browser right away instead of waiting for Enter (the session is saved either way).",
    )

    extract = sub.add_parser("extract", help="Walk every investment detail page and export the result as JSON")
    _browser_flags(extract)
    extract.add_argument("--out", default="", help="Output JSON path (default: <export.out_dir>/microleap-investments-<date>.json)")

    resume = sub.add_parser("resume", help="Continue an interrupted extraction from its saved position")
    _browser_flags(resume)
    resume.add_argument("--out", default="", help="Output JSON path (default: <export.out_dir>/microleap-investments-<date>.json)")

    sub.add_parser("status", help="Show the saved extraction position and the last stored result")

    export = sub.add_parser("export", help="Write the stored result to JSON without touching the browser")
    export.add_argument("--out", default="", help="Output JSON path (default: <export.out_dir>/microleap-investments-<date>.json)")

    sub.add_parser("cancel", help="Cancel a running or interrupted extraction (works from another terminal)")

    clear = sub.add_parser("clear", help="Delete the stored result and any saved extraction position")
    clear.add_argument("--logs", action="store_true", help="Also clear the activity log history")

    logs = sub.add_parser("logs", help="Print the stored activity log")
    logs.add_argument("--limit", type=int, default=None, help="Only show the last N entries")

    return p


def export_path(out_dir: str, *, day: Optional[date] = None) -> Path:
    return Path(out_dir) / EXPORT_NAME_TEMPLATE.format(day=(day or date.today()).isoformat())


def write_export(data: dict[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def _apply_browser_args(cfg: AppConfig, args: argparse.Namespace) -> None:
    if getattr(args, "headless", False):
        cfg.browser.headless = True
    if getattr(args, "slowmo_ms", 0):
        cfg.browser.slow_mo_ms = int(args.slowmo_ms)


def _activity_log(cfg: AppConfig, store: StateStore) -> ActivityLog:
    return ActivityLog(
        store,
        max_entries=cfg.activity_log.max_entries,
        duplicate_window_ms=cfg.activity_log.duplicate_window_ms,
    )


def _build_coordinator(
    cfg: AppConfig,
    store: StateStore,
    *,
    fresh_session: bool = False,
    activity_log: Optional[ActivityLog] = None,
) -> Coordinator:
    selectors = DashboardSelectors()
    browser = DashboardClient(
        dashboard=cfg.dashboard,
        selectors=selectors,
        storage_state_path=cfg.browser.storage_state_path,
        debug_dir=cfg.browser.debug_dir,
        page_load_ms=cfg.timeouts.page_load_ms,
    )
    return Coordinator(
        cfg,
        browser=browser,
        store=store,
        activity_log=activity_log or _activity_log(cfg, store),
        scraper=HtmlTableScraper(selectors),
        force_fresh_session=fresh_session,
    )


def _print_event(event: Event) -> None:
    if event.kind == "progress_update":
        print(f"[{int(event.payload.get('progress', 0)):3d}%] {event.payload.get('message', '')}")


def _fail(resp: ControlResponse, what: str) -> int:
    print(f"❌ {what}: {resp.error}")
    return 1


def _ensure_logged_in(coord: Coordinator, *, login_timeout: Optional[float]) -> bool:
    resp = coord.open_dashboard()
    if not resp.success:
        _fail(resp, "Could not open the dashboard")
        return False
    if resp.data.get("is_logged_in"):
        print("✅ Dashboard open and logged in")
        return True

    print("Please log in to the dashboard in the browser window; waiting...")
    resp = coord.wait_for_login(login_timeout)
    if not resp.success:
        _fail(resp, "Login check failed")
        return False
    if not resp.data.get("is_logged_in"):
        print("❌ Still on the login page; giving up. Run the command again once you can log in.")
        return False
    print("✅ Logged in")
    return True


def _run_walk(cfg: AppConfig, args: argparse.Namespace, *, resume: bool) -> int:
    _apply_browser_args(cfg, args)
    store = StateStore(cfg.state.db_path)
    coord = _build_coordinator(cfg, store, fresh_session=bool(args.fresh_session))
    coord.subscribe(_print_event)
    t0 = time.time()
    try:
        if resume and not store.has_state():
            print("Nothing to resume (no interrupted extraction found).")
            return 1
        if not _ensure_logged_in(coord, login_timeout=args.login_timeout):
            return 1

        resp = coord.start_extraction(resume=resume)
        if not resp.success and resp.error == REQUEST_TIMED_OUT:
            # Only the control call gave up; the walk is still going on the browser thread.
            print("Extraction is still running; waiting for it to finish (Ctrl+C pauses it)...")
            resp = coord.wait_for_extraction()
        if not resp.success:
            logger.error("Extraction failed (seconds=%.2f): %s", time.time() - t0, resp.error)
            _write_debug_bundle(cfg, label="resume" if resume else "extract")
            return _fail(resp, "Extraction failed")

        result = resp.data.get("result")
        if not result or result.get("status") != "completed":
            print(f"⚠️ {resp.message}")
            return 1

        out = write_export(result, Path(args.out) if args.out else export_path(cfg.export.out_dir))
        logger.info("Extraction finished (count=%d seconds=%.2f)", resp.data.get("count", 0), time.time() - t0)
        print(
            f"✅ Extracted {result.get('total_investments', 0)} investments "
            f"({result.get('investments_with_schedules', 0)} with payment schedules) -> {out}"
        )
        return 0
    except KeyboardInterrupt:
        print("Interrupted. Progress is saved; run `microleap-extractor resume` to continue.")
        return 130
    finally:
        coord.close()
        store.close()


def _write_debug_bundle(cfg: AppConfig, *, label: str) -> None:
    try:
        bundle = create_debug_bundle(
            debug_dir=cfg.browser.debug_dir,
            log_file=cfg.logging.file_path,
            out_dir=cfg.export.out_dir,
            label=label,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except Exception:
        logger.debug("Failed to create debug bundle.", exc_info=True)


def _cmd_open(cfg: AppConfig, args: argparse.Namespace) -> int:
    _apply_browser_args(cfg, args)
    store = StateStore(cfg.state.db_path)
    coord = _build_coordinator(cfg, store, fresh_session=bool(args.fresh_session))
    try:
        if not _ensure_logged_in(coord, login_timeout=args.login_timeout):
            return 1
        if not args.no_wait and not cfg.browser.headless:
            input("Press Enter to close the browser (your session will be saved)... ")
        return 0
    except KeyboardInterrupt:
        return 130
    finally:
        coord.close()
        store.close()


def _cmd_status(cfg: AppConfig) -> int:
    with StateStore(cfg.state.db_path) as store:
        try:
            state = store.get_state()
        except WalkStateError as e:
            print(f"⚠️ Saved extraction position is unreadable ({e}); the next extract starts over.")
            state = None
        if state is not None:
            print(
                f"In progress: {state.current_index}/{state.total} investments done "
                f"(started {state.start_time.isoformat(timespec='seconds')}). Run `resume` to continue."
            )

        result = store.get_result()
        if result is None:
            if state is None:
                print("No stored data found")
            return 0

        print(f"Last result: status={result.status} investments={result.total_investments}/{result.total}")
        print(f"  with payment schedules: {result.investments_with_schedules}")
        print(f"  extraction date: {result.extraction_date.isoformat(timespec='seconds')}")
        if result.completion_date is not None:
            print(f"  completed: {result.completion_date.isoformat(timespec='seconds')}")
        if result.cancelled_at is not None:
            print(f"  cancelled: {result.cancelled_at.isoformat(timespec='seconds')}")
    return 0


def _cmd_store(cfg: AppConfig, args: argparse.Namespace) -> int:
    """
    Commands answered from the store alone; the browser is never started.
    """
    store = StateStore(cfg.state.db_path)
    activity_log = _activity_log(cfg, store)
    coord = _build_coordinator(cfg, store, activity_log=activity_log)
    try:
        if args.cmd == "export":
            resp = coord.get_result()
            if not resp.success:
                return _fail(resp, "Export failed")
            out = write_export(resp.data["result"], Path(args.out) if args.out else export_path(cfg.export.out_dir))
            print(f"✅ Wrote {out}")
            return 0

        if args.cmd == "cancel":
            resp = coord.cancel_extraction()
            if not resp.success:
                return _fail(resp, "Cancel failed")
            print(resp.message)
            return 0

        if args.cmd == "clear":
            resp = coord.clear_result()
            if not resp.success:
                return _fail(resp, "Clear failed")
            if args.logs:
                activity_log.clear()
            print(f"✅ {resp.message}")
            return 0

        if args.cmd == "logs":
            entries = activity_log.history(args.limit)
            if not entries:
                print("No log entries.")
            for e in entries:
                print(f"{e.timestamp} [{e.severity}] {e.message}")
            return 0

        raise ValueError(f"Unknown command: {args.cmd}")
    finally:
        coord.close()
        store.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    if args.cmd == "open":
        return _cmd_open(cfg, args)

    if args.cmd in ("extract", "resume"):
        return _run_walk(cfg, args, resume=args.cmd == "resume")

    if args.cmd == "status":
        return _cmd_status(cfg)

    return _cmd_store(cfg, args)
