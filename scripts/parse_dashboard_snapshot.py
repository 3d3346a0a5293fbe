#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8", errors="replace")


def main(argv: list[str] | None = None) -> int:
    _ensure_src_on_path()

    from microleap_extractor.models import ExtractionRecord, InvestmentSummary
    from microleap_extractor.portal.scraper import HtmlTableScraper

    p = argparse.ArgumentParser(
        prog="parse_dashboard_snapshot",
        description=(
            "Parse dashboard HTML snapshots (e.g. data/debug/*.html) into structured JSON.\n"
            "This is intended for debugging scraping regressions offline (no Playwright, no login)."
        ),
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    lst = sub.add_parser("list", help="Parse an investment list page into InvestmentSummary[]")
    lst.add_argument("--file", required=True, help="Path to the saved list page HTML")
    lst.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    detail = sub.add_parser("detail", help="Parse an investment detail page into one merged record")
    detail.add_argument("--file", required=True, help="Path to the saved detail page HTML")
    detail.add_argument("--id", default="snapshot", help="Investment id to put on the record (default: snapshot)")
    detail.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    args = p.parse_args(argv)
    html = _read_text(args.file)
    scraper = HtmlTableScraper()

    if args.cmd == "list":
        payload: object = [inv.model_dump() for inv in scraper.scrape_list(html)]
    else:
        record = ExtractionRecord.merge(
            InvestmentSummary(id=args.id),
            scraper.scrape_detail(html),
            scraper.scrape_schedule(html),
        )
        payload = record.to_json_dict()

    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if args.out:
        Path(args.out).write_text(text + "\n", encoding="utf-8")
    else:
        print(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
