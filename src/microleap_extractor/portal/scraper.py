"""
HTML table scraping for the investment dashboard.

The walk only talks to the `PageScraper` protocol, so a change in the site's markup touches this module
(and `selectors.py`) and nothing else.
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Protocol

from bs4 import BeautifulSoup, Tag

from ..errors import NoTablesFoundError
from ..models import InvestmentSummary, PaymentScheduleEntry
from .selectors import DashboardSelectors


logger = logging.getLogger(__name__)

_PAREN_RE = re.compile(r"\(([^)]+)\)")
_NON_KEY_CHARS_RE = re.compile(r"[^a-z0-9\s]")
_WS_RE = re.compile(r"\s+")


def normalize_label(label: str) -> str:
    """
    "Total Gross Return (%)" -> "total_gross_return"
    """
    cleaned = _NON_KEY_CHARS_RE.sub("", (label or "").lower()).strip()
    return _WS_RE.sub("_", cleaned)


def extract_payment_date(text: str) -> str:
    """
    Schedule dates sometimes read like "Month 3 (05/06/2024)"; the parenthesized part is the real date.
    """
    s = (text or "").strip()
    m = _PAREN_RE.search(s)
    if m:
        return m.group(1)
    return s


def _cell_text(cells: list[Tag], idx: int) -> str:
    if idx < len(cells):
        return cells[idx].get_text().strip()
    return ""


class PageScraper(Protocol):
    def scrape_list(self, html: str) -> list[InvestmentSummary]: ...

    def scrape_detail(self, html: str) -> dict[str, str]: ...

    def scrape_schedule(self, html: str) -> list[PaymentScheduleEntry]: ...


class HtmlTableScraper:
    """
    Reads the dashboard's tables at fixed cell offsets (see `DashboardSelectors`).
    """

    def __init__(self, selectors: Optional[DashboardSelectors] = None) -> None:
        self.selectors = selectors or DashboardSelectors()

    def _soup(self, html: str) -> BeautifulSoup:
        return BeautifulSoup(html or "", "html.parser")

    def scrape_list(self, html: str) -> list[InvestmentSummary]:
        sel = self.selectors
        investments: list[InvestmentSummary] = []
        for idx, row in enumerate(self._soup(html).select(sel.list_rows)):
            try:
                cells = row.select("td")
                if len(cells) < sel.list_min_cells:
                    continue
                investment_id = _cell_text(cells, sel.list_id_cell)
                if not investment_id:
                    continue
                investments.append(
                    InvestmentSummary(
                        id=investment_id,
                        note=_cell_text(cells, sel.list_note_cell),
                        status=_cell_text(cells, sel.list_status_cell),
                        amount=_cell_text(cells, sel.list_amount_cell),
                    )
                )
            except Exception:
                logger.warning("Skipping unreadable investment list row %d", idx, exc_info=True)

        logger.debug("Found %d investments in list", len(investments))
        return investments

    def scrape_detail(self, html: str) -> dict[str, str]:
        sel = self.selectors
        tables = self._soup(html).select(sel.tables)
        if not tables:
            raise NoTablesFoundError()

        details: dict[str, str] = {}
        for row in tables[0].select(sel.detail_rows):
            cells = row.select("td")
            if len(cells) < sel.detail_min_cells:
                continue
            label = _cell_text(cells, sel.detail_label_cell)
            value = _cell_text(cells, sel.detail_value_cell)
            if not label or not value:
                continue
            details[normalize_label(label)] = value
        return details

    def scrape_schedule(self, html: str) -> list[PaymentScheduleEntry]:
        sel = self.selectors
        tables = self._soup(html).select(sel.tables)
        if len(tables) < 2:
            # No payment history yet is a normal state for a fresh investment.
            logger.debug("Payment schedule table not found")
            return []

        schedule: list[PaymentScheduleEntry] = []
        for idx, row in enumerate(tables[1].select(sel.schedule_rows)):
            try:
                cells = row.select("td")
                if len(cells) < sel.schedule_min_cells:
                    continue
                values = {
                    name: _cell_text(cells, sel.schedule_date_cell + 1 + offset)
                    for offset, name in enumerate(sel.schedule_fields)
                }
                schedule.append(
                    PaymentScheduleEntry(
                        payment_date=extract_payment_date(_cell_text(cells, sel.schedule_date_cell)),
                        **values,
                    )
                )
            except Exception:
                logger.warning("Skipping unreadable payment row %d", idx, exc_info=True)
        return schedule
