from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DashboardSelectors:
    """
    The dashboard is a server-rendered web app; its markup may change over time.
    Keep all selectors and fixed cell offsets here for easy maintenance.
    """

    # List page (/investment/me)
    list_rows: str = "table tbody tr"
    list_min_cells: int = 4
    list_id_cell: int = 1
    list_note_cell: int = 2
    list_status_cell: int = 3
    list_amount_cell: int = 4
    page_size_select: str = "select"

    # Detail page (/investment/{id}): first table holds label/value rows.
    tables: str = "table"
    detail_rows: str = "tr"
    detail_min_cells: int = 3
    detail_label_cell: int = 0
    detail_value_cell: int = 2

    # Detail page: second table holds the payment schedule.
    schedule_rows: str = "tbody tr"
    schedule_min_cells: int = 11
    schedule_date_cell: int = 1
    # Cells 2..10, in order.
    schedule_fields: tuple[str, ...] = (
        "repayment_status",
        "action",
        "investor_fee",
        "total_returns",
        "principal_due",
        "profit_due",
        "total_paid",
        "withholding_tax",
        "total_settled",
    )

    # Readiness signal before scraping a detail page.
    detail_ready: str = "table"
