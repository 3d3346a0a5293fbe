from __future__ import annotations

import pytest

from microleap_extractor.errors import NoTablesFoundError
from microleap_extractor.portal.scraper import HtmlTableScraper, extract_payment_date, normalize_label


LIST_HTML = """
<html><body>
<select><option value="10">10</option><option value="100">100</option></select>
<table>
  <thead><tr><th>#</th><th>ID</th><th>Note</th><th>Status</th><th>Amount</th></tr></thead>
  <tbody>
    <tr><td>1</td><td> INV-001 </td><td>Rice farm</td><td>Active</td><td>RM 500.00</td></tr>
    <tr><td>2</td><td></td><td>blank id</td><td>Active</td><td>RM 1.00</td></tr>
    <tr><td>3</td><td>INV-002</td><td>Bakery</td><td>Completed</td><td>RM 250.00</td></tr>
    <tr><td colspan="5">Showing 1 to 3 of 3 entries</td></tr>
  </tbody>
</table>
</body></html>
"""


def _payment_row(n: int, date_cell: str, status: str, settled: str) -> str:
    cells = [
        str(n),
        date_cell,
        status,
        "-",
        "0.50",
        "10.50",
        "8.00",
        "2.50",
        "10.50",
        "0.00",
        settled,
    ]
    return "<tr>" + "".join(f"<td>{c}</td>" for c in cells) + "</tr>"


DETAIL_HTML = f"""
<html><body>
<table>
  <tr><td>Investment ID</td><td>:</td><td>INV-001</td></tr>
  <tr><td>Total Gross Return (%)</td><td>:</td><td>12.5</td></tr>
  <tr><td>Tenure</td><td>:</td><td>12 months</td></tr>
  <tr><td>Empty value</td><td>:</td><td></td></tr>
  <tr><td>Header only</td></tr>
</table>
<table>
  <thead><tr><th>#</th><th>Date</th></tr></thead>
  <tbody>
    {_payment_row(1, "Month 1 (05/06/2024)", "Paid", "10.00")}
    {_payment_row(2, "05/07/2024", "Pending", "0.00")}
    <tr><td>short</td><td>row</td></tr>
  </tbody>
</table>
</body></html>
"""


def test_normalize_label() -> None:
    assert normalize_label("Total Gross Return (%)") == "total_gross_return"
    assert normalize_label("  Investment   ID ") == "investment_id"
    assert normalize_label("Amount (RM)") == "amount_rm"
    assert normalize_label("") == ""


def test_extract_payment_date() -> None:
    assert extract_payment_date("Month 3 (05/06/2024)") == "05/06/2024"
    assert extract_payment_date("  05/06/2024 ") == "05/06/2024"
    assert extract_payment_date("") == ""


def test_scrape_list_skips_blank_ids_and_short_rows() -> None:
    rows = HtmlTableScraper().scrape_list(LIST_HTML)
    assert [r.id for r in rows] == ["INV-001", "INV-002"]
    assert rows[0].note == "Rice farm"
    assert rows[0].status == "Active"
    assert rows[0].amount == "RM 500.00"


def test_scrape_list_empty_page() -> None:
    assert HtmlTableScraper().scrape_list("<html><body><p>Nothing here</p></body></html>") == []


def test_scrape_detail_reads_label_value_rows() -> None:
    details = HtmlTableScraper().scrape_detail(DETAIL_HTML)
    assert details == {
        "investment_id": "INV-001",
        "total_gross_return": "12.5",
        "tenure": "12 months",
    }


def test_scrape_detail_without_tables_raises() -> None:
    with pytest.raises(NoTablesFoundError):
        HtmlTableScraper().scrape_detail("<html><body>Loading...</body></html>")


def test_scrape_schedule() -> None:
    schedule = HtmlTableScraper().scrape_schedule(DETAIL_HTML)
    assert len(schedule) == 2

    first = schedule[0]
    assert first.payment_date == "05/06/2024"
    assert first.repayment_status == "Paid"
    assert first.action == "-"
    assert first.investor_fee == "0.50"
    assert first.total_returns == "10.50"
    assert first.principal_due == "8.00"
    assert first.profit_due == "2.50"
    assert first.total_paid == "10.50"
    assert first.withholding_tax == "0.00"
    assert first.total_settled == "10.00"

    assert schedule[1].payment_date == "05/07/2024"
    assert schedule[1].repayment_status == "Pending"


def test_scrape_schedule_missing_second_table() -> None:
    html = "<table><tr><td>Tenure</td><td>:</td><td>6</td></tr></table>"
    assert HtmlTableScraper().scrape_schedule(html) == []
