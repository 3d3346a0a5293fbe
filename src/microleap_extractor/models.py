from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


Severity = Literal["info", "success", "warning", "error"]
ResultStatus = Literal["in_progress", "completed", "cancelled"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvestmentSummary(BaseModel):
    """
    One row of the investment list page.
    """

    id: str
    note: str = ""
    status: str = ""
    amount: str = ""


class PaymentScheduleEntry(BaseModel):
    payment_date: str = ""
    repayment_status: str = ""
    action: str = ""
    investor_fee: str = ""
    total_returns: str = ""
    principal_due: str = ""
    profit_due: str = ""
    total_paid: str = ""
    withholding_tax: str = ""
    total_settled: str = ""


class ExtractionRecord(BaseModel):
    """
    An investment summary with its detail-page fields merged in (as extra keys) and its payment schedule.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    note: str = ""
    status: str = ""
    amount: str = ""
    payment_schedule: list[PaymentScheduleEntry] = Field(default_factory=list)
    # Only present when the detail page could not be scraped.
    error: Optional[str] = None

    @classmethod
    def merge(
        cls,
        summary: InvestmentSummary,
        details: Mapping[str, str],
        schedule: list[PaymentScheduleEntry],
    ) -> "ExtractionRecord":
        # Detail fields win over summary fields on key collisions.
        data: dict[str, Any] = summary.model_dump()
        data.update(details)
        data["payment_schedule"] = schedule
        return cls.model_validate(data)

    @classmethod
    def failed(cls, summary: InvestmentSummary, error: str) -> "ExtractionRecord":
        return cls(**summary.model_dump(), error=error, payment_schedule=[])

    @property
    def has_schedule(self) -> bool:
        return bool(self.payment_schedule)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ExtractionState(BaseModel):
    """
    Continuation record for the walk. Persisted with camelCase keys.
    """

    model_config = ConfigDict(populate_by_name=True)

    investment_list: list[InvestmentSummary] = Field(alias="investmentList")
    current_index: int = Field(default=0, ge=0, alias="currentIndex")
    detailed_investments: list[ExtractionRecord] = Field(default_factory=list, alias="detailedInvestments")
    start_time: datetime = Field(default_factory=utcnow, alias="startTime")

    @model_validator(mode="after")
    def _check_consistency(self) -> "ExtractionState":
        if self.current_index > len(self.investment_list):
            raise ValueError(
                f"currentIndex={self.current_index} is past the end of investmentList (len={len(self.investment_list)})"
            )
        if len(self.detailed_investments) != self.current_index:
            raise ValueError(
                f"detailedInvestments has {len(self.detailed_investments)} entries but currentIndex={self.current_index}"
            )
        return self

    @property
    def total(self) -> int:
        return len(self.investment_list)

    @property
    def is_complete(self) -> bool:
        return self.current_index >= len(self.investment_list)

    @property
    def current(self) -> Optional[InvestmentSummary]:
        if self.is_complete:
            return None
        return self.investment_list[self.current_index]

    def advance(self, record: ExtractionRecord) -> "ExtractionState":
        return self.model_copy(
            update={
                "detailed_investments": [*self.detailed_investments, record],
                "current_index": self.current_index + 1,
            }
        )

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ExtractionResult(BaseModel):
    """
    User-facing export. Always derived from an `ExtractionState` so the counters cannot drift.
    """

    extraction_date: datetime
    total_investments: int
    investments_with_schedules: int
    investments: list[ExtractionRecord] = Field(default_factory=list)
    status: ResultStatus = "in_progress"
    progress: int = 0
    total: int = 0
    completion_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: ExtractionState, *, status: ResultStatus = "in_progress") -> "ExtractionResult":
        investments = list(state.detailed_investments)
        return cls(
            extraction_date=state.start_time,
            total_investments=len(investments),
            investments_with_schedules=sum(1 for inv in investments if inv.has_schedule),
            investments=investments,
            status=status,
            progress=state.current_index,
            total=state.total,
            completion_date=utcnow() if status == "completed" else None,
        )

    def as_cancelled(self) -> "ExtractionResult":
        return self.model_copy(update={"status": "cancelled", "cancelled_at": utcnow()})

    def to_json_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        data["investments"] = [inv.to_json_dict() for inv in self.investments]
        return data


class LogEntry(BaseModel):
    timestamp: str
    message: str
    severity: Severity = "info"
    date: str
