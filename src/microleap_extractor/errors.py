from __future__ import annotations


class ExtractorError(RuntimeError):
    """
    Base class for failures surfaced to the user as a short message.
    """


class NoInvestmentsFoundError(ExtractorError):
    """
    Raised when the investment list page yields no usable rows.
    """

    def __init__(self, message: str = "No investments found in the list") -> None:
        super().__init__(message)


class NoTablesFoundError(ExtractorError):
    """
    Raised when a detail page has no table at all.
    """

    def __init__(self, message: str = "No tables found on investment details page") -> None:
        super().__init__(message)


class WalkStateError(ExtractorError):
    """
    Raised when the persisted continuation record is unreadable or inconsistent.
    """


class DashboardNotOpenError(ExtractorError):
    def __init__(self, message: str = "No dashboard tab found") -> None:
        super().__init__(message)
