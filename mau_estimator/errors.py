"""Conditions raised or recorded during an estimation run."""

# Violation kinds, as they appear in a run manifest
NO_INSTALL_BASE_DATA = "NoInstallBaseData"
NO_OBSERVED_ACTIVITY = "NoObservedActivity"
INVARIANT_VIOLATION = "InvariantViolation"
RANGE_VIOLATION = "RangeViolation"
REFERENTIAL_VIOLATION = "ReferentialViolation"
FRESHNESS_VIOLATION = "FreshnessViolation"
FORMAT_VIOLATION = "FormatViolation"
OUTLIER_FLAG = "OutlierFlag"
TIMEOUT = "Timeout"

# Any of these in the gate's findings blocks publication
REJECTING_KINDS = frozenset({
    RANGE_VIOLATION,
    REFERENTIAL_VIOLATION,
    FRESHNESS_VIOLATION,
    FORMAT_VIOLATION,
})


class ConfigError(ValueError):
    """Raised when run options are invalid."""


class EstimationError(Exception):
    """Base class for conditions that carry a manifest violation kind."""

    kind = "EstimationError"

    def __init__(self, detail: str, warnings: list[dict] = None):
        super().__init__(detail)
        self.detail = detail
        # non-fatal findings gathered before the condition was raised
        self.warnings = list(warnings or [])

    def as_violation(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}


class NoInstallBaseData(EstimationError):
    kind = NO_INSTALL_BASE_DATA


class NoObservedActivity(EstimationError):
    kind = NO_OBSERVED_ACTIVITY


class InvariantViolation(EstimationError):
    kind = INVARIANT_VIOLATION


class EstimationTimeout(EstimationError):
    kind = TIMEOUT


def violation(kind: str, detail: str) -> dict:
    return {"kind": kind, "detail": detail}
