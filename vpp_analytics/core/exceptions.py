"""Exception hierarchy for the VPP analytics core.

- AnalyticsError: base for all analytics errors
- InputValidationError: malformed call parameters (surfaced immediately)
- UnsupportedMethodError: unknown optimization method or analysis type
- InsufficientDataError: history shorter than the required window
- CollaboratorUnavailableError: data source or model runner unreachable
- AnalysisTimeoutError: analysis exceeded its time budget

Degraded data, non-convergence and timeouts are normally absorbed into the
result payload as flags; the exceptions exist so the layers that *do* raise
share one taxonomy. ConvergenceWarning is a warning, not an error.
"""


class AnalyticsError(Exception):
    """Base exception for all analytics errors."""


class InputValidationError(AnalyticsError, ValueError):
    """Raised when call parameters are malformed or inconsistent."""


class UnsupportedMethodError(InputValidationError):
    """Raised when an optimization method or analysis type is unknown."""


class InsufficientDataError(AnalyticsError):
    """Raised when a series is shorter than the minimum required window."""


class CollaboratorUnavailableError(AnalyticsError):
    """Raised when a data source, model runner or sink cannot be reached."""


class AnalysisTimeoutError(AnalyticsError):
    """Raised internally when a long-running analysis exhausts its budget."""


class ConvergenceWarning(UserWarning):
    """Emitted when an iterative method stops before reaching tolerance."""
