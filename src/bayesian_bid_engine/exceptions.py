"""
Error taxonomy for the Bayesian bid engine.

Not-ready outcomes (insufficient data, rate limiting) are reported through
typed results such as ``TriggerResult`` rather than raised.
"""

from typing import Optional


class OptimizerError(Exception):
    """Base class for all bid engine errors"""


class InvalidObservation(OptimizerError):
    """Malformed, negative or non-numeric observation counts"""

    def __init__(self, message: str, field: Optional[str] = None, value=None):
        super().__init__(message)
        self.field = field
        self.value = value


class FitFailure(OptimizerError):
    """Curve fitter could not converge on any candidate model"""


class StoreUnavailable(OptimizerError):
    """The bid state store could not be reached"""


class StaleStateError(OptimizerError):
    """Optimistic concurrency check failed: the stored version moved on"""

    def __init__(self, key, expected_version: int):
        super().__init__(f"Bid state {key} changed since version {expected_version}")
        self.key = key
        self.expected_version = expected_version


class LeaseUnavailable(OptimizerError):
    """Another worker holds the lease for this entity"""

    def __init__(self, key, holder: Optional[str] = None):
        super().__init__(f"Lease for {key} is held by {holder or 'another worker'}")
        self.key = key
        self.holder = holder


class InvalidRunTransition(OptimizerError):
    """Optimizer run status change not allowed by the run state machine"""


class RunFailure(OptimizerError):
    """A batch run was aborted; already committed entities remain valid"""

    def __init__(self, message: str, run_id: Optional[int] = None, entities_considered: int = 0):
        super().__init__(message)
        self.run_id = run_id
        self.entities_considered = entities_considered
