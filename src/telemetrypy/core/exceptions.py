"""Exception hierarchy for telemetry queries and correction records."""


class TelemetryError(Exception):
    """Base class for all telemetrypy errors."""


class InvalidSpec(TelemetryError, ValueError):
    """A query or rule description was rejected before any fetch.

    Raised for malformed filters, out-of-range time-of-day windows,
    non-positive resampling intervals and unknown sampling or operation tags.
    """


class UpstreamFetchFailure(TelemetryError):
    """The sample source or the correction store failed.

    The underlying error is attached as ``__cause__``.
    """


class RuleNotFound(TelemetryError, LookupError):
    """No correction rule exists with the requested id."""

    def __init__(self, rule_id: int) -> None:
        super().__init__(f"Correction rule {rule_id} not found")
        self.rule_id = rule_id
