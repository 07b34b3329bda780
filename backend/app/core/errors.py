"""Pipeline error taxonomy.

Permanent errors belong to a single message and are never retried.
Transient errors (``transient = True``) are retried by the coordinator
with bounded backoff before the event is discarded as DeliveryFailed.
"""


class PipelineError(Exception):
    """Base class for per-event pipeline failures."""

    code = "PipelineError"
    transient = False

    def __init__(self, message: str, **context):
        self.context = context
        super().__init__(message)


class MalformedPayload(PipelineError):
    code = "MalformedPayload"


class UnknownMetricType(PipelineError):
    code = "UnknownMetricType"


class UnknownEquipment(PipelineError):
    code = "UnknownEquipment"


class LaneOverflow(PipelineError):
    code = "LaneOverflow"


class RegistryUnavailable(PipelineError):
    code = "RegistryUnavailable"
    transient = True


class SinkUnavailable(PipelineError):
    code = "SinkUnavailable"
    transient = True


class DeliveryFailed(PipelineError):
    """Transient failure that outlived its retry budget."""
    code = "DeliveryFailed"


class AlertConflict(PipelineError):
    """Storage refused a second active alert for the same key."""
    code = "AlertConflict"


class RuleConfigError(Exception):
    """Fatal: rule configuration could not be loaded at startup."""
    pass
