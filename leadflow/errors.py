"""Error taxonomy shared by the pipeline, the consent flow and the HTTP layer."""


class LeadFlowError(Exception):
    """Base class for all service errors."""


class ValidationError(LeadFlowError):
    """Upload has the wrong shape: empty, unparsable, no rows or no usable columns."""


class AuthError(LeadFlowError):
    """Bearer credential missing or not resolvable to an owner."""


class StorageError(LeadFlowError):
    """The data store rejected a read or write."""


class NotFoundError(LeadFlowError):
    """Referenced contact or job does not exist."""


class TransientExternalError(LeadFlowError):
    """Messaging or text-model service unreachable or returned an unusable answer."""
