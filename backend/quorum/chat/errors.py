"""Error taxonomy for the realtime chat core.

Validation and storage failures propagate to whoever called
``MessageIngestPipeline.submit``. Delivery failures never leave the Room
Router. A registry inconsistency means the mutation discipline was broken.
"""


class QuorumError(Exception):
    """Base exception for chat core errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(QuorumError):
    """Raised when a message submission is malformed."""
    def __init__(self, message: str, field: str = ""):
        self.field = field
        super().__init__(message, status_code=400)


class StorageError(QuorumError):
    """Raised when the durable store is unreachable or rejects a write."""
    def __init__(self, message: str):
        super().__init__(message, status_code=503)


class NotAuthorizedError(QuorumError):
    """Raised when a connection may not join a group."""
    def __init__(self, group_id: str, identity: str):
        self.group_id = group_id
        self.identity = identity
        super().__init__(f"{identity} may not join group {group_id}", status_code=403)


class DeliveryError(QuorumError):
    """Best-effort delivery to a single connection failed."""
    def __init__(self, connection_id: str, reason: str):
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Delivery to {connection_id} failed: {reason}")


class RegistryInconsistency(QuorumError):
    """The room and connection indexes of the registry disagree."""
