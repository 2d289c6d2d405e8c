class FleetError(Exception):
    """Base fleet exception."""

class ConfigurationError(FleetError):
    """Raised when a required setting is missing or a server is unusable."""

class SourceUnavailable(FleetError):
    """Raised when a save origin cannot be resolved or copied."""

class InvalidAddress(SourceUnavailable):
    """Raised when a k8s:// or docker:// origin is malformed."""

class ProtocolError(FleetError):
    """Raised when a console/REST call or the save decoder fails."""

class NotFound(FleetError):
    """Raised when a record or server does not exist."""

class StorageError(FleetError):
    """Raised when the underlying store fails."""
