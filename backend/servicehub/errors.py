class ServiceHubError(ValueError):
    """Base class for user-visible errors raised by the gateway and the containers."""


class ValidationError(ServiceHubError):
    pass


class CredentialError(ValidationError):
    pass


class InvalidTransitionError(ValidationError):
    pass


class NotFoundError(ServiceHubError):
    pass


class ConflictError(ServiceHubError):
    pass


class UploadError(ServiceHubError):
    pass


class ReadError(ServiceHubError):
    pass


class WriteError(ServiceHubError):
    pass
