"""Exceptions raised by deployinfra library code."""


class DeployInfraError(Exception):
    """Base class for deployinfra errors."""


class ValidationError(DeployInfraError, ValueError):
    """A request is missing a required field or carries a malformed value."""


class NotFoundError(DeployInfraError, LookupError):
    """A named cloud resource does not exist."""


class AuthError(DeployInfraError):
    """Cloud credentials are missing, expired or rejected."""
