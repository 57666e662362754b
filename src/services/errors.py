from __future__ import annotations


class CoordinatorError(RuntimeError):
    pass


class NotFoundError(CoordinatorError):
    pass


class InvalidInputError(CoordinatorError, ValueError):
    """Malformed join code, postal code or request field. Raised before any I/O."""


class ProviderUnavailableError(CoordinatorError):
    pass


class PermissionDeniedError(CoordinatorError):
    pass


class NoSurvivorsError(CoordinatorError):
    """Every candidate on the active page was eliminated; relax eliminations and retry."""


class JoinCodeExhaustedError(CoordinatorError):
    pass


class ConflictError(CoordinatorError):
    pass
