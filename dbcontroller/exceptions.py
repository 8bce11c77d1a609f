"""
This module implements custom exceptions
"""

## Base Error ##################################################################


class ControllerError(Exception):
    """Base class for all dbcontroller exceptions"""

    def __init__(self, message: str, is_fatal_error: bool):
        """Construct with a flag indicating whether this is a fatal error. This
        will be a static property of all children.
        """
        super().__init__(message)
        self._is_fatal_error = is_fatal_error

    @property
    def is_fatal_error(self):
        """Property indicating whether or not this error should stop automatic
        retries for the resource being reconciled
        """
        return self._is_fatal_error


## Fatal Errors ################################################################


class ControllerFatalError(ControllerError):
    """A ControllerFatalError is one that will not resolve by retrying the same
    reconciliation. It needs a spec edit or operator intervention.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class ValidationError(ControllerFatalError):
    """Exception raised when a Database spec cannot be reconciled as written.
    The reason is surfaced verbatim as the status condition reason.
    """

    def __init__(self, message: str = "", reason: str = "InvalidSpec"):
        self.reason = reason
        super().__init__(message)


class ForbiddenError(ControllerFatalError):
    """Exception raised when the API server denies an operation. This points to
    an RBAC misconfiguration of the controller's deployment.
    """


class ConfigError(ControllerFatalError):
    """Exception caused during usage of controller configuration"""


## Expected Errors #############################################################


class ControllerExpectedError(ControllerError):
    """A ControllerExpectedError is one that indicates an expected failure
    condition that should terminate the current attempt, but is expected to
    resolve in a subsequent attempt.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class ConflictError(ControllerExpectedError):
    """Exception raised when a write used a stale resourceVersion or another
    writer holds the field
    """


class StoreUnavailableError(ControllerExpectedError):
    """Exception raised when the API server could not be reached or answered
    with a server side error
    """


class ReconcileTimeoutError(ControllerExpectedError):
    """Exception raised when a reconciliation attempt exceeds its deadline"""


class ResourceNotFoundError(ControllerExpectedError):
    """Exception raised when the resource disappeared while it was being
    reconciled. Callers treat this as a concurrent deletion.
    """


## Assertions ##################################################################


def assert_valid(condition: bool, message: str = "", reason: str = "InvalidSpec"):
    """Replacement for assert() which will throw a ValidationError. This should
    be used when checking a user-provided Database spec.
    """
    if not condition:
        raise ValidationError(message, reason=reason)


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when checking the controller's own configuration.
    """
    if not condition:
        raise ConfigError(message)


def assert_store(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a StoreUnavailableError. This
    should be used when a store operation does not return what it must.
    """
    if not condition:
        raise StoreUnavailableError(message)
