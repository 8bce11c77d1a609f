"""
Test the custom exceptions and assert functions
"""

# Third Party
import pytest

# Local
from dbcontroller import exceptions


def test_assert_valid_pass():
    """Make sure that no exception is thrown by assert_valid when it passes"""
    exceptions.assert_valid(True)


def test_assert_valid_fail():
    """Make sure the right exception and reason come out of assert_valid"""
    exception_msg = "bad engine"
    with pytest.raises(exceptions.ValidationError, match=exception_msg) as exc_info:
        exceptions.assert_valid(False, exception_msg, reason="UnsupportedEngine")
    assert exc_info.value.reason == "UnsupportedEngine"


def test_assert_valid_default_reason():
    with pytest.raises(exceptions.ValidationError) as exc_info:
        exceptions.assert_valid(False)
    assert exc_info.value.reason == "InvalidSpec"


def test_assert_config_pass():
    exceptions.assert_config(True)


def test_assert_config_fail():
    exception_msg = "error message"
    with pytest.raises(exceptions.ConfigError, match=exception_msg):
        exceptions.assert_config(False, exception_msg)


def test_assert_store_pass():
    exceptions.assert_store(True)


def test_assert_store_fail():
    exception_msg = "no resourceVersion"
    with pytest.raises(exceptions.StoreUnavailableError, match=exception_msg):
        exceptions.assert_store(False, exception_msg)


@pytest.mark.parametrize(
    "exception_class",
    [
        exceptions.ValidationError,
        exceptions.ForbiddenError,
        exceptions.ConfigError,
    ],
)
def test_fatal_errors(exception_class):
    """Fatal errors derive from the base and stop retries"""
    err = exception_class("message")
    assert isinstance(err, exceptions.ControllerFatalError)
    assert isinstance(err, exceptions.ControllerError)
    assert err.is_fatal_error
    assert str(err) == "message"


@pytest.mark.parametrize(
    "exception_class",
    [
        exceptions.ConflictError,
        exceptions.StoreUnavailableError,
        exceptions.ReconcileTimeoutError,
        exceptions.ResourceNotFoundError,
    ],
)
def test_expected_errors(exception_class):
    """Expected errors derive from the base and allow retries"""
    err = exception_class("message")
    assert isinstance(err, exceptions.ControllerExpectedError)
    assert isinstance(err, exceptions.ControllerError)
    assert not err.is_fatal_error
    assert str(err) == "message"
