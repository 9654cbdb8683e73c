"""Tests for the stacker_lite exception hierarchy."""

import pytest

from stacker_lite.lite_exceptions import (
    InvalidIntentError,
    PersistenceError,
    RuleParseError,
    StackerError,
    StorageError,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize("exc_type", [RuleParseError, InvalidIntentError, StorageError, PersistenceError])
def test_all_errors_share_the_base(exc_type):
    assert issubclass(exc_type, StackerError)
    with pytest.raises(StackerError, match="boom"):
        raise exc_type("boom")


def test_base_is_a_plain_exception():
    assert issubclass(StackerError, Exception)
    assert not issubclass(RuleParseError, ValueError)
