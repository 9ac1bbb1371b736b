from __future__ import annotations

import pytest

from printvault.apps.api.errors import status_for_error
from printvault.core.errors import (
    AlreadyInFlightError,
    AlreadyUsedError,
    ConflictError,
    ExpiredError,
    FeatureDisabledError,
    IncompleteError,
    InvalidLayoutError,
    NotFetchedError,
    NotFoundError,
    QuotaExceededError,
    RasterizationError,
    UpstreamFailureError,
)


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (NotFoundError("x"), 404),
        (QuotaExceededError("x"), 403),
        (AlreadyUsedError("x"), 409),
        (AlreadyInFlightError("x"), 409),
        (NotFetchedError("x"), 409),
        (IncompleteError("x"), 409),
        (ExpiredError("x"), 410),
        (InvalidLayoutError("x"), 422),
        (UpstreamFailureError("x"), 502),
        (RasterizationError("x"), 502),
        (FeatureDisabledError("x"), 503),
    ],
)
def test_domain_errors_map_to_http_status(error, status: int) -> None:
    assert status_for_error(error) == status


def test_conflict_errors_share_a_base() -> None:
    for error_type in (AlreadyUsedError, AlreadyInFlightError, NotFetchedError):
        assert issubclass(error_type, ConflictError)
    assert issubclass(RasterizationError, UpstreamFailureError)
