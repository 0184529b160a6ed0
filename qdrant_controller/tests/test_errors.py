from __future__ import annotations

import httpx
import pytest
from kubernetes.client import ApiException

from qdrant_controller.src.errors import TRANSIENT_ERRORS, QdrantError, is_conflict, is_not_found


@pytest.mark.parametrize(
    ("exc", "not_found", "conflict"),
    [
        (ApiException(status=404, reason="Not Found"), True, False),
        (ApiException(status=409, reason="Conflict"), False, True),
        (ApiException(status=500, reason="boom"), False, False),
        (QdrantError("not found", status_code=404), False, False),
    ],
)
def test_status_helpers(exc: BaseException, not_found: bool, conflict: bool) -> None:
    assert is_not_found(exc) is not_found
    assert is_conflict(exc) is conflict


def test_transient_errors_cover_api_and_http_failures() -> None:
    assert isinstance(ApiException(status=500), TRANSIENT_ERRORS)
    assert isinstance(httpx.ConnectError("refused"), TRANSIENT_ERRORS)
    assert not isinstance(ValueError("bad"), TRANSIENT_ERRORS)
