"""
Test Suite - Resilience utils
-----------------------------
File: webp_backend/tests/test_resilience_utils.py
"""

import pytest
from botocore.exceptions import ClientError

from webp_backend.services import observability_utils as obs
from webp_backend.services.errors import (
    ObjectNotFoundError,
    RecordUpdateError,
    StorageError,
    TransientIOError,
    ValidationError,
)
from webp_backend.services.resilience_utils import is_transient_error, retry_async


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, "GetObject")


# --- is_transient_error -------------------------------------------------------

@pytest.mark.parametrize(
    "exc, expected",
    [
        (None, False),
        (ValidationError(["bad"], ["allowed_formats"]), False),
        (ValidationError(["connection reset"]), False),
        (TransientIOError("x"), True),
        (ObjectNotFoundError("timeout in message but still missing"), False),
        (StorageError("denied"), False),
        (RecordUpdateError("x", transient=True), True),
        (RecordUpdateError("x"), False),
        (TimeoutError(), True),
        (ConnectionResetError(), True),
        (_client_error("SlowDown", 503), True),
        (_client_error("AccessDenied", 403), False),
        (_client_error("Weird", 502), True),
        (RuntimeError("service temporarily unavailable"), True),
        (RuntimeError("division by zero"), False),
    ],
)
def test_is_transient_error(exc, expected):
    assert is_transient_error(exc) is expected


# --- retry_async --------------------------------------------------------------

class Flaky:
    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.calls = 0
        self.result = result

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures():
    fn = Flaky([TransientIOError("a"), TransientIOError("b")])
    sleep = SleepRecorder()
    assert await retry_async(fn, attempts=3, delay=0.5, sleep=sleep) == "ok"
    assert fn.calls == 3
    assert sleep.delays == [0.5, 0.5]
    assert obs.metrics_snapshot()["resilience.retry.attempt"] == 2


@pytest.mark.asyncio
async def test_retry_reraises_last_error_after_exhaustion():
    last = TransientIOError("third")
    fn = Flaky([TransientIOError("first"), TransientIOError("second"), last])
    with pytest.raises(TransientIOError) as exc:
        await retry_async(fn, attempts=3, delay=0, sleep=SleepRecorder())
    assert exc.value is last
    assert obs.metrics_snapshot()["resilience.retry.exhausted"] == 1


@pytest.mark.asyncio
async def test_non_retryable_error_fails_fast():
    fn = Flaky([ValidationError(["nope"])])
    sleep = SleepRecorder()
    with pytest.raises(ValidationError):
        await retry_async(fn, attempts=5, delay=1, sleep=sleep)
    assert fn.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_exponential_delay_with_cap():
    fn = Flaky([TransientIOError("x")] * 4)
    sleep = SleepRecorder()
    await retry_async(fn, attempts=5, delay=1.0, exponential=True, max_delay=3.0, sleep=sleep)
    assert sleep.delays == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_custom_predicate():
    fn = Flaky([KeyError("k")])
    assert await retry_async(fn, attempts=2, delay=0, is_retryable=lambda e: isinstance(e, KeyError)) == "ok"


@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [{"attempts": 0}, {"attempts": 1.5}, {"delay": -1}, {"max_delay": -2}])
async def test_invalid_arguments(kwargs):
    with pytest.raises(ValueError):
        await retry_async(Flaky([]), **kwargs)

