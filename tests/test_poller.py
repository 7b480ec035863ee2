from __future__ import annotations

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from stratus.exceptions import OperationTimeoutError, UnexpectedStateError
from stratus.poller import (
    MAX_CONSECUTIVE_TRANSIENT_ERRORS,
    Fatal,
    PollResult,
    Ready,
    Waiting,
    is_transient,
    poll_until,
)

pytestmark = [pytest.mark.xdist_group("unit")]


def _error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "Describe")


class _Script:
    """Poll function that plays back a list of results or exceptions."""

    def __init__(self, *steps: PollResult[str] | Exception) -> None:
        self._steps = list(steps)
        self.calls = 0

    async def __call__(self) -> PollResult[str]:
        self.calls += 1
        step = self._steps.pop(0) if len(self._steps) > 1 else self._steps[0]
        if isinstance(step, Exception):
            raise step
        return step


class TestIsTransient:
    @pytest.mark.parametrize("code", ["Throttling", "RequestLimitExceeded", "ServiceUnavailable", "InternalError"])
    def test_throttling_and_unavailability(self, code: str):
        assert is_transient(_error(code))

    def test_eventual_consistency_not_found(self):
        assert is_transient(_error("InvalidInstanceID.NotFound"))

    def test_connection_error(self):
        assert is_transient(EndpointConnectionError(endpoint_url="https://ec2.example"))

    @pytest.mark.parametrize("code", ["UnauthorizedOperation", "InvalidParameterValue"])
    def test_permanent(self, code: str):
        assert not is_transient(_error(code))

    def test_plain_exception(self):
        assert not is_transient(ValueError("boom"))


class TestPollUntil:
    @pytest.mark.asyncio
    async def test_ready_immediately(self):
        poll = _Script(Ready("done"))
        assert await poll_until(poll, timeout=1, interval=0) == "done"
        assert poll.calls == 1

    @pytest.mark.asyncio
    async def test_waits_until_ready(self):
        poll = _Script(Waiting(), Waiting(), Ready("done"))
        assert await poll_until(poll, timeout=5, interval=0) == "done"
        assert poll.calls == 3

    @pytest.mark.asyncio
    async def test_fatal_raises_its_error(self):
        poll = _Script(Waiting(), Fatal(UnexpectedStateError("nat", "failed")))
        with pytest.raises(UnexpectedStateError, match="failed"):
            await poll_until(poll, timeout=5, interval=0)

    @pytest.mark.asyncio
    async def test_timeout(self):
        poll = _Script(Waiting("pending"))
        with pytest.raises(OperationTimeoutError, match="NAT gateway") as info:
            await poll_until(poll, timeout=0.05, interval=0.01, description="NAT gateway")
        assert isinstance(info.value, TimeoutError)
        assert poll.calls >= 1

    @pytest.mark.asyncio
    async def test_status_changes_are_reported_once(self):
        seen: list[str] = []
        poll = _Script(Waiting("pending"), Waiting("pending"), Waiting("booting"), Waiting(), Ready("ok"))
        await poll_until(poll, timeout=5, interval=0, on_status=seen.append)
        assert seen == ["pending", "booting"]

    @pytest.mark.asyncio
    async def test_transient_errors_are_absorbed(self):
        poll = _Script(_error("Throttling"), _error("InvalidNatGatewayID.NotFound"), Ready("ok"))
        assert await poll_until(poll, timeout=5, interval=0) == "ok"

    @pytest.mark.asyncio
    async def test_permanent_errors_propagate(self):
        poll = _Script(_error("UnauthorizedOperation"))
        with pytest.raises(ClientError):
            await poll_until(poll, timeout=5, interval=0)
        assert poll.calls == 1

    @pytest.mark.asyncio
    async def test_too_many_consecutive_transient_errors(self):
        poll = _Script(_error("Throttling"))
        with pytest.raises(ClientError):
            await poll_until(poll, timeout=5, interval=0)
        assert poll.calls == MAX_CONSECUTIVE_TRANSIENT_ERRORS + 1
