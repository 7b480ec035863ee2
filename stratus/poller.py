"""Bounded-time polling for long-running cloud operations.

A poll function inspects the operation once and returns a plain tri-state
result instead of raising to signal "not yet":

    async def nat_gateway_state() -> PollResult[dict]:
        gateway = await describe()
        match gateway["State"]:
            case "pending":
                return Waiting()
            case "available":
                return Ready(gateway)
            case state:
                return Fatal(UnexpectedStateError(gateway["NatGatewayId"], state))

    gateway = await poll_until(nat_gateway_state, timeout=600, interval=5,
                               description="NAT gateway")

Transient API errors raised by the poll function (throttling, brief
unavailability, eventual consistency right after a create) are absorbed here
and nowhere else.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from botocore.exceptions import ClientError, EndpointConnectionError
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from stratus.constants import DEFAULT_OPERATION_TIMEOUT, DEFAULT_POLL_INTERVAL
from stratus.exceptions import OperationTimeoutError

log = logger.bind(component="poller")

# =============================================================================
# Poll Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class Waiting:
    """The operation has not finished yet."""

    status: str | None = None


@dataclass(frozen=True, slots=True)
class Ready[T]:
    """The operation finished; ``value`` is handed back to the caller."""

    value: T


@dataclass(frozen=True, slots=True)
class Fatal:
    """The operation can no longer succeed."""

    error: Exception


type PollResult[T] = Waiting | Ready[T] | Fatal


# =============================================================================
# Transient Errors
# =============================================================================

TRANSIENT_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "Unavailable",
    "InternalError",
    "InternalFailure",
    "NatGatewayNotFound",
})

MAX_CONSECUTIVE_TRANSIENT_ERRORS = 10


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


def is_transient(exc: BaseException) -> bool:
    """Whether an API error is worth another poll rather than failing."""
    if isinstance(exc, EndpointConnectionError):
        return True
    code = error_code(exc)
    return code in TRANSIENT_ERROR_CODES or code.endswith(".NotFound")


class _NotReady(Exception):
    """Internal marker that drives the retry loop."""


# =============================================================================
# Driver
# =============================================================================


async def poll_until[T](
    poll: Callable[[], Awaitable[PollResult[T]]],
    *,
    timeout: float = DEFAULT_OPERATION_TIMEOUT,
    interval: float = DEFAULT_POLL_INTERVAL,
    description: str = "operation",
    on_status: Callable[[str], None] | None = None,
) -> T:
    """Call ``poll`` every ``interval`` seconds until it is ready or fails.

    Args:
        poll: Inspects the operation once.
        timeout: Overall time budget in seconds.
        interval: Delay between polls in seconds.
        description: Used in log lines and the timeout error.
        on_status: Receives ``Waiting.status`` strings as they change.

    Returns:
        The value carried by the ``Ready`` result.

    Raises:
        OperationTimeoutError: The budget ran out while still waiting.
        Exception: The error carried by a ``Fatal`` result, or a non-transient
            API error raised by ``poll``.
    """
    transient_errors = 0
    last_status: str | None = None

    async def once() -> T:
        nonlocal transient_errors, last_status

        try:
            result = await poll()
        except Exception as e:
            if not is_transient(e):
                raise
            transient_errors += 1
            if transient_errors > MAX_CONSECUTIVE_TRANSIENT_ERRORS:
                raise
            log.warning(f"{description}: transient error {error_code(e) or type(e).__name__}, polling again")
            raise _NotReady() from e

        transient_errors = 0
        match result:
            case Ready(value=value):
                return value
            case Fatal(error=error):
                raise error
            case Waiting(status=status):
                if status and status != last_status:
                    last_status = status
                    if on_status is not None:
                        on_status(status)
                raise _NotReady()
        raise TypeError(f"Poll for {description} returned {result!r}")

    log.debug(f"Waiting for {description} (timeout={timeout:.0f}s, interval={interval:.1f}s)")

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(interval),
            retry=retry_if_exception_type(_NotReady),
        ):
            with attempt:
                return await once()
    except RetryError as e:
        raise OperationTimeoutError(description, timeout) from e

    raise AssertionError("unreachable")
