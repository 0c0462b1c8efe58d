"""Bounded retry for view calls against lagging nodes.

A node behind a load balancer may not yet have the state of a contract
we just deployed. The view call then returns empty data
and web3.py raises :py:class:`web3.exceptions.BadFunctionCallOutput`.
This is distinguishable from a real revert (:py:class:`web3.exceptions.ContractLogicError`),
so only this failure class is retried.
"""

import logging
import time
from typing import Callable, TypeVar

from web3.exceptions import BadFunctionCallOutput

from p2p_onboarding.errors import TransientReadError


logger = logging.getLogger(__name__)


#: How many times we try a view call before giving up
DEFAULT_READ_ATTEMPTS = 3

#: Fixed sleep between attempts, seconds
DEFAULT_READ_RETRY_SLEEP = 0.5


#: Error message fragments for empty return data across web3.py versions and RPC providers
NO_DATA_MESSAGES = (
    "returned no data",
    "ContractFunctionZeroDataError",
    "is contract deployed correctly and chain synced",
    "Could not decode contract function call",
)


T = TypeVar("T")


def is_transient_read_error(e: BaseException | str) -> bool:
    """Does this error look like "contract returned no data".

    - Empty return data means the node does not see the contract code (yet)
    - Reverts and RPC errors are not transient in this sense
    """
    if isinstance(e, BadFunctionCallOutput):
        return True

    if isinstance(e, TransientReadError):
        return True

    message = e if isinstance(e, str) else str(e)
    return any(m in message for m in NO_DATA_MESSAGES)


def read_with_transient_retry(
    read: Callable[[], T],
    description: str = "view call",
    attempts: int = DEFAULT_READ_ATTEMPTS,
    sleep: float = DEFAULT_READ_RETRY_SLEEP,
) -> T:
    """Perform a chain read, retrying on empty return data.

    Example:

    .. code-block:: python

        nonce = read_with_transient_retry(
            lambda: safe.functions.nonce().call(),
            description=f"Safe {safe.address} nonce()",
        )

    :param read:
        Callable doing the actual RPC round trip

    :param description:
        Human readable name for the logs and the final error

    :param attempts:
        Total number of attempts, including the first one

    :param sleep:
        Fixed back-off between attempts, seconds

    :raise TransientReadError:
        The call returned no data on every attempt.

    :return:
        Whatever ``read`` returns
    """
    assert attempts >= 1, f"Need at least one attempt, got {attempts}"

    for attempt in range(1, attempts + 1):
        try:
            return read()
        except Exception as e:
            if not is_transient_read_error(e):
                raise

            if attempt == attempts:
                raise TransientReadError(
                    f"{description} returned no data after {attempts} attempts: {e}",
                    context={"description": description, "attempts": attempts},
                ) from e

            logger.warning(
                "%s returned no data, attempt %d/%d, sleeping %f seconds: %s",
                description,
                attempt,
                attempts,
                sleep,
                e,
            )
            time.sleep(sleep)

    # Unreachable, keeps type checkers happy
    raise AssertionError("read_with_transient_retry() fell through")
