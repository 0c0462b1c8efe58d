"""Client fee terms from the P2P.org API.

Fee terms are an input for the client P2P proxy address prediction.
When the API is not reachable, or does not know the client, onboarding
continues with the default terms instead of failing.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from eth_typing import HexAddress
from requests import Session
from web3 import Web3

from p2p_onboarding.constants import DEFAULT_CLIENT_BASIS_POINTS_OF_DEPOSIT, DEFAULT_CLIENT_BASIS_POINTS_OF_PROFIT, P2P_API_URL
from p2p_onboarding.p2p.session import DEFAULT_TIMEOUT, create_p2p_api_session


logger = logging.getLogger(__name__)


#: uint48 upper bound, the proxy factory takes basis points as uint48
MAX_BASIS_POINTS_VALUE = 2**48 - 1


@dataclass(slots=True, frozen=True)
class FeeTerms:
    """Client share of deposit and profit, in basis points."""

    #: Client basis points of deposit
    deposit_bps: int

    #: Client basis points of profit
    profit_bps: int

    def __post_init__(self):
        for name in ("deposit_bps", "profit_bps"):
            value = getattr(self, name)
            assert type(value) == int, f"{name} must be int, got {type(value)}"
            assert 0 <= value <= MAX_BASIS_POINTS_VALUE, f"{name} out of uint48 range: {value}"

    @staticmethod
    def get_default() -> "FeeTerms":
        """Terms used when the fee source is not available: 0 / 9700 BPS."""
        return FeeTerms(
            deposit_bps=DEFAULT_CLIENT_BASIS_POINTS_OF_DEPOSIT,
            profit_bps=DEFAULT_CLIENT_BASIS_POINTS_OF_PROFIT,
        )


#: Pluggable fee source: client address -> fee terms
FeeTermsFetcher = Callable[[HexAddress], FeeTerms]


def fetch_fee_terms(
    client: HexAddress | str,
    api_url: str = P2P_API_URL,
    api_token: str | None = None,
    session: Session | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> FeeTerms:
    """Read the fee terms of a client from the P2P.org API.

    ``GET {api_url}/{client}/fee-config`` returning
    ``{"clientBasisPointsOfDeposit": int, "clientBasisPointsOfProfit": int}``.

    :raise requests.HTTPError:
        API answered with an error status

    :raise ValueError:
        API answer is missing the fee fields
    """
    client = Web3.to_checksum_address(client)

    if session is None:
        session = create_p2p_api_session(api_token)

    url = f"{api_url.rstrip('/')}/{client}/fee-config"
    logger.info("Fetching fee terms for %s from %s", client, url)
    resp = session.get(url, timeout=timeout)
    resp.raise_for_status()

    data = resp.json()
    # Some API versions wrap the payload
    if isinstance(data, dict) and isinstance(data.get("result"), dict):
        data = data["result"]

    try:
        deposit_bps = int(data["clientBasisPointsOfDeposit"])
        profit_bps = int(data["clientBasisPointsOfProfit"])
    except (KeyError, TypeError) as e:
        raise ValueError(f"Fee config response for {client} is missing fee fields: {data}") from e

    return FeeTerms(deposit_bps=deposit_bps, profit_bps=profit_bps)


def resolve_fee_terms(
    client: HexAddress | str,
    fetcher: FeeTermsFetcher | None = None,
    api_url: str = P2P_API_URL,
    api_token: str | None = None,
) -> FeeTerms:
    """Get fee terms for a client, never failing.

    :param fetcher:
        Custom fee source. If not given, use the P2P.org API.

    :return:
        Fee terms from the source, or :py:meth:`FeeTerms.get_default` if the source failed
    """
    try:
        if fetcher is not None:
            terms = fetcher(Web3.to_checksum_address(client))
        else:
            terms = fetch_fee_terms(client, api_url=api_url, api_token=api_token)
        assert isinstance(terms, FeeTerms), f"Fee source returned {type(terms)}"
        return terms
    except Exception as e:
        default = FeeTerms.get_default()
        logger.warning(
            "Could not fetch fee terms for %s, using default deposit=%d profit=%d BPS: %s",
            client,
            default.deposit_bps,
            default.profit_bps,
            e,
        )
        return default
