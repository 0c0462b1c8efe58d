"""Deployment records for the contracts the onboarding flow talks to.

All contracts here are externally deployed and immutable from our point of view.

- `Safe canonical deployments <https://github.com/safe-global/safe-deployments>`__
- `Zodiac deployments <https://github.com/gnosisguild/zodiac/tree/master/sdk/contracts>`__
"""

from eth_typing import HexAddress
from web3 import Web3

#: P2P.org client API root
P2P_API_URL = "https://api.p2p.org/clients"

#: Role key we assign to the P2P operator in the Roles modifier
P2P_ROLE_KEY: bytes = Web3.keccak(text="P2P_SUPERFORM_ROLE")

#: Client fee terms used when the fee source is not reachable.
#:
#: 0 BPS of deposit, 9700 BPS (97%) of profit goes to the client.
DEFAULT_CLIENT_BASIS_POINTS_OF_DEPOSIT = 0

DEFAULT_CLIENT_BASIS_POINTS_OF_PROFIT = 9700

#: Safe v1.3.0 canonical addresses.
#:
#: Same on all chains where Safe was deployed with the singleton factory.
SAFE_V130_CANONICAL = {
    "safe_singleton": HexAddress("0xd9Db270c1B5E3Bd161E8c8503c55cEABeE709552"),
    "safe_proxy_factory": HexAddress("0xa6B71E26C5e0845f74c812102Ca7114b6a896AB2"),
    "multisend_call_only": HexAddress("0x40A2aCCbd92BCA938b02010E17A5b8929b49130D"),
}

#: Zodiac canonical addresses, same on all supported chains
ZODIAC_CANONICAL = {
    "module_proxy_factory": HexAddress("0x000000000000aDdB49795b0f9bA5BC298cDda236"),
    "roles_master_copy": HexAddress("0x9646fDAD06d3e24444381f44362a3B0eB343D337"),
}

#: P2P.org Superform deployment on Base
P2P_BASE = {
    "p2p_address": HexAddress("0x588ede4403DF0082C5ab245b35F0f79EB2d8033a"),
    "p2p_superform_proxy_factory": HexAddress("0x815B6A7c0b8F4D1c7cdb5031EBe802bf4f7e6d81"),
}

#: Chain id -> known deployment addresses.
#:
#: Anything missing here must be passed in :py:class:`p2p_onboarding.config.OnboardingConfig`.
DEPLOYMENTS: dict[int, dict[str, HexAddress]] = {
    # Ethereum
    1: SAFE_V130_CANONICAL | ZODIAC_CANONICAL,
    # Optimism
    10: SAFE_V130_CANONICAL | ZODIAC_CANONICAL,
    # BNB Smart Chain
    56: SAFE_V130_CANONICAL | ZODIAC_CANONICAL,
    # Gnosis
    100: SAFE_V130_CANONICAL | ZODIAC_CANONICAL,
    # Polygon
    137: SAFE_V130_CANONICAL | ZODIAC_CANONICAL,
    # Base
    8453: SAFE_V130_CANONICAL | ZODIAC_CANONICAL | P2P_BASE,
    # Arbitrum
    42161: SAFE_V130_CANONICAL | ZODIAC_CANONICAL,
    # Avalanche
    43114: SAFE_V130_CANONICAL | ZODIAC_CANONICAL,
    # Sepolia
    11155111: SAFE_V130_CANONICAL | ZODIAC_CANONICAL,
}
