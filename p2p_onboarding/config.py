"""Onboarding configuration.

- :py:class:`OnboardingConfig` holds caller overrides, all optional

- :py:func:`resolve_onboarding_config` layers them over the deployment records
  of :py:mod:`p2p_onboarding.constants` once, when the onboarding client is created

- Everything after that reads the immutable :py:class:`ResolvedOnboardingConfig`
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from eth_typing import HexAddress

from p2p_onboarding.constants import DEPLOYMENTS, P2P_API_URL, P2P_ROLE_KEY
from p2p_onboarding.errors import ConfigurationError
from p2p_onboarding.p2p.fees import FeeTermsFetcher
from p2p_onboarding.roles.deployment import resolve_address


logger = logging.getLogger(__name__)


#: Address fields resolved against the deployment records
ADDRESS_FIELDS = (
    "safe_singleton",
    "safe_proxy_factory",
    "multisend_call_only",
    "module_proxy_factory",
    "roles_master_copy",
    "p2p_address",
    "p2p_superform_proxy_factory",
)


@dataclass
class OnboardingConfig:
    """Caller overrides for an onboarding client.

    Any address left as ``None`` is taken from the deployment records of the chain.
    """

    #: Safe v1.3.0 singleton (master copy)
    safe_singleton: Optional[HexAddress] = None

    #: Safe proxy factory
    safe_proxy_factory: Optional[HexAddress] = None

    #: MultiSendCallOnly used to batch the setup transaction
    multisend_call_only: Optional[HexAddress] = None

    #: Zodiac ModuleProxyFactory
    module_proxy_factory: Optional[HexAddress] = None

    #: Zodiac Roles v2 master copy
    roles_master_copy: Optional[HexAddress] = None

    #: P2P.org operator address that gets the role
    p2p_address: Optional[HexAddress] = None

    #: P2P Superform proxy factory
    p2p_superform_proxy_factory: Optional[HexAddress] = None

    #: P2P.org client API root
    p2p_api_url: Optional[str] = None

    #: P2P.org API bearer token
    p2p_api_token: Optional[str] = None

    #: Custom fee source, replaces the P2P.org API lookup
    fee_terms_fetcher: Optional[FeeTermsFetcher] = None

    #: Fixed Safe salt nonce. Random per deployment if not given.
    safe_salt_nonce: Optional[int] = None

    #: Fixed Roles module salt nonce. Derived from the Safe if not given.
    roles_salt_nonce: Optional[int] = None

    #: Role key for the operator, defaults to ``keccak256("P2P_SUPERFORM_ROLE")``
    role_key: Optional[bytes] = None

    #: Expected chain id. Checked against the node if given.
    chain_id: Optional[int] = None


@dataclass(slots=True, frozen=True)
class ResolvedOnboardingConfig:
    """Fully resolved configuration for one chain."""

    chain_id: int
    safe_singleton: HexAddress
    safe_proxy_factory: HexAddress
    multisend_call_only: HexAddress
    module_proxy_factory: HexAddress
    roles_master_copy: HexAddress
    p2p_address: HexAddress
    p2p_superform_proxy_factory: HexAddress
    p2p_api_url: str
    role_key: bytes
    p2p_api_token: Optional[str] = None
    fee_terms_fetcher: Optional[FeeTermsFetcher] = None
    safe_salt_nonce: Optional[int] = None
    roles_salt_nonce: Optional[int] = None


def resolve_onboarding_config(
    config: OnboardingConfig | None,
    chain_id: int,
    records: dict[int, dict[str, HexAddress]] = DEPLOYMENTS,
) -> ResolvedOnboardingConfig:
    """Layer caller overrides over the deployment records of a chain.

    :param chain_id:
        Chain id reported by the node

    :raise ConfigurationError:
        The config expects a different chain.

    :raise AddressResolutionError:
        An address has no override and no deployment record on this chain.
    """
    if config is None:
        config = OnboardingConfig()

    assert type(chain_id) == int, f"Bad chain id {chain_id}"

    if config.chain_id is not None and config.chain_id != chain_id:
        raise ConfigurationError(
            f"Config is for chain {config.chain_id}, but the node is on chain {chain_id}",
            context={"expected_chain_id": config.chain_id, "chain_id": chain_id},
        )

    addresses = {name: resolve_address(name, getattr(config, name), records, chain_id) for name in ADDRESS_FIELDS}

    role_key = config.role_key or P2P_ROLE_KEY
    assert len(role_key) == 32, f"Role key must be 32 bytes, got {len(role_key)}"

    resolved = ResolvedOnboardingConfig(
        chain_id=chain_id,
        p2p_api_url=config.p2p_api_url or P2P_API_URL,
        p2p_api_token=config.p2p_api_token,
        fee_terms_fetcher=config.fee_terms_fetcher,
        safe_salt_nonce=config.safe_salt_nonce,
        roles_salt_nonce=config.roles_salt_nonce,
        role_key=bytes(role_key),
        **addresses,
    )

    logger.info("Resolved onboarding config for chain %d: %s", chain_id, addresses)
    return resolved


@dataclass(slots=True, frozen=True)
class OnboardingEnvironment:
    """Settings read from environment variables."""

    #: JSON-RPC endpoint
    rpc_url: str

    #: Operator private key, 0x prefixed
    private_key: str

    p2p_api_url: str

    p2p_api_token: Optional[str] = None

    def __repr__(self):
        # Never print the key
        return f"<OnboardingEnvironment rpc:{self.rpc_url[0:24]}... api:{self.p2p_api_url}>"


def load_env(environ: dict | None = None) -> OnboardingEnvironment:
    """Read onboarding settings from the environment.

    - ``RPC_URL``: required
    - ``PRIVATE_KEY``: required, the operator key
    - ``P2P_API_URL``: optional
    - ``P2P_API_TOKEN``: optional

    :raise ConfigurationError:
        A required variable is missing.
    """
    if environ is None:
        environ = os.environ

    missing = [name for name in ("RPC_URL", "PRIVATE_KEY") if not environ.get(name)]
    if missing:
        raise ConfigurationError(f"Missing environment variables: {', '.join(missing)}", context={"missing": missing})

    private_key = environ["PRIVATE_KEY"].strip()
    if not private_key.startswith("0x"):
        private_key = "0x" + private_key

    return OnboardingEnvironment(
        rpc_url=environ["RPC_URL"].strip(),
        private_key=private_key,
        p2p_api_url=environ.get("P2P_API_URL") or P2P_API_URL,
        p2p_api_token=environ.get("P2P_API_TOKEN") or None,
    )
