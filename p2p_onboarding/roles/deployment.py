"""Zodiac Roles modifier deployment through ``ModuleProxyFactory``.

The Roles module is deployed as an EIP-1167 minimal proxy by Zodiac
``ModuleProxyFactory.deployModule()``. The factory uses CREATE2, so the module
address is known before deployment. We need it before deployment:
the permission calls batched in the same Safe transaction target it.

- `ModuleProxyFactory source <https://github.com/gnosisguild/zodiac/blob/master/contracts/factory/ModuleProxyFactory.sol>`__
- `Roles v2 <https://github.com/gnosisguild/zodiac-modifier-roles>`__
"""

import logging
from dataclasses import dataclass

from eth_abi import encode
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from p2p_onboarding.abi import encode_with_signature
from p2p_onboarding.errors import AddressResolutionError
from p2p_onboarding.safe.multisend import BatchedCall


logger = logging.getLogger(__name__)


#: Roles.setUp(bytes initParams)
ROLES_SETUP_SIGNATURE = "setUp(bytes)"

#: ModuleProxyFactory.deployModule()
DEPLOY_MODULE_SIGNATURE = "deployModule(address,bytes,uint256)"

#: EIP-1167 minimal proxy creation code, before and after the master copy address.
#:
#: Same as ``ModuleProxyFactory.createProxy()``.
MINIMAL_PROXY_PREFIX = HexBytes("0x602d8060093d393df3363d3d373d3d3d363d73")
MINIMAL_PROXY_SUFFIX = HexBytes("0x5af43d82803e903d91602b57fd5bf3")


@dataclass(slots=True, frozen=True)
class RolesModuleDeployment:
    """Predicted Roles module and the not yet submitted deployment call."""

    #: CREATE2 address the module will have
    roles_address: HexAddress

    #: ``deployModule()`` call against the module proxy factory
    deployment_call: BatchedCall

    salt_nonce: int

    #: ``setUp(bytes)`` payload
    initializer: HexBytes

    master_copy: HexAddress

    factory: HexAddress


def resolve_address(name: str, override: HexAddress | str | None, records: dict, chain_id: int) -> HexAddress:
    """Pick an explicit address or the deployment record for the chain.

    :param name:
        Field name, e.g. ``roles_master_copy``

    :param override:
        Caller given address, wins if set

    :param records:
        Chain id -> name -> address

    :raise AddressResolutionError:
        Neither override nor record exists.
    """
    if override:
        return Web3.to_checksum_address(override)

    address = records.get(chain_id, {}).get(name)
    if not address:
        raise AddressResolutionError(
            f"No address for {name} on chain {chain_id}. Pass it explicitly in the onboarding config.",
            context={"field": name, "chain_id": chain_id},
        )

    return Web3.to_checksum_address(address)


def encode_roles_setup_initializer(
    owner: HexAddress | str,
    avatar: HexAddress | str,
    target: HexAddress | str,
) -> HexBytes:
    """Encode ``Roles.setUp(abi.encode(owner, avatar, target))``.

    For onboarding all three are the client Safe.
    """
    init_params = encode(
        ["address", "address", "address"],
        [Web3.to_checksum_address(owner), Web3.to_checksum_address(avatar), Web3.to_checksum_address(target)],
    )
    return HexBytes(encode_with_signature(ROLES_SETUP_SIGNATURE, [init_params]))


def calculate_module_proxy_address(
    factory: HexAddress | str,
    master_copy: HexAddress | str,
    initializer: bytes,
    salt_nonce: int,
) -> HexAddress:
    """Predict the address ``ModuleProxyFactory.deployModule()`` gives a module.

    Pure function, no chain access.

    - ``salt = keccak256(abi.encodePacked(keccak256(initializer), saltNonce))``
    - ``address = keccak256(0xff ++ factory ++ salt ++ keccak256(creation code))[12:]``

    :return:
        Checksummed module address
    """
    assert 0 <= salt_nonce < 2**256, f"Salt nonce out of uint256 range: {salt_nonce}"
    factory = Web3.to_checksum_address(factory)
    master_copy = Web3.to_checksum_address(master_copy)

    salt = Web3.keccak(Web3.keccak(bytes(initializer)) + salt_nonce.to_bytes(32, "big"))
    creation_code = MINIMAL_PROXY_PREFIX + HexBytes(master_copy) + MINIMAL_PROXY_SUFFIX
    digest = Web3.keccak(b"\xff" + HexBytes(factory) + salt + Web3.keccak(creation_code))
    return Web3.to_checksum_address(digest[12:])


def derive_roles_salt_nonce(safe_address: HexAddress | str, safe_nonce: int) -> int:
    """Default salt nonce for the Roles module of a Safe.

    Derived from the Safe address and its current nonce,
    so a repeated permission setup on the same Safe does not collide
    with an already deployed module.
    """
    digest = Web3.keccak(encode(["address", "uint256"], [Web3.to_checksum_address(safe_address), safe_nonce]))
    return int.from_bytes(digest, "big")


def prepare_roles_module_deployment(
    safe_address: HexAddress | str,
    factory: HexAddress | str,
    master_copy: HexAddress | str,
    salt_nonce: int,
) -> RolesModuleDeployment:
    """Predict the Roles module address and build its deployment call.

    The Safe is the owner, avatar and target of the module.
    """
    safe_address = Web3.to_checksum_address(safe_address)
    factory = Web3.to_checksum_address(factory)
    master_copy = Web3.to_checksum_address(master_copy)

    initializer = encode_roles_setup_initializer(safe_address, safe_address, safe_address)
    roles_address = calculate_module_proxy_address(factory, master_copy, initializer, salt_nonce)

    deployment_call = BatchedCall(
        to=factory,
        data=encode_with_signature(DEPLOY_MODULE_SIGNATURE, [master_copy, bytes(initializer), salt_nonce]),
    )

    logger.info("Predicted Roles module for Safe %s at %s, salt nonce %d", safe_address, roles_address, salt_nonce)

    return RolesModuleDeployment(
        roles_address=roles_address,
        deployment_call=deployment_call,
        salt_nonce=salt_nonce,
        initializer=initializer,
        master_copy=master_copy,
        factory=factory,
    )
