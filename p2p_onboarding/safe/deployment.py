"""Deploy 1-of-1 Safe multisig wallets.

- We call ``SafeProxyFactory.createProxyWithNonce()`` directly instead of
  using the Safe SDK, so that the deployment uses our managed operator nonce

- The Safe address is read from the ``ProxyCreation`` event of the receipt.
  We do not pre-compute it: the salt is random per run and the factory
  version decides the event layout

Safe source code:

- https://github.com/safe-global/safe-smart-account/blob/v1.3.0/contracts/proxies/GnosisSafeProxyFactory.sol
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.types import TxReceipt

from p2p_onboarding.abi import ZERO_ADDRESS_STR, encode_with_signature, get_deployed_contract
from p2p_onboarding.confirmation import wait_transaction_success
from p2p_onboarding.errors import AccountCreationError, ExecutionError
from p2p_onboarding.hotwallet import HotWallet


logger = logging.getLogger(__name__)


#: Safe.setup() signature
SAFE_SETUP_SIGNATURE = "setup(address[],uint256,address,bytes,address,address,uint256,address)"

#: keccak256("ProxyCreation(address,address)")
PROXY_CREATION_TOPIC = Web3.keccak(text="ProxyCreation(address,address)")


@dataclass(slots=True, frozen=True)
class SafeDeployment:
    """A freshly deployed Safe."""

    #: Safe proxy address, from the ProxyCreation event
    safe_address: HexAddress

    #: The only owner, threshold is 1
    owner: HexAddress

    #: Transaction hash of createProxyWithNonce()
    tx_hash: HexBytes

    #: CREATE2 salt nonce we used
    salt_nonce: int

    singleton: HexAddress

    proxy_factory: HexAddress


def encode_safe_setup_initializer(owner: HexAddress | str) -> bytes:
    """Encode ``Safe.setup()`` for a single owner, threshold 1 Safe.

    No setup delegatecall, no fallback handler, no deployment payment.
    """
    owner = Web3.to_checksum_address(owner)
    return encode_with_signature(
        SAFE_SETUP_SIGNATURE,
        [
            [owner],
            1,
            ZERO_ADDRESS_STR,
            b"",
            ZERO_ADDRESS_STR,
            ZERO_ADDRESS_STR,
            0,
            ZERO_ADDRESS_STR,
        ],
    )


def generate_safe_salt_nonce() -> int:
    """Generate a fresh salt nonce for a new Safe.

    Millisecond timestamp in the upper bits, random in the lower 32 bits,
    so two runs do not collide.
    """
    return (int(time.time() * 1000) << 32) | secrets.randbelow(2**32)


def extract_safe_address(receipt: TxReceipt, proxy_factory: HexAddress | str) -> HexAddress | None:
    """Extract the new Safe address from a ``createProxyWithNonce()`` receipt.

    - Safe v1.3.0 factory emits ``ProxyCreation(address proxy, address singleton)``
      with the proxy in the log data

    - Safe v1.4.1 factory indexes the proxy, so it is in the second topic

    - Fall back to the receipt ``contractAddress`` field if the event is absent

    :return:
        Checksummed Safe address or ``None`` if the receipt does not tell
    """
    factory = proxy_factory.lower()
    for log in receipt["logs"]:
        if log["address"].lower() != factory:
            continue

        topics = log["topics"]
        if not topics or HexBytes(topics[0]) != PROXY_CREATION_TOPIC:
            continue

        if len(topics) >= 2:
            raw = HexBytes(topics[1])
        else:
            raw = HexBytes(log["data"])[0:32]

        if len(raw) != 32:
            continue

        return Web3.to_checksum_address(raw[12:32])

    contract_address = receipt.get("contractAddress")
    if contract_address:
        return Web3.to_checksum_address(contract_address)

    return None


def describe_receipt_logs(receipt: TxReceipt) -> list[str]:
    """Human readable log summary for diagnostics."""
    lines = []
    for idx, log in enumerate(receipt["logs"]):
        topic0 = HexBytes(log["topics"][0]).hex() if log["topics"] else "-"
        lines.append(f"#{idx} address={log['address']} topic0={topic0}")
    return lines


def deploy_safe(
    web3: Web3,
    wallet: HotWallet,
    owner: HexAddress | str,
    singleton: HexAddress | str,
    proxy_factory: HexAddress | str,
    salt_nonce: int | None = None,
    log: Callable[[str], None] | None = None,
) -> SafeDeployment:
    """Deploy a new 1-of-1 Safe.

    - A new Safe is created on every call, there is no deduplication

    :param wallet:
        Operator wallet paying for the deployment. Nonce must be synced.

    :param owner:
        The only Safe owner

    :param salt_nonce:
        CREATE2 salt nonce. Random if not given.

    :param log:
        Progress message sink

    :raise AccountCreationError:
        The transaction was mined, but we could not find the Safe address.

    :raise ExecutionError:
        The deployment transaction was rejected or reverted.
    """
    log = log or logger.info

    assert type(owner) == str and owner.startswith("0x"), f"owner must be a hex address, got {owner}"
    owner = Web3.to_checksum_address(owner)
    singleton = Web3.to_checksum_address(singleton)
    proxy_factory = Web3.to_checksum_address(proxy_factory)

    if salt_nonce is None:
        salt_nonce = generate_safe_salt_nonce()

    initializer = encode_safe_setup_initializer(owner)
    factory = get_deployed_contract(web3, "safe/SafeProxyFactory.json", proxy_factory)

    log(f"Deploying Safe for owner {owner} using singleton {singleton}, factory {proxy_factory}, salt nonce {salt_nonce}")
    bound_func = factory.functions.createProxyWithNonce(singleton, initializer, salt_nonce)
    try:
        tx_hash = wallet.transact_and_broadcast_with_contract(bound_func)
    except Exception as e:
        raise ExecutionError(
            f"Could not submit Safe deployment: {e}",
            step="deploy_safe",
            context={"proxy_factory": proxy_factory, "singleton": singleton, "owner": owner, "salt_nonce": salt_nonce},
        ) from e
    log(f"Safe deployment tx hash {tx_hash.hex()}")

    receipt = wait_transaction_success(web3, tx_hash, step="deploy_safe")

    safe_address = extract_safe_address(receipt, proxy_factory)
    if safe_address is None:
        log_lines = describe_receipt_logs(receipt)
        raise AccountCreationError(
            "ProxyCreation event not found in Safe deployment receipt. Verify the Safe proxy factory and singleton addresses.",
            step="deploy_safe",
            context={
                "tx_hash": tx_hash.hex(),
                "proxy_factory": proxy_factory,
                "singleton": singleton,
                "owner": owner,
                "block_number": receipt.get("blockNumber"),
                "logs": log_lines,
            },
        )

    log(f"Safe deployed at {safe_address}")

    return SafeDeployment(
        safe_address=safe_address,
        owner=owner,
        tx_hash=tx_hash,
        salt_nonce=salt_nonce,
        singleton=singleton,
        proxy_factory=proxy_factory,
    )
