"""ERC-20 transfers in and out of a client Safe.

- Into the Safe: a plain ``transfer()`` from the operator
- Out of the Safe: ``transfer()`` executed by the Safe itself,
  through the full Safe transaction protocol
"""

import logging
from typing import Callable

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from p2p_onboarding.abi import encode_with_signature, get_deployed_contract
from p2p_onboarding.confirmation import wait_transaction_success
from p2p_onboarding.errors import ExecutionError
from p2p_onboarding.hotwallet import HotWallet
from p2p_onboarding.safe.execute import execute_safe_transaction, prepare_safe_transaction


logger = logging.getLogger(__name__)


ERC20_TRANSFER_SIGNATURE = "transfer(address,uint256)"


def transfer_erc20_to_safe(
    web3: Web3,
    wallet: HotWallet,
    token: HexAddress | str,
    safe_address: HexAddress | str,
    amount: int,
    log: Callable[[str], None] | None = None,
) -> HexBytes:
    """Send tokens from the operator to a Safe.

    :param amount:
        Raw token units

    :return:
        Transaction hash
    """
    log = log or logger.info
    assert type(amount) == int and amount >= 0, f"Bad amount {amount}"

    erc20 = get_deployed_contract(web3, "erc20/ERC20.json", token)
    safe_address = Web3.to_checksum_address(safe_address)

    log(f"Transferring {amount} raw units of {erc20.address} from {wallet.address} to Safe {safe_address}")
    try:
        tx_hash = wallet.transact_and_broadcast_with_contract(erc20.functions.transfer(safe_address, amount))
    except Exception as e:
        raise ExecutionError(
            f"Could not submit transfer to Safe: {e}",
            step="transfer_to_safe",
            context={"token": erc20.address, "safe": safe_address, "amount": amount},
        ) from e
    wait_transaction_success(web3, tx_hash, step="transfer_to_safe")
    log(f"Transfer to Safe confirmed {tx_hash.hex()}")
    return tx_hash


def transfer_erc20_from_safe(
    web3: Web3,
    wallet: HotWallet,
    token: HexAddress | str,
    safe_address: HexAddress | str,
    amount: int,
    receiver: HexAddress | str | None = None,
    log: Callable[[str], None] | None = None,
) -> HexBytes:
    """Send tokens from a Safe, executed by the operator as the Safe owner.

    :param receiver:
        Token receiver. Defaults to the operator.

    :return:
        Transaction hash of the ``execTransaction()`` call
    """
    log = log or logger.info
    assert type(amount) == int and amount >= 0, f"Bad amount {amount}"

    token = Web3.to_checksum_address(token)
    receiver = Web3.to_checksum_address(receiver or wallet.address)

    data = encode_with_signature(ERC20_TRANSFER_SIGNATURE, [receiver, amount])
    tx = prepare_safe_transaction(web3, safe_address, to=token, data=data)

    log(f"Transferring {amount} raw units of {token} from Safe {safe_address} to {receiver}")
    return execute_safe_transaction(web3, wallet, safe_address, tx, step="transfer_from_safe", log=log)
