"""Wait for transaction receipts and explain failures.

We never re-broadcast or bump fees here. A transaction that does
not confirm within the timeout is surfaced to the caller as is.
"""

import logging

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError
from web3.types import TxReceipt

from p2p_onboarding.errors import ExecutionError


logger = logging.getLogger(__name__)


#: How long we wait for a single transaction to be mined, seconds
DEFAULT_CONFIRMATION_TIMEOUT = 180


def fetch_transaction_revert_reason(
    web3: Web3,
    tx_hash: HexBytes,
    unknown_error_message="<could not extract the revert reason>",
) -> str:
    """Gets a transaction revert reason by replaying it.

    Replays the transaction against the state at the block before it was mined.
    Needs an archive node for old transactions, but onboarding reads
    the reason right after the failure.

    :return:
        The revert reason or the placeholder message if we could not extract the reason.
    """
    tx = web3.eth.get_transaction(tx_hash)

    replay_tx = {
        "to": tx["to"],
        "from": tx["from"],
        "value": tx["value"],
        "data": tx["input"],
        "gas": tx["gas"],
    }

    try:
        web3.eth.call(replay_tx, tx["blockNumber"] - 1)
    except ContractLogicError as e:
        return str(e.args[0])
    except Web3RPCError as e:
        # Pruned node cannot replay, e.g. missing trie node
        logger.warning("Could not replay %s for the revert reason: %s", tx_hash.hex(), e)
        return unknown_error_message
    except ValueError as e:
        logger.debug("Revert exception result is: %s", e)
        data = e.args[0] if e.args else e
        if isinstance(data, dict):
            return data.get("message", unknown_error_message)
        return str(data)

    return unknown_error_message


def wait_transaction_success(
    web3: Web3,
    tx_hash: HexBytes,
    step: str,
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
) -> TxReceipt:
    """Block until the transaction is mined and check it did not revert.

    :param step:
        Onboarding step name, for the error context

    :raise ExecutionError:
        The transaction reverted or was not mined within the timeout.

    :return:
        Transaction receipt
    """
    try:
        receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
    except TimeExhausted as e:
        raise ExecutionError(
            f"Transaction {tx_hash.hex()} was not confirmed within {timeout} seconds",
            tx_hash=tx_hash.hex(),
            step=step,
        ) from e

    if receipt["status"] == 0:
        revert_reason = fetch_transaction_revert_reason(web3, tx_hash)
        raise ExecutionError(
            f"Transaction {tx_hash.hex()} reverted: {revert_reason}",
            tx_hash=tx_hash.hex(),
            revert_reason=revert_reason,
            step=step,
            context={"block_number": receipt["blockNumber"], "gas_used": receipt["gasUsed"]},
        )

    logger.info("Transaction %s confirmed in block %d", tx_hash.hex(), receipt["blockNumber"])
    return receipt
