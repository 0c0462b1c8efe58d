"""Prepare, sign and execute Safe transactions.

Onboarding always acts as the sole owner of a 1-of-1 Safe,
so the signature is an approved-hash signature built from the owner address
and the operator EOA submitting ``execTransaction()`` must be that owner.

Example:

.. code-block:: python

    tx = prepare_safe_transaction(web3, safe_address, to=multisend, data=payload, operation=MultiSendOperation.DELEGATE_CALL)
    tx_hash = execute_safe_transaction(web3, wallet, safe_address, tx)
"""

import logging
from typing import Callable

from eth_typing import HexAddress
from hexbytes import HexBytes
from safe_eth.safe.multi_send import MultiSendOperation
from web3 import Web3
from web3.contract.contract import Contract
from web3.logs import DISCARD
from web3.types import TxReceipt

from p2p_onboarding.abi import get_deployed_contract
from p2p_onboarding.confirmation import wait_transaction_success
from p2p_onboarding.errors import ConfigurationError, ExecutionError, OnboardingError
from p2p_onboarding.hotwallet import HotWallet
from p2p_onboarding.read_retry import read_with_transient_retry
from p2p_onboarding.safe.tx import (
    PreparedSafeTransaction,
    SafeTransactionExecution,
    SafeTransactionState,
    build_approved_hash_signature,
    verify_prepared_transaction_hash,
)


logger = logging.getLogger(__name__)


def fetch_safe_contract(web3: Web3, safe_address: HexAddress | str) -> Contract:
    """Get a Safe contract proxy."""
    return get_deployed_contract(web3, "safe/Safe.json", safe_address)


def fetch_safe_nonce(web3: Web3, safe_address: HexAddress | str) -> int:
    """Read the Safe replay protection counter.

    Retries when the node has not yet seen a freshly deployed Safe.

    :raise TransientReadError:
        Safe still returns no data after the retries.
    """
    safe = fetch_safe_contract(web3, safe_address)
    return read_with_transient_retry(
        lambda: safe.functions.nonce().call(),
        description=f"Safe {safe.address} nonce()",
    )


def check_sole_owner(web3: Web3, safe_address: HexAddress | str, owner: HexAddress | str):
    """Check the operator can sign for the Safe alone.

    Approved-hash signatures from a single owner are only enough
    when the owner is the only one and the threshold is 1.

    :raise ConfigurationError:
        The Safe has other owners, a higher threshold, or the operator is not an owner.
    """
    safe = fetch_safe_contract(web3, safe_address)
    owners = read_with_transient_retry(
        lambda: safe.functions.getOwners().call(),
        description=f"Safe {safe.address} getOwners()",
    )
    threshold = read_with_transient_retry(
        lambda: safe.functions.getThreshold().call(),
        description=f"Safe {safe.address} getThreshold()",
    )
    owners = [Web3.to_checksum_address(o) for o in owners]
    if owners != [Web3.to_checksum_address(owner)] or threshold != 1:
        raise ConfigurationError(
            f"Safe {safe.address} is not a 1-of-1 Safe owned by the operator {owner}",
            context={"safe": safe.address, "owners": owners, "threshold": threshold, "operator": owner},
        )


def prepare_safe_transaction(
    web3: Web3,
    safe_address: HexAddress | str,
    to: HexAddress | str,
    data: bytes,
    value: int = 0,
    operation: MultiSendOperation = MultiSendOperation.CALL,
    nonce: int | None = None,
    verify_hash: bool = True,
    execution: SafeTransactionExecution | None = None,
) -> PreparedSafeTransaction:
    """Build a Safe transaction and let the Safe compute its digest.

    - Gas refund fields are always zero

    - The digest comes from ``Safe.getTransactionHash()``, so
      it is exactly what ``execTransaction()`` checks the signature against

    :param nonce:
        Safe nonce to use. Read from the chain if not given.

    :param verify_hash:
        Recompute the digest locally and fail if it differs from the Safe answer.

    :param execution:
        Moved from ``unprepared`` to ``hash_computed`` when given

    :return:
        Transaction in the hash computed state
    """
    assert type(value) == int and value >= 0, f"Bad value {value}"
    assert isinstance(operation, MultiSendOperation), f"Got {type(operation)}"

    safe = fetch_safe_contract(web3, safe_address)

    if nonce is None:
        nonce = fetch_safe_nonce(web3, safe.address)

    draft = PreparedSafeTransaction(
        to=Web3.to_checksum_address(to),
        value=value,
        data=HexBytes(data),
        operation=operation,
        nonce=nonce,
        hash=HexBytes(b""),
    )

    safe_tx_hash = read_with_transient_retry(
        lambda: safe.functions.getTransactionHash(*draft.get_hash_args()).call(),
        description=f"Safe {safe.address} getTransactionHash()",
    )

    tx = PreparedSafeTransaction(
        to=draft.to,
        value=draft.value,
        data=draft.data,
        operation=draft.operation,
        nonce=draft.nonce,
        hash=HexBytes(safe_tx_hash),
    )

    if verify_hash:
        chain_id = web3.eth.chain_id
        if not verify_prepared_transaction_hash(chain_id, safe.address, tx):
            raise OnboardingError(
                "Safe transaction hash returned by the Safe does not match the locally computed EIP-712 hash",
                context={"safe": safe.address, "chain_id": chain_id, "safe_tx_hash": tx.hash.hex(), "nonce": nonce},
            )

    if execution is not None:
        execution.record_prepared(tx)

    logger.info("Prepared Safe %s transaction to %s, nonce %d, hash %s", safe.address, tx.to, nonce, tx.hash.hex())
    return tx


def check_execution_result(web3: Web3, safe_address: HexAddress | str, receipt: TxReceipt) -> bool:
    """Did the Safe report the inner call succeeded.

    ``execTransaction()`` with zero ``safeTxGas`` reverts when the inner call fails,
    but a Safe can still emit ``ExecutionFailure`` and not revert.

    :return:
        False if the Safe emitted ``ExecutionFailure``
    """
    safe = fetch_safe_contract(web3, safe_address)
    safe_logs = [log for log in receipt["logs"] if log["address"].lower() == safe.address.lower()]
    failures = safe.events.ExecutionFailure().process_receipt({**receipt, "logs": safe_logs}, errors=DISCARD)
    return len(failures) == 0


def execute_safe_transaction(
    web3: Web3,
    wallet: HotWallet,
    safe_address: HexAddress | str,
    tx: PreparedSafeTransaction,
    step: str = "execute_safe_transaction",
    log: Callable[[str], None] | None = None,
    execution: SafeTransactionExecution | None = None,
) -> HexBytes:
    """Sign and submit a prepared Safe transaction, then wait for it.

    - Signs with the approved-hash signature of the operator, who must
      be the only owner of the Safe

    - One submission, no fee bumping or resubmission

    :param wallet:
        Operator wallet, the sole Safe owner. The nonce must be synced.

    :param step:
        Onboarding step name for errors

    :param execution:
        Pass to observe the state transitions

    :raise ExecutionError:
        ``execTransaction()`` reverted or the Safe emitted ``ExecutionFailure``.

    :return:
        Transaction hash of the ``execTransaction()`` call
    """
    log = log or logger.info
    assert isinstance(tx, PreparedSafeTransaction), f"Got {type(tx)}"
    assert tx.hash, f"Safe transaction hash not computed: {tx}"

    safe = fetch_safe_contract(web3, safe_address)

    if execution is None:
        execution = SafeTransactionExecution(safe_address=safe.address)

    if execution.state == SafeTransactionState.unprepared:
        execution.record_prepared(tx)

    assert execution.transaction == tx, f"Execution tracks a different transaction: {execution.transaction}"

    signatures = build_approved_hash_signature(wallet.address)
    execution.signatures = signatures
    execution.move(SafeTransactionState.signed, f"approved hash by {wallet.address}")

    bound_func = safe.functions.execTransaction(*tx.get_exec_transaction_args(signatures))

    try:
        tx_hash = wallet.transact_and_broadcast_with_contract(bound_func)
    except Exception as e:
        execution.move(SafeTransactionState.failed, str(e))
        raise ExecutionError(
            f"Could not submit Safe transaction: {e}",
            step=step,
            context={"safe": safe.address, "safe_tx_hash": tx.hash.hex(), "safe_nonce": tx.nonce},
        ) from e

    execution.tx_hash = tx_hash
    execution.tx_nonce = wallet.current_nonce - 1
    execution.move(SafeTransactionState.submitted, tx_hash.hex())
    log(f"Submitted Safe {safe.address} transaction {tx.hash.hex()} as {tx_hash.hex()}")

    try:
        receipt = wait_transaction_success(web3, tx_hash, step=step)
    except ExecutionError as e:
        execution.move(SafeTransactionState.failed, e.revert_reason or "")
        raise e.with_step(step, safe=safe.address, safe_tx_hash=tx.hash.hex())

    if not check_execution_result(web3, safe.address, receipt):
        execution.move(SafeTransactionState.failed, "ExecutionFailure")
        raise ExecutionError(
            f"Safe {safe.address} reported ExecutionFailure for {tx.hash.hex()}",
            tx_hash=tx_hash.hex(),
            step=step,
            context={"safe": safe.address, "safe_tx_hash": tx.hash.hex(), "safe_nonce": tx.nonce},
        )

    execution.move(SafeTransactionState.confirmed, f"block {receipt['blockNumber']}")
    log(f"Safe transaction {tx.hash.hex()} confirmed in block {receipt['blockNumber']}")
    return tx_hash
