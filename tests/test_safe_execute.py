"""Safe transaction prepare and execute against a mocked Safe contract."""

from unittest.mock import Mock

import pytest
from hexbytes import HexBytes
from safe_eth.safe.multi_send import MultiSendOperation
from web3.exceptions import BadFunctionCallOutput

from p2p_onboarding.errors import ConfigurationError, ExecutionError, OnboardingError, TransientReadError
from p2p_onboarding.safe.execute import check_sole_owner, execute_safe_transaction, prepare_safe_transaction
from p2p_onboarding.safe.tx import SafeTransactionExecution, SafeTransactionState, build_approved_hash_signature, calculate_safe_tx_hash

MULTISEND = "0x40A2aCCbd92BCA938b02010E17A5b8929b49130D"

TX_HASH = HexBytes("0x" + "ab" * 32)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("p2p_onboarding.read_retry.time.sleep", lambda s: None)


@pytest.fixture()
def safe_contract(monkeypatch, safe_address) -> Mock:
    """Mocked Safe contract, computing digests like the real one does."""
    safe = Mock()
    safe.address = safe_address
    safe.functions.nonce.return_value.call.return_value = 4

    def get_transaction_hash(to, value, data, operation, safe_tx_gas, base_gas, gas_price, gas_token, refund_receiver, nonce):
        call = Mock()
        call.call.return_value = bytes(calculate_safe_tx_hash(8453, safe_address, to, value, data, MultiSendOperation(operation), nonce))
        return call

    safe.functions.getTransactionHash.side_effect = get_transaction_hash
    safe.events.ExecutionFailure.return_value.process_receipt.return_value = []
    monkeypatch.setattr("p2p_onboarding.safe.execute.fetch_safe_contract", lambda web3, address: safe)
    return safe


@pytest.fixture()
def receipts(monkeypatch) -> list:
    waited = []

    def wait_transaction_success(web3, tx_hash, step, timeout=180):
        waited.append((tx_hash, step))
        return {"status": 1, "blockNumber": 100, "logs": []}

    monkeypatch.setattr("p2p_onboarding.safe.execute.wait_transaction_success", wait_transaction_success)
    return waited


@pytest.fixture()
def wallet(operator) -> Mock:
    wallet = Mock()
    wallet.address = operator.address
    wallet.current_nonce = 11
    wallet.transact_and_broadcast_with_contract.return_value = TX_HASH
    return wallet


def test_prepare_safe_transaction(fake_web3, safe_address, safe_contract):
    tx = prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"\x01\x02", operation=MultiSendOperation.DELEGATE_CALL)
    assert tx.nonce == 4
    assert tx.operation == MultiSendOperation.DELEGATE_CALL
    assert tx.safe_tx_gas == tx.base_gas == tx.gas_price == 0
    assert tx.hash == calculate_safe_tx_hash(8453, safe_address, MULTISEND, 0, b"\x01\x02", MultiSendOperation.DELEGATE_CALL, 4)


def test_prepare_safe_transaction_retries_nonce(fake_web3, safe_address, safe_contract):
    """A freshly deployed Safe may not be visible on the first reads."""
    no_data = BadFunctionCallOutput("Could not transact with/call contract function, is contract deployed correctly and chain synced?")
    safe_contract.functions.nonce.return_value.call.side_effect = [no_data, no_data, 0]
    tx = prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"")
    assert tx.nonce == 0
    assert safe_contract.functions.nonce.return_value.call.call_count == 3


def test_prepare_safe_transaction_nonce_never_visible(fake_web3, safe_address, safe_contract):
    safe_contract.functions.nonce.return_value.call.side_effect = BadFunctionCallOutput("returned no data")
    with pytest.raises(TransientReadError):
        prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"")


def test_prepare_safe_transaction_hash_mismatch(fake_web3, safe_address, safe_contract):
    safe_contract.functions.getTransactionHash.side_effect = None
    safe_contract.functions.getTransactionHash.return_value.call.return_value = b"\x00" * 32
    with pytest.raises(OnboardingError, match="does not match"):
        prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"")


def test_execute_safe_transaction(fake_web3, safe_address, safe_contract, receipts, wallet):
    tx = prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"\x01", operation=MultiSendOperation.DELEGATE_CALL)
    execution = SafeTransactionExecution(safe_address=safe_address, transaction=tx)

    tx_hash = execute_safe_transaction(fake_web3, wallet, safe_address, tx, step="set_permissions", execution=execution)

    assert tx_hash == TX_HASH
    assert wallet.transact_and_broadcast_with_contract.call_count == 1
    args = safe_contract.functions.execTransaction.call_args.args
    assert args[0] == MULTISEND
    assert args[3] == 1
    assert args[-1] == build_approved_hash_signature(wallet.address)
    assert receipts == [(TX_HASH, "set_permissions")]
    assert execution.state == SafeTransactionState.confirmed
    assert execution.tx_nonce == 10
    assert [h.split(" ")[2] for h in execution.history] == ["hash_computed", "signed", "submitted", "confirmed"]


def test_execute_safe_transaction_execution_failure(fake_web3, safe_address, safe_contract, receipts, wallet):
    """Safe reporting ExecutionFailure fails the step, and nothing is resubmitted."""
    safe_contract.events.ExecutionFailure.return_value.process_receipt.return_value = [{"event": "ExecutionFailure"}]
    tx = prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"\x01")
    execution = SafeTransactionExecution(safe_address=safe_address, transaction=tx)

    with pytest.raises(ExecutionError) as exc_info:
        execute_safe_transaction(fake_web3, wallet, safe_address, tx, step="set_permissions", execution=execution)

    assert exc_info.value.step == "set_permissions"
    assert exc_info.value.tx_hash == TX_HASH.hex()
    assert execution.state == SafeTransactionState.failed
    assert wallet.transact_and_broadcast_with_contract.call_count == 1


def test_execute_safe_transaction_revert(fake_web3, safe_address, safe_contract, wallet, monkeypatch):
    def reverted(web3, tx_hash, step, timeout=180):
        raise ExecutionError("reverted", tx_hash=tx_hash.hex(), revert_reason="GS013", step=step)

    monkeypatch.setattr("p2p_onboarding.safe.execute.wait_transaction_success", reverted)
    tx = prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"\x01")

    with pytest.raises(ExecutionError) as exc_info:
        execute_safe_transaction(fake_web3, wallet, safe_address, tx, step="set_permissions")

    assert exc_info.value.revert_reason == "GS013"
    assert exc_info.value.context["safe"] == safe_address


def test_check_sole_owner(fake_web3, safe_address, safe_contract, operator):
    safe_contract.functions.getOwners.return_value.call.return_value = [operator.address]
    safe_contract.functions.getThreshold.return_value.call.return_value = 1
    check_sole_owner(fake_web3, safe_address, operator.address)

    safe_contract.functions.getOwners.return_value.call.return_value = [operator.address, MULTISEND]
    with pytest.raises(ConfigurationError):
        check_sole_owner(fake_web3, safe_address, operator.address)


def test_prepare_records_hash_computed(fake_web3, safe_address, safe_contract, receipts, wallet):
    """State goes through every step when the same execution is passed to prepare and execute."""
    execution = SafeTransactionExecution(safe_address=safe_address)

    tx = prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"\x01", execution=execution)
    assert execution.state == SafeTransactionState.hash_computed
    assert execution.transaction == tx

    execute_safe_transaction(fake_web3, wallet, safe_address, tx, execution=execution)
    assert execution.state == SafeTransactionState.confirmed
    assert execution.history[0] == f"unprepared -> hash_computed {tx.hash.hex()}"
    assert len(execution.history) == 4


def test_execute_safe_transaction_broadcast_rejected(fake_web3, safe_address, safe_contract, receipts, wallet):
    wallet.transact_and_broadcast_with_contract.side_effect = ValueError({"code": -32000, "message": "insufficient funds for gas * price + value"})
    execution = SafeTransactionExecution(safe_address=safe_address)
    tx = prepare_safe_transaction(fake_web3, safe_address, to=MULTISEND, data=b"\x01", execution=execution)

    with pytest.raises(ExecutionError) as exc_info:
        execute_safe_transaction(fake_web3, wallet, safe_address, tx, step="set_permissions", execution=execution)

    assert exc_info.value.step == "set_permissions"
    assert exc_info.value.context["safe_nonce"] == 4
    assert execution.state == SafeTransactionState.failed
    assert receipts == []
