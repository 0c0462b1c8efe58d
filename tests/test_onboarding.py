"""Onboarding sequence with the chain replaced by an in-memory fake."""

from unittest.mock import Mock

import pytest
import requests
from hexbytes import HexBytes
from safe_eth.safe.multi_send import MultiSendOperation
from web3 import Web3

from p2p_onboarding.abi import get_function_selector_by_signature
from p2p_onboarding.config import OnboardingConfig
from p2p_onboarding.constants import P2P_BASE, P2P_ROLE_KEY, SAFE_V130_CANONICAL, ZODIAC_CANONICAL
from p2p_onboarding.errors import AccountCreationError, ConfigurationError, ExecutionError
from p2p_onboarding.onboarding import (
    OnboardingClient,
    OnboardingSession,
    TokenTransfer,
    TransferDirection,
    create_onboarding_client_from_env,
)
from p2p_onboarding.p2p.fees import FeeTerms
from p2p_onboarding.roles.permissions import decode_permission_rules
from p2p_onboarding.safe.deployment import SafeDeployment
from p2p_onboarding.safe.multisend import decode_multisend_call
from p2p_onboarding.safe.tx import PreparedSafeTransaction, SafeTransactionState, calculate_safe_tx_hash, verify_prepared_transaction_hash
from p2p_onboarding.transfer import transfer_erc20_to_safe

SAFE = "0x1111111111111111111111111111111111111111"
PREDICTED_PROXY = "0x5555555555555555555555555555555555555555"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
CLIENT_ADDRESS = "0xA000000000000000000000000000000000000001"


class FakeChain:
    """Records what the onboarding client submits."""

    def __init__(self):
        self.safe_nonce = 0
        self.deployments = []
        self.predictions = []
        self.submitted = []
        self.transfers = []
        self.fail_execution = False

    def deploy_safe(self, web3, wallet, owner, singleton, proxy_factory, salt_nonce=None, log=None):
        tx_nonce = wallet.allocate_nonce()
        self.deployments.append((owner, tx_nonce))
        return SafeDeployment(
            safe_address=Web3.to_checksum_address(SAFE),
            owner=owner,
            tx_hash=HexBytes(Web3.keccak(text=f"deploy-{tx_nonce}")),
            salt_nonce=salt_nonce or 1,
            singleton=singleton,
            proxy_factory=proxy_factory,
        )

    def check_sole_owner(self, web3, safe_address, owner):
        pass

    def fetch_safe_nonce(self, web3, safe_address):
        return self.safe_nonce

    def predict_p2p_proxy_address(self, web3, factory_address, client, fee_terms):
        self.predictions.append((factory_address, client, fee_terms))
        return Web3.to_checksum_address(PREDICTED_PROXY)

    def prepare_safe_transaction(self, web3, safe_address, to, data, value=0, operation=MultiSendOperation.CALL, nonce=None, verify_hash=True, execution=None):
        if nonce is None:
            nonce = self.safe_nonce
        tx = PreparedSafeTransaction(
            to=Web3.to_checksum_address(to),
            value=value,
            data=HexBytes(data),
            operation=operation,
            nonce=nonce,
            hash=calculate_safe_tx_hash(web3.eth.chain_id, safe_address, to, value, data, operation, nonce),
        )
        if execution is not None:
            execution.record_prepared(tx)
        return tx

    def execute_safe_transaction(self, web3, wallet, safe_address, tx, step="execute_safe_transaction", log=None, execution=None):
        tx_nonce = wallet.allocate_nonce()
        if self.fail_execution:
            raise ExecutionError("execution reverted: GS013", tx_hash="0xdead", revert_reason="GS013", step=step)
        self.submitted.append((step, tx, tx_nonce))
        if execution is not None:
            execution.move(SafeTransactionState.signed)
            execution.move(SafeTransactionState.submitted)
            execution.move(SafeTransactionState.confirmed)
        self.safe_nonce += 1
        return HexBytes(Web3.keccak(text=f"exec-{tx_nonce}"))

    def transfer_erc20_to_safe(self, web3, wallet, token, safe_address, amount, log=None):
        tx_nonce = wallet.allocate_nonce()
        self.transfers.append(("to_safe", token, safe_address, amount))
        return HexBytes(Web3.keccak(text=f"transfer-{tx_nonce}"))

    def transfer_erc20_from_safe(self, web3, wallet, token, safe_address, amount, receiver=None, log=None):
        tx_nonce = wallet.allocate_nonce()
        self.transfers.append(("from_safe", token, safe_address, amount))
        return HexBytes(Web3.keccak(text=f"transfer-{tx_nonce}"))


@pytest.fixture()
def chain(monkeypatch) -> FakeChain:
    chain = FakeChain()
    for name in (
        "deploy_safe",
        "check_sole_owner",
        "fetch_safe_nonce",
        "predict_p2p_proxy_address",
        "prepare_safe_transaction",
        "execute_safe_transaction",
        "transfer_erc20_to_safe",
        "transfer_erc20_from_safe",
    ):
        monkeypatch.setattr(f"p2p_onboarding.onboarding.{name}", getattr(chain, name))
    return chain


@pytest.fixture()
def messages() -> list[str]:
    return []


@pytest.fixture()
def unavailable_fee_source():
    def fetcher(client):
        raise ConnectionError("fee API down")

    return fetcher


@pytest.fixture()
def client(fake_web3, operator, chain, messages, unavailable_fee_source) -> OnboardingClient:
    config = OnboardingConfig(fee_terms_fetcher=unavailable_fee_source)
    return OnboardingClient(fake_web3, operator, config, log=messages.append)


def test_onboard_client(client: OnboardingClient, chain: FakeChain, operator, messages):
    """Owner is the operator, one Safe deployment and one batched setup transaction."""
    result = client.onboard_client()

    assert result.safe_address == Web3.to_checksum_address(SAFE)
    assert result.predicted_proxy_address == Web3.to_checksum_address(PREDICTED_PROXY)
    assert result.role_key == P2P_ROLE_KEY
    assert result.transactions.asset_transfers == []

    # Operator nonce read once, then allocated locally
    assert chain.deployments == [(operator.address, 10)]
    assert len(chain.submitted) == 1
    step, tx, tx_nonce = chain.submitted[0]
    assert step == "set_permissions"
    assert tx_nonce == 11
    assert result.transactions.roles_setup == HexBytes(Web3.keccak(text="exec-11"))

    # The setup transaction delegatecalls MultiSendCallOnly
    assert tx.to == SAFE_V130_CANONICAL["multisend_call_only"]
    assert tx.operation == MultiSendOperation.DELEGATE_CALL
    assert tx.nonce == 0

    calls = decode_multisend_call(tx.data)
    assert calls[0].to == ZODIAC_CANONICAL["module_proxy_factory"]
    assert all(c.to == result.roles_address for c in calls[1:-1])
    assert calls[-1].to == result.safe_address
    assert calls[-1].data[0:4] == get_function_selector_by_signature("enableModule(address)")
    assert len(decode_permission_rules(calls)) == 2

    assert any("Safe deployed at" in m for m in messages)


def test_permission_batch_steps(client: OnboardingClient, chain: FakeChain):
    """Deploy module, assign role, scope factory, scope proxy, enable module."""
    session = OnboardingSession()
    client.deploy_safe(session=session)
    result = client.set_permissions(session=session)

    assert [s.name for s in result.steps] == ["deploy_module", "assign_role", "scope_factory", "scope_proxy", "enable_module"]
    assert len(chain.submitted) == 1
    submitted_tx = chain.submitted[0][1]
    assert decode_multisend_call(submitted_tx.data) == result.get_batched_calls()
    assert session.roles_address == result.roles_address


def test_fee_source_unavailable(client: OnboardingClient, chain: FakeChain):
    """Proxy prediction uses the default fee terms."""
    result = client.onboard_client()
    assert result.fee_terms == FeeTerms(deposit_bps=0, profit_bps=9700)
    factory, predicted_for, fee_terms = chain.predictions[0]
    assert factory == P2P_BASE["p2p_superform_proxy_factory"]
    assert predicted_for == result.safe_address
    assert fee_terms == FeeTerms(0, 9700)


def test_fee_api_unreachable(fake_web3, operator, chain, monkeypatch):
    def fetch_fee_terms(client, api_url, api_token):
        raise requests.ConnectionError("Name or service not known")

    monkeypatch.setattr("p2p_onboarding.p2p.fees.fetch_fee_terms", fetch_fee_terms)
    client = OnboardingClient(fake_web3, operator)
    client.onboard_client()
    assert chain.predictions[0][2] == FeeTerms(0, 9700)


def test_set_permissions_twice(client: OnboardingClient, chain: FakeChain, fake_web3):
    """Each call is an independent transaction with its own digest and module."""
    first = client.set_permissions(safe_address=SAFE)
    second = client.set_permissions(safe_address=SAFE)

    assert len(chain.submitted) == 2
    assert first.tx_hash != second.tx_hash
    assert first.safe_transaction.nonce == 0
    assert second.safe_transaction.nonce == 1
    assert first.safe_transaction.hash != second.safe_transaction.hash
    assert first.roles_address != second.roles_address
    for result in (first, second):
        assert verify_prepared_transaction_hash(fake_web3.eth.chain_id, SAFE, result.safe_transaction)


def test_fixed_roles_salt(fake_web3, operator, chain, unavailable_fee_source):
    client = OnboardingClient(fake_web3, operator, OnboardingConfig(roles_salt_nonce=77, fee_terms_fetcher=unavailable_fee_source))
    result = client.set_permissions(safe_address=SAFE)
    assert result.roles.salt_nonce == 77


def test_set_permissions_failure_keeps_addresses(client: OnboardingClient, chain: FakeChain):
    """A failed setup leaves a deployed Safe that can be configured later."""
    chain.fail_execution = True

    with pytest.raises(ExecutionError) as exc_info:
        client.onboard_client()

    e = exc_info.value
    assert e.step == "set_permissions"
    assert e.revert_reason == "GS013"
    assert e.context["safe_address"] == Web3.to_checksum_address(SAFE)
    assert e.context["predicted_proxy_address"] == Web3.to_checksum_address(PREDICTED_PROXY)
    assert "roles_address" in e.context
    assert e.context["safe_tx_history"][0].startswith("unprepared -> hash_computed")

    # Resume from the failed step
    chain.fail_execution = False
    result = client.set_permissions(safe_address=e.context["safe_address"])
    assert result.safe_address == Web3.to_checksum_address(SAFE)


def test_deploy_failure(client: OnboardingClient, monkeypatch):
    def deploy_safe(*args, **kwargs):
        raise AccountCreationError("ProxyCreation event not found", step="deploy_safe", context={"tx_hash": "0xbeef"})

    monkeypatch.setattr("p2p_onboarding.onboarding.deploy_safe", deploy_safe)

    with pytest.raises(AccountCreationError) as exc_info:
        client.onboard_client()

    assert exc_info.value.step == "deploy_safe"
    assert exc_info.value.context["tx_hash"] == "0xbeef"
    assert "owner" in exc_info.value.context


def test_client_must_be_operator(client: OnboardingClient, chain: FakeChain):
    with pytest.raises(ConfigurationError):
        client.onboard_client(client_address="0xA000000000000000000000000000000000000001")
    assert chain.deployments == []


def test_set_permissions_needs_safe(client: OnboardingClient):
    with pytest.raises(ConfigurationError):
        client.set_permissions()


def test_onboard_with_transfers(client: OnboardingClient, chain: FakeChain):
    transfers = [
        TokenTransfer(token=USDC, amount="1_000_000"),
        TokenTransfer(token=USDC, amount=500, direction=TransferDirection.from_safe),
    ]
    result = client.onboard_client(transfers=transfers)

    assert chain.transfers == [
        ("to_safe", USDC, result.safe_address, 1_000_000),
        ("from_safe", USDC, result.safe_address, 500),
    ]
    assert len(result.transactions.asset_transfers) == 2


def test_token_transfer_normalises_input():
    transfer = TokenTransfer(token=USDC.lower(), amount="42", direction="from_safe")
    assert transfer.amount == 42
    assert transfer.token == USDC
    assert transfer.direction == TransferDirection.from_safe


def test_client_from_env_missing_variables():
    with pytest.raises(ConfigurationError):
        create_onboarding_client_from_env(environ={})


def test_setup_transaction_state_history(client: OnboardingClient, chain: FakeChain):
    result = client.onboard_client()

    execution = result.permissions.execution
    assert execution.state == SafeTransactionState.confirmed
    assert execution.transaction == result.permissions.safe_transaction
    assert execution.history[0].startswith("unprepared -> hash_computed")


def test_fee_terms_for_other_client(fake_web3, operator, chain):
    """Operator owns the Safe, fee terms come from the named client."""
    looked_up = []

    def fetcher(client):
        looked_up.append(client)
        return FeeTerms(deposit_bps=10, profit_bps=9000)

    client = OnboardingClient(fake_web3, operator, OnboardingConfig(fee_terms_fetcher=fetcher))
    result = client.onboard_client(fee_client_address=CLIENT_ADDRESS)

    assert looked_up == [Web3.to_checksum_address(CLIENT_ADDRESS)]
    assert result.fee_terms == FeeTerms(10, 9000)
    assert chain.deployments[0][0] == operator.address


def test_transfer_to_safe_rejected(client: OnboardingClient, operator, monkeypatch):
    """Rejected broadcast is reported as a failed step, with the Safe address."""

    def rejected(func, gas_limit=None, value=0):
        raise ValueError({"code": -32000, "message": "insufficient funds for gas * price + value"})

    monkeypatch.setattr("p2p_onboarding.onboarding.transfer_erc20_to_safe", transfer_erc20_to_safe)
    monkeypatch.setattr("p2p_onboarding.transfer.get_deployed_contract", lambda web3, fname, address: Mock(address=USDC))
    monkeypatch.setattr(operator, "transact_and_broadcast_with_contract", rejected)

    with pytest.raises(ExecutionError) as exc_info:
        client.transfer_asset_to_safe(USDC, 100, safe_address=SAFE)

    e = exc_info.value
    assert e.step == "transfer_to_safe"
    assert e.context["safe"] == Web3.to_checksum_address(SAFE)
    assert e.context["safe_address"] == Web3.to_checksum_address(SAFE)
