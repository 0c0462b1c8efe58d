"""Shared fixtures.

Most tests run without a node: chain collaborators are replaced
with :py:class:`unittest.mock.Mock` objects.
"""

from unittest.mock import Mock

import pytest
from eth_account import Account
from web3 import Web3

from p2p_onboarding.hotwallet import HotWallet

#: Anvil default account #0, never holds real funds
OPERATOR_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

#: Base mainnet
BASE_CHAIN_ID = 8453

SAFE_ADDRESS = "0x1111111111111111111111111111111111111111"

CLIENT_ADDRESS = "0xA000000000000000000000000000000000000001"


@pytest.fixture()
def web3() -> Web3:
    """Web3 without a provider, for ABI encoding only."""
    return Web3()


@pytest.fixture()
def operator() -> HotWallet:
    """Operator wallet with a synced nonce."""
    wallet = HotWallet(Account.from_key(OPERATOR_PRIVATE_KEY))
    wallet.current_nonce = 10
    return wallet


@pytest.fixture()
def fake_web3() -> Mock:
    """Stand-in for a connected Web3 on Base."""
    web3 = Mock()
    web3.eth.chain_id = BASE_CHAIN_ID
    web3.eth.get_transaction_count.return_value = 10
    return web3


@pytest.fixture()
def safe_address() -> str:
    return Web3.to_checksum_address(SAFE_ADDRESS)
