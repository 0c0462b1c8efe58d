"""Operator hot wallet with in-process nonce tracking.

- The operator key signs every transaction of an onboarding run

- The transaction nonce is read once per run and then allocated locally,
  so we do not race the node when broadcasting several transactions
  in quick succession
"""

import logging
from pprint import pformat
from typing import NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract.contract import ContractFunction


logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """Signed transaction and the nonce we allocated for it.

    Retains the unsigned source, so we can diagnose broadcast failures.
    """

    raw_transaction: HexBytes

    hash: HexBytes

    #: What was the source nonce for this transaction
    nonce: int

    #: Signer address
    address: str

    #: Unencoded transaction data as a dict.
    source: Optional[dict] = None

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} nonce:{self.nonce}>"


class HotWallet:
    """Operator wallet for signing onboarding transactions.

    - Maintains a plain text private key of an Ethereum address in the process memory
      using :py:class:`eth_account.signers.local.LocalAccount` and a nonce counter

    - Call :py:meth:`sync_nonce` once at the start of a run, after that
      every broadcast allocates the next nonce locally

    Example:

    .. code-block:: python

        wallet = HotWallet.from_private_key(os.environ["PRIVATE_KEY"])
        wallet.sync_nonce(web3)
        tx_hash = wallet.transact_and_broadcast_with_contract(safe.functions.enableModule(module))

    .. note ::

        This class is not thread safe. One onboarding run owns one wallet nonce counter.
        Nothing else may broadcast from the same key during the run.
    """

    def __init__(self, account: LocalAccount):
        """Create a hot wallet from a local account."""
        self.account = account
        self.current_nonce: Optional[int] = None

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        """Ethereum address of the wallet."""
        return self.account.address

    def sync_nonce(self, web3: Web3, block_identifier="pending"):
        """Initialise the current nonce from the on-chain data.

        :param block_identifier:
            Use pending, so that transactions still in the mempool are counted
        """
        new_nonce = web3.eth.get_transaction_count(self.account.address, block_identifier)
        if self.current_nonce is not None and new_nonce < self.current_nonce:
            # Load balanced node gave us a stale answer
            logger.warning(
                "Nonce sync failed, read onchain nonce %d that is older than our current nonce: %d",
                new_nonce,
                self.current_nonce,
            )
            return
        self.current_nonce = new_nonce
        logger.info("Synced nonce for %s to %d", self.account.address, self.current_nonce)

    def allocate_nonce(self) -> int:
        """Get the next free available nonce to be used with a transaction.

        Increase the nonce counter.
        """
        assert self.current_nonce is not None, f"Nonce is not yet synced from the blockchain: {self}"
        nonce = self.current_nonce
        self.current_nonce += 1
        return nonce

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransactionWithNonce:
        """Signs a transaction and allocates a nonce for it.

        :param tx:
            Ethereum transaction data as a dict.
            This is modified in-place to include nonce.
        """
        assert type(tx) == dict
        assert "nonce" not in tx, f"Nonce already set: {tx}"
        tx["nonce"] = self.allocate_nonce()
        try:
            _signed = self.account.sign_transaction(tx)
        except Exception:
            self.current_nonce = tx["nonce"]
            raise
        return SignedTransactionWithNonce(
            raw_transaction=HexBytes(_signed.raw_transaction),
            hash=HexBytes(_signed.hash),
            nonce=tx["nonce"],
            address=self.address,
            source=tx,
        )

    def transact_and_broadcast_with_contract(
        self,
        func: ContractFunction,
        gas_limit: int | None = None,
        value: int = 0,
    ) -> HexBytes:
        """Build, sign and broadcast a bound contract call.

        - Gas and fee fields are filled by the node unless ``gas_limit`` is given
        - Always uses a manually allocated nonce

        - If the node rejects the broadcast, the nonce is released for the next transaction

        :return:
            Transaction hash
        """
        assert isinstance(func, ContractFunction), f"Got: {type(func)}"
        assert func.args is not None, f"Unbound contract function? {func}"
        web3 = func.w3

        tx_params = {
            "from": self.address,
            "value": value,
        }

        if gas_limit is not None:
            tx_params["gas"] = gas_limit

        tx_data = func.build_transaction(tx_params)

        # We allocate our own nonce
        tx_data.pop("nonce", None)

        if "maxFeePerGas" in tx_data and "gasPrice" in tx_data:
            # We can have only one
            del tx_data["gasPrice"]

        try:
            signed_tx = self.sign_transaction_with_new_nonce(tx_data)
        except Exception as e:
            # Probably mismatch between network expected gas parameter format and what we give
            raise RuntimeError(f"Could not sign:\n{pformat(tx_data)}") from e

        logger.info("Broadcasting %s.%s() from %s, nonce %d", func.address, func.fn_name, self.address, signed_tx.nonce)
        try:
            tx_hash = web3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except Exception:
            # Node rejected the transaction, the nonce stays free
            self.current_nonce = signed_tx.nonce
            raise
        return HexBytes(tx_hash)

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a private key that is passed in as a hex string.

        :param key: 0x prefixed hex string
        :return: Ready to go hot wallet account
        """
        assert type(key) == str, f"Expected private key as string, got {type(key)}"
        assert key.startswith("0x"), f"This system assumes private keys are prefixed with 0x, your key starts with {key[0:8]}... Please add 0x prefix to your private key hex string"
        account = Account.from_key(key)
        return HotWallet(account)
