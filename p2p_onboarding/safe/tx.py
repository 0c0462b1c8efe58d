"""Safe transaction data structures and hashing.

- A Safe transaction goes through states
  ``unprepared -> hash computed -> signed -> submitted -> confirmed | failed``,
  see :py:class:`SafeTransactionState`

- The Safe contract recomputes the EIP-712 hash of the transaction
  on ``execTransaction()`` and checks the signatures against it

- We always use neutral gas refund fields: Safe does not refund gas
  for our transactions

- `Safe.sol getTransactionHash() <https://github.com/safe-global/safe-smart-account/blob/v1.3.0/contracts/GnosisSafe.sol>`__
"""

import enum
from dataclasses import dataclass, field

from eth_typing import HexAddress
from hexbytes import HexBytes
from safe_eth.safe.multi_send import MultiSendOperation
from safe_eth.safe.safe_tx import SafeTx
from web3 import Web3

from p2p_onboarding.abi import ZERO_ADDRESS_STR


#: Digest layout we verify against, chainId is part of the domain since 1.3.0
SAFE_VERSION = "1.3.0"


class SafeTransactionState(enum.Enum):
    """Where a Safe transaction is in its lifecycle."""

    unprepared = "unprepared"

    #: Nonce read and digest computed by the Safe
    hash_computed = "hash_computed"

    #: Signatures attached
    signed = "signed"

    #: Broadcasted, waiting for the receipt
    submitted = "submitted"

    #: Mined and the Safe reported success
    confirmed = "confirmed"

    #: Reverted, or the Safe reported execution failure
    failed = "failed"


@dataclass(slots=True, frozen=True)
class PreparedSafeTransaction:
    """A Safe transaction ready to be signed.

    Gas refund fields are always zero: the executing EOA pays the gas.
    """

    #: Call target
    to: HexAddress

    #: Native token value, wei
    value: int

    #: Call payload
    data: HexBytes

    #: Call or delegatecall
    operation: MultiSendOperation

    #: Safe nonce this transaction consumes
    nonce: int

    #: Digest as computed by the Safe contract itself
    hash: HexBytes

    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: HexAddress = ZERO_ADDRESS_STR
    refund_receiver: HexAddress = ZERO_ADDRESS_STR

    def get_exec_transaction_args(self, signatures: bytes) -> list:
        """Arguments for ``Safe.execTransaction()``."""
        return [
            self.to,
            self.value,
            bytes(self.data),
            self.operation.value,
            self.safe_tx_gas,
            self.base_gas,
            self.gas_price,
            self.gas_token,
            self.refund_receiver,
            signatures,
        ]

    def get_hash_args(self) -> list:
        """Arguments for ``Safe.getTransactionHash()``."""
        return self.get_exec_transaction_args(signatures=b"")[0:9] + [self.nonce]


@dataclass(slots=True)
class SafeTransactionExecution:
    """Track one Safe transaction through its states.

    Mutable: updated by :py:func:`p2p_onboarding.safe.execute.prepare_safe_transaction`
    and :py:func:`p2p_onboarding.safe.execute.execute_safe_transaction`.
    """

    safe_address: HexAddress

    #: Set when the digest is computed
    transaction: PreparedSafeTransaction | None = None

    state: SafeTransactionState = SafeTransactionState.unprepared

    #: Packed signatures
    signatures: bytes | None = None

    #: EOA transaction hash of the ``execTransaction()`` call
    tx_hash: HexBytes | None = None

    #: EOA nonce used for the submission
    tx_nonce: int | None = None

    #: Human readable state changes, for diagnostics
    history: list[str] = field(default_factory=list)

    def move(self, state: SafeTransactionState, note: str = ""):
        self.history.append(f"{self.state.value} -> {state.value} {note}".strip())
        self.state = state

    def record_prepared(self, tx: PreparedSafeTransaction):
        """Attach the prepared transaction and its digest."""
        assert self.state == SafeTransactionState.unprepared, f"Already prepared: {self.history}"
        assert tx.hash, f"Safe transaction hash not computed: {tx}"
        self.transaction = tx
        self.move(SafeTransactionState.hash_computed, tx.hash.hex())


def calculate_safe_tx_hash(
    chain_id: int,
    safe_address: HexAddress | str,
    to: HexAddress | str,
    value: int,
    data: bytes,
    operation: MultiSendOperation,
    nonce: int,
    safe_tx_gas: int = 0,
    base_gas: int = 0,
    gas_price: int = 0,
    gas_token: HexAddress | str = ZERO_ADDRESS_STR,
    refund_receiver: HexAddress | str = ZERO_ADDRESS_STR,
) -> HexBytes:
    """Recompute a Safe transaction digest off-chain.

    - Pure function of the arguments, no chain access, no clock

    - Must match what ``Safe.getTransactionHash()`` returns, used to verify
      the digest we got from the node

    - Uses the EIP-712 domain of Safe 1.3.0 and later: chain id and Safe address only

    :return:
        32 bytes digest
    """
    safe_tx = SafeTx(
        None,
        Web3.to_checksum_address(safe_address),
        to=Web3.to_checksum_address(to),
        value=value,
        data=bytes(data),
        operation=operation.value,
        safe_tx_gas=safe_tx_gas,
        base_gas=base_gas,
        gas_price=gas_price,
        gas_token=Web3.to_checksum_address(gas_token),
        refund_receiver=Web3.to_checksum_address(refund_receiver),
        safe_nonce=nonce,
        safe_version=SAFE_VERSION,
        chain_id=chain_id,
    )
    return HexBytes(safe_tx.safe_tx_hash)


def verify_prepared_transaction_hash(
    chain_id: int,
    safe_address: HexAddress | str,
    tx: PreparedSafeTransaction,
) -> bool:
    """Check the digest the Safe gave us matches our own computation."""
    local_hash = calculate_safe_tx_hash(
        chain_id,
        safe_address,
        tx.to,
        tx.value,
        tx.data,
        tx.operation,
        tx.nonce,
        tx.safe_tx_gas,
        tx.base_gas,
        tx.gas_price,
        tx.gas_token,
        tx.refund_receiver,
    )
    return local_hash == HexBytes(tx.hash)


def build_approved_hash_signature(owner: HexAddress | str) -> bytes:
    """Build a pre-validated signature for a 1-of-1 Safe.

    Safe accepts ``v = 1`` signatures when ``msg.sender`` is the owner
    encoded in ``r``. No cryptographic signing is needed.

    - ``r``: owner address left-padded to 32 bytes
    - ``s``: 32 zero bytes
    - ``v``: ``0x01``

    .. warning::

        Only valid when the executing EOA is the sole owner and threshold is 1.

    - `Safe signature types <https://docs.safe.global/advanced/smart-account-signatures>`__
    """
    assert type(owner) == str and owner.startswith("0x"), f"Owner must be a hex address, got {owner}"
    owner_bytes = bytes.fromhex(Web3.to_checksum_address(owner)[2:])
    assert len(owner_bytes) == 20
    r = owner_bytes.rjust(32, b"\x00")
    s = b"\x00" * 32
    v = b"\x01"
    return r + s + v
