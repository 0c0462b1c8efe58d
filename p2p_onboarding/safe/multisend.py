"""Batch multiple calls into a single Safe MultiSend transaction.

The packed format consumed by ``MultiSend.multiSend(bytes transactions)`` is,
for each transaction, in order:

- ``uint8`` operation (0 = call, 1 = delegatecall)
- ``address`` to, 20 bytes
- ``uint256`` value
- ``uint256`` data length
- ``bytes`` data

There is no padding between transactions. Entries are packed and unpacked
with :py:class:`safe_eth.safe.multi_send.MultiSendTx`.

- `MultiSendCallOnly source <https://github.com/safe-global/safe-smart-account/blob/v1.3.0/contracts/libraries/MultiSendCallOnly.sol>`__

``MultiSendCallOnly`` reverts on delegatecall entries, so all batched calls
we build use :py:attr:`MultiSendOperation.CALL`. The MultiSend itself
is then delegatecalled by the Safe.
"""

from dataclasses import dataclass
from typing import Iterable

from eth_abi import decode
from eth_typing import HexAddress
from hexbytes import HexBytes
from safe_eth.safe.multi_send import MultiSendOperation, MultiSendTx
from web3 import Web3

from p2p_onboarding.abi import encode_with_signature, get_function_selector_by_signature


#: MultiSend entry point
MULTISEND_SIGNATURE = "multiSend(bytes)"

# 1 + 20 + 32 + 32
_HEADER_LENGTH = 85


@dataclass(slots=True, frozen=True)
class BatchedCall:
    """One call inside a MultiSend batch.

    Also used for standalone Safe transaction payloads.
    """

    #: Call target
    to: HexAddress

    #: Call payload
    data: HexBytes

    #: Native token amount sent along, wei
    value: int = 0

    #: Plain call or delegatecall
    operation: MultiSendOperation = MultiSendOperation.CALL

    def __post_init__(self):
        assert type(self.to) == str and self.to.startswith("0x"), f"Call target must be a hex address, got {self.to}"
        assert type(self.value) == int and self.value >= 0, f"Value must be non-negative int, got {self.value}"
        assert isinstance(self.operation, MultiSendOperation), f"Got {type(self.operation)}"
        # Normalise so that decoded and built calls compare equal
        object.__setattr__(self, "to", Web3.to_checksum_address(self.to))
        object.__setattr__(self, "data", HexBytes(self.data))

    def __repr__(self):
        return f"<BatchedCall {self.operation.name} to:{self.to} value:{self.value} data:{self.data.hex()[0:10]}... ({len(self.data)} bytes)>"

    def to_multisend_tx(self) -> MultiSendTx:
        return MultiSendTx(
            operation=self.operation,
            to=self.to,
            value=self.value,
            data=bytes(self.data),
        )

    @staticmethod
    def from_multisend_tx(tx: MultiSendTx) -> "BatchedCall":
        return BatchedCall(
            to=tx.to,
            data=HexBytes(tx.data),
            value=tx.value,
            operation=tx.operation,
        )

    def encode(self) -> bytes:
        """Pack this call in the MultiSend transaction format."""
        return bytes(self.to_multisend_tx().encoded_data)


def encode_multisend_transactions(calls: Iterable[BatchedCall]) -> bytes:
    """Pack calls into the ``transactions`` argument of ``multiSend()``.

    - Order is preserved, it is the execution order
    - Empty input gives empty payload, the caller decides whether to submit anything

    :return:
        Packed transactions blob
    """
    return b"".join(c.encode() for c in calls)


def decode_multisend_transactions(payload: bytes) -> list[BatchedCall]:
    """Unpack a ``multiSend()`` transactions blob.

    Inverse of :py:func:`encode_multisend_transactions`.
    Unlike :py:meth:`safe_eth.safe.multi_send.MultiSend.from_bytes`,
    does not fall back to the legacy padded format.

    :raise ValueError:
        Payload is truncated or has an unknown operation.
    """
    payload = bytes(payload)
    calls = []
    offset = 0
    while offset < len(payload):
        if offset + _HEADER_LENGTH > len(payload):
            raise ValueError(f"Truncated MultiSend header at offset {offset}, payload length {len(payload)}")

        operation = payload[offset]
        if operation not in (op.value for op in MultiSendOperation):
            raise ValueError(f"Unknown MultiSend operation {operation} at offset {offset}")

        data_length = int.from_bytes(payload[offset + 53 : offset + 85], "big")
        data_end = offset + _HEADER_LENGTH + data_length
        if data_end > len(payload):
            raise ValueError(f"Truncated MultiSend data at offset {offset}, expected {data_length} bytes")

        tx = MultiSendTx.from_bytes(payload[offset:data_end])
        calls.append(BatchedCall.from_multisend_tx(tx))
        offset = data_end

    return calls


def encode_multisend_call(calls: Iterable[BatchedCall]) -> bytes:
    """Build the full ``multiSend(bytes)`` calldata for a batch.

    :return:
        Calldata to be delegatecalled by the Safe against a MultiSend contract
    """
    return encode_with_signature(MULTISEND_SIGNATURE, [encode_multisend_transactions(calls)])


def decode_multisend_call(data: bytes) -> list[BatchedCall]:
    """Unpack the calls from ``multiSend(bytes)`` calldata.

    Used to audit a prepared Safe transaction before it is executed.
    """
    data = bytes(data)
    selector = get_function_selector_by_signature(MULTISEND_SIGNATURE)
    if data[0:4] != selector:
        raise ValueError(f"Not a multiSend() call, selector {data[0:4].hex()}")

    (transactions,) = decode(["bytes"], data[4:])
    return decode_multisend_transactions(transactions)
