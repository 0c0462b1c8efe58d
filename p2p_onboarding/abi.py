"""ABI loading from the bundled ABI files.

Provides functions to load ABI files and construct :py:class:`web3.contract.Contract` types.
The results are cached for the speedup.

We also provide helper functions to deal with ABI encoding
when we only know the Solidity function signature.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Sequence, Type, Union

import eth_abi
from eth_typing import HexAddress
from web3 import Web3
from web3.contract.contract import Contract

# How big are our ABI and contract caches
_CACHE_SIZE = 64


#: Ethereum 0x0000000000000000000000000000000000000000 address
ZERO_ADDRESS_STR = "0x0000000000000000000000000000000000000000"


@lru_cache(maxsize=_CACHE_SIZE)
def get_abi_by_filename(fname: str) -> list | dict:
    """Reads a embedded ABI file and returns it.

    Example::

        abi = get_abi_by_filename("safe/Safe.json")

    Loaded ABI files are cache in in-process memory to speed up future loading.

    :param fname:
        Path relative to ``p2p_onboarding/abi``
    """

    here = Path(__file__).resolve().parent
    abi_path = here / "abi" / Path(fname)
    with open(abi_path, "rt", encoding="utf-8") as f:
        abi = json.load(f)
    return abi


@lru_cache(maxsize=_CACHE_SIZE)
def get_contract(
    web3: Web3,
    fname: str | Path,
) -> Type[Contract]:
    """Get Contract proxy class from ABI JSON file.

    - ABI file can be a solc compiling artifact or Etherscan copy-pasted ABI.

    Any results are cached. Web3 connection is part of the cache key.

    Example:

    .. code-block:: python

        Safe = get_contract(web3, "safe/Safe.json")

    :return:
        Contract proxy class
    """

    contract_interface = get_abi_by_filename(str(fname))

    if type(contract_interface) == list:
        # Etherscan
        abi = contract_interface
    else:
        # Solc output
        abi = contract_interface["abi"]

    Contract = web3.eth.contract(abi=abi)
    return Contract


def get_deployed_contract(
    web3: Web3,
    fname: str | Path,
    address: Union[HexAddress, str],
) -> Contract:
    """Get a Contract proxy object for a contract deployed at a specific address.

    :param fname:
        ABI file name, e.g. ``safe/Safe.json``

    :param address:
        Ethereum address of the deployed contract

    :return:
        `web3.contract.Contract` proxy
    """
    assert isinstance(web3, Web3), f"Got {type(web3)} instead of Web3"
    assert address, f"get_deployed_contract() address was None"

    address = Web3.to_checksum_address(address)

    Contract = get_contract(web3, fname)
    return Contract(address)


def get_function_selector_by_signature(function_signature: str) -> bytes:
    """Get 4-byte Solidity function selector for a signature.

    Example:

    .. code-block:: python

        selector = get_function_selector_by_signature("withdraw(bytes)")
        assert len(selector) == 4

    :param function_signature:
        Canonical Solidity signature without spaces or argument names.
    """
    assert " " not in function_signature, f"Signature must be canonical, got: {function_signature}"
    return bytes(Web3.keccak(text=function_signature)[0:4])


def encode_with_signature(function_signature: str, args: Sequence) -> bytes:
    """Mimic Solidity's abi.encodeWithSignature() in Python.

    Example:

    .. code-block:: python

            payload = encode_with_signature("enableModule(address)", [module_address])
            assert type(payload) == bytes

    :param function_signature:
        Solidity function signature that can be hashed to a selector.

        ABI will be extracted from this signature.
        Tuple arguments are not supported.

    :param args:
        Argument values to be encoded.
    """

    assert type(args) in (tuple, list)

    function_selector = get_function_selector_by_signature(function_signature)
    selector_text = function_signature[function_signature.find("(") + 1 : function_signature.rfind(")")]
    arg_types = selector_text.split(",") if selector_text else []
    assert len(arg_types) == len(args), f"{function_signature} takes {len(arg_types)} arguments, got {len(args)}"
    encoded_args = eth_abi.encode(arg_types, args)
    return function_selector + encoded_args
