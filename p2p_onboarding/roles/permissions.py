"""Roles v2 permission calls for the P2P operator.

The operator role is scoped to exactly two functions:

- ``deposit(bytes,uint48,uint48,uint256,bytes)`` on the P2P Superform proxy factory
- ``withdraw(bytes)`` on the client's P2P Superform proxy, which may not exist yet

Roles v2 needs a target to be scoped with ``scopeTarget()`` before
single functions on it can be allowed. We never clear a whole target with
``allowTarget()`` and never attach parameter conditions.

- `Roles v2 PermissionBuilder <https://github.com/gnosisguild/zodiac-modifier-roles/blob/main/packages/evm/contracts/PermissionBuilder.sol>`__
"""

import enum
from dataclasses import dataclass, field

from eth_abi import decode
from eth_typing import HexAddress
from web3 import Web3

from p2p_onboarding.abi import encode_with_signature, get_function_selector_by_signature
from p2p_onboarding.errors import ConfigurationError
from p2p_onboarding.safe.multisend import BatchedCall


ASSIGN_ROLES_SIGNATURE = "assignRoles(address,bytes32[],bool[])"

SCOPE_TARGET_SIGNATURE = "scopeTarget(bytes32,address)"

ALLOW_FUNCTION_SIGNATURE = "allowFunction(bytes32,address,bytes4,uint8)"

#: Clears a whole target. Listed so audits can reject it, we never emit it.
ALLOW_TARGET_SIGNATURE = "allowTarget(bytes32,address,uint8)"

#: Superform deposit through P2P proxy factory
P2P_DEPOSIT_SIGNATURE = "deposit(bytes,uint48,uint48,uint256,bytes)"

#: Superform withdraw through the client P2P proxy
P2P_WITHDRAW_SIGNATURE = "withdraw(bytes)"


class ExecutionOptions(enum.IntEnum):
    """Roles v2 ``ExecutionOptions``: may the role send value or delegatecall."""

    none = 0
    send = 1
    delegate_call = 2
    both = 3


@dataclass(slots=True, frozen=True)
class PermissionStep:
    """Named group of calls that together make one permission change."""

    #: E.g. ``assign_role``, ``scope_factory``
    name: str

    calls: list[BatchedCall] = field(default_factory=list)


def _require(name: str, value):
    if not value:
        raise ConfigurationError(f"Permission setup needs {name}", context={"field": name})


def encode_scope_function_step(
    name: str,
    roles_address: HexAddress,
    role_key: bytes,
    target: HexAddress,
    function_signature: str,
) -> PermissionStep:
    """Scope a target and allow one selector on it, no value, no delegatecall."""
    selector = get_function_selector_by_signature(function_signature)
    return PermissionStep(
        name=name,
        calls=[
            BatchedCall(
                to=roles_address,
                data=encode_with_signature(SCOPE_TARGET_SIGNATURE, [role_key, target]),
            ),
            BatchedCall(
                to=roles_address,
                data=encode_with_signature(ALLOW_FUNCTION_SIGNATURE, [role_key, target, selector, ExecutionOptions.none.value]),
            ),
        ],
    )


def prepare_roles_permission_steps(
    roles_address: HexAddress | str,
    role_key: bytes,
    operator_address: HexAddress | str,
    factory_address: HexAddress | str,
    predicted_proxy_address: HexAddress | str,
) -> list[PermissionStep]:
    """Build the permission steps for the operator role.

    Steps, in execution order:

    1. ``assign_role``: operator gets the role
    2. ``scope_factory``: only ``deposit()`` on the proxy factory
    3. ``scope_proxy``: only ``withdraw()`` on the predicted client proxy

    :raise ConfigurationError:
        Any of the identifiers is missing.
    """
    _require("roles_address", roles_address)
    _require("role_key", role_key)
    _require("operator_address", operator_address)
    _require("factory_address", factory_address)
    _require("predicted_proxy_address", predicted_proxy_address)

    assert len(role_key) == 32, f"Role key must be bytes32, got {len(role_key)} bytes"

    roles_address = Web3.to_checksum_address(roles_address)
    operator_address = Web3.to_checksum_address(operator_address)
    factory_address = Web3.to_checksum_address(factory_address)
    predicted_proxy_address = Web3.to_checksum_address(predicted_proxy_address)
    role_key = bytes(role_key)

    assign_role = PermissionStep(
        name="assign_role",
        calls=[
            BatchedCall(
                to=roles_address,
                data=encode_with_signature(ASSIGN_ROLES_SIGNATURE, [operator_address, [role_key], [True]]),
            )
        ],
    )

    return [
        assign_role,
        encode_scope_function_step("scope_factory", roles_address, role_key, factory_address, P2P_DEPOSIT_SIGNATURE),
        encode_scope_function_step("scope_proxy", roles_address, role_key, predicted_proxy_address, P2P_WITHDRAW_SIGNATURE),
    ]


def prepare_roles_permissions(
    roles_address: HexAddress | str,
    role_key: bytes,
    operator_address: HexAddress | str,
    factory_address: HexAddress | str,
    predicted_proxy_address: HexAddress | str,
) -> list[BatchedCall]:
    """Flat list of permission calls against the Roles module.

    See :py:func:`prepare_roles_permission_steps`.
    """
    steps = prepare_roles_permission_steps(
        roles_address,
        role_key,
        operator_address,
        factory_address,
        predicted_proxy_address,
    )
    return [call for step in steps for call in step.calls]


def decode_permission_rules(calls: list[BatchedCall]) -> list[tuple[HexAddress, bytes]]:
    """List (target, selector) pairs the calls allow.

    Used to audit a batch before it is executed.

    :raise ValueError:
        A call clears a whole target.
    """
    allow_function = get_function_selector_by_signature(ALLOW_FUNCTION_SIGNATURE)
    allow_target = get_function_selector_by_signature(ALLOW_TARGET_SIGNATURE)

    rules = []
    for call in calls:
        selector = bytes(call.data[0:4])
        if selector == allow_target:
            raise ValueError(f"Call clears a whole target: {call}")
        if selector == allow_function:
            _role_key, target, function_selector, _options = decode(["bytes32", "address", "bytes4", "uint8"], bytes(call.data[4:]))
            rules.append((Web3.to_checksum_address(target), bytes(function_selector)))
    return rules
