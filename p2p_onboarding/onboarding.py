"""Client onboarding sequence.

Onboarding a client into P2P.org Superform custody runs these steps in order,
each using the on-chain result of the previous one:

1. Deploy a 1-of-1 Safe for the client
2. Predict the Zodiac Roles module address and prepare its deployment call
3. Fetch the client fee terms, default 0 / 9700 BPS
4. Ask the P2P Superform proxy factory for the client proxy address
5. Build the Roles permission calls for the P2P operator
6. Add ``enableModule()`` for the Roles module
7. Execute 2, 5 and 6 as one Safe transaction delegatecalling ``MultiSendCallOnly``
8. Optionally move tokens in or out of the Safe

The sequence is not transactional across steps. If step 7 fails, the Safe exists
but is not configured: call :py:meth:`OnboardingClient.set_permissions` again with
the Safe address from the error context.

Example:

.. code-block:: python

    client = create_onboarding_client_from_env()
    result = client.onboard_client()
    print(result.safe_address, result.roles_address)
"""

import enum
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Iterable, Optional

from eth_typing import HexAddress
from hexbytes import HexBytes
from safe_eth.safe.multi_send import MultiSendOperation
from web3 import HTTPProvider, Web3

from p2p_onboarding.abi import encode_with_signature
from p2p_onboarding.amount import parse_amount
from p2p_onboarding.config import OnboardingConfig, ResolvedOnboardingConfig, load_env, resolve_onboarding_config
from p2p_onboarding.errors import ConfigurationError, OnboardingError
from p2p_onboarding.hotwallet import HotWallet
from p2p_onboarding.p2p.fees import FeeTerms, resolve_fee_terms
from p2p_onboarding.p2p.proxy import predict_p2p_proxy_address
from p2p_onboarding.roles.deployment import RolesModuleDeployment, derive_roles_salt_nonce, prepare_roles_module_deployment
from p2p_onboarding.roles.permissions import PermissionStep, decode_permission_rules, prepare_roles_permission_steps
from p2p_onboarding.safe.deployment import SafeDeployment, deploy_safe
from p2p_onboarding.safe.execute import check_sole_owner, execute_safe_transaction, fetch_safe_nonce, prepare_safe_transaction
from p2p_onboarding.safe.multisend import BatchedCall, encode_multisend_call
from p2p_onboarding.safe.tx import PreparedSafeTransaction, SafeTransactionExecution
from p2p_onboarding.transfer import transfer_erc20_from_safe, transfer_erc20_to_safe


logger = logging.getLogger(__name__)


#: Safe.enableModule()
ENABLE_MODULE_SIGNATURE = "enableModule(address)"


class TransferDirection(enum.Enum):
    """Which way a token transfer goes, seen from the Safe."""

    #: Operator -> Safe, plain ERC-20 transfer
    to_safe = "to_safe"

    #: Safe -> receiver, through a Safe transaction
    from_safe = "from_safe"


@dataclass(slots=True, frozen=True)
class TokenTransfer:
    """Requested asset transfer after the Safe is set up.

    Amount is normalised with :py:func:`p2p_onboarding.amount.parse_amount`.
    """

    #: ERC-20 token address
    token: HexAddress

    #: Raw token units, accepts ints, digit strings and integral decimals
    amount: int | str | Decimal

    direction: TransferDirection = TransferDirection.to_safe

    #: Receiver for ``from_safe`` transfers, defaults to the operator
    receiver: Optional[HexAddress] = None

    def __post_init__(self):
        object.__setattr__(self, "amount", parse_amount(self.amount))
        object.__setattr__(self, "direction", TransferDirection(self.direction))
        object.__setattr__(self, "token", Web3.to_checksum_address(self.token))


@dataclass(slots=True)
class OnboardingSession:
    """Addresses created so far in one onboarding run.

    Pass the same session to the steps of a run, so later steps
    can omit the Safe address.
    """

    #: Set after the Safe is deployed
    safe_address: Optional[HexAddress] = None

    #: Safe owner
    owner: Optional[HexAddress] = None

    #: Set after the permission setup transaction confirms
    roles_address: Optional[HexAddress] = None

    def get_known_addresses(self) -> dict:
        """Known addresses for error context."""
        return {k: v for k, v in {"safe_address": self.safe_address, "owner": self.owner, "roles_address": self.roles_address}.items() if v}


@dataclass(slots=True, frozen=True)
class PermissionsSetupResult:
    """Result of the batched Roles setup Safe transaction."""

    safe_address: HexAddress

    roles: RolesModuleDeployment

    predicted_proxy_address: HexAddress

    role_key: bytes

    fee_terms: FeeTerms

    #: Deploy module, assign role, scope factory, scope proxy, enable module
    steps: list[PermissionStep]

    #: The Safe transaction that was executed
    safe_transaction: PreparedSafeTransaction

    #: State history of the Safe transaction, ends in ``confirmed``
    execution: SafeTransactionExecution

    #: ``execTransaction()`` transaction hash
    tx_hash: HexBytes

    @property
    def roles_address(self) -> HexAddress:
        return self.roles.roles_address

    def get_batched_calls(self) -> list[BatchedCall]:
        """Calls in the MultiSend batch, in execution order."""
        return [call for step in self.steps for call in step.calls]


@dataclass(slots=True, frozen=True)
class OnboardingTransactions:
    """Transaction hashes of a run, grouped by step."""

    safe_deployment: HexBytes

    roles_setup: HexBytes

    asset_transfers: list[HexBytes] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class DeploymentResult:
    """Everything a completed onboarding run created."""

    safe_address: HexAddress

    roles_address: HexAddress

    predicted_proxy_address: HexAddress

    role_key: bytes

    fee_terms: FeeTerms

    transactions: OnboardingTransactions

    #: Roles setup details, including the Safe transaction state history
    permissions: Optional[PermissionsSetupResult] = None


class OnboardingClient:
    """Run client onboarding steps with one operator wallet.

    - Configuration is resolved once, here, for the chain of ``web3``

    - Every step can be run alone, e.g. to resume after a failure

    - Errors are :py:class:`p2p_onboarding.errors.OnboardingError` subclasses
      with the failed step name and the addresses known at that point

    .. note ::

        The operator signs Safe transactions with an approved-hash signature,
        so the operator must be the sole owner of the Safe.
    """

    def __init__(
        self,
        web3: Web3,
        wallet: HotWallet,
        config: OnboardingConfig | None = None,
        log: Callable[[str], None] | None = None,
    ):
        """
        :param web3:
            Connection to the chain the client is onboarded on

        :param wallet:
            Operator wallet, pays for and signs all transactions

        :param config:
            Address and fee source overrides

        :param log:
            Progress message sink. Defaults to this module's logger.
        """
        if wallet is None:
            raise ConfigurationError("Onboarding needs an operator wallet")

        self.web3 = web3
        self.wallet = wallet
        self.config: ResolvedOnboardingConfig = resolve_onboarding_config(config, web3.eth.chain_id)
        self.log = log or logger.info

    def __repr__(self):
        return f"<OnboardingClient chain:{self.config.chain_id} operator:{self.wallet.address}>"

    def ensure_nonce_synced(self):
        """Read the operator nonce, unless this run already did."""
        if self.wallet.current_nonce is None:
            self.wallet.sync_nonce(self.web3)

    def resolve_safe_address(self, safe_address: HexAddress | str | None, session: OnboardingSession | None) -> HexAddress:
        """Explicit Safe address or the one in the session."""
        if safe_address:
            return Web3.to_checksum_address(safe_address)
        if session is not None and session.safe_address:
            return session.safe_address
        raise ConfigurationError("Safe address not given and no Safe deployed in this session")

    def deploy_safe(
        self,
        owner_address: HexAddress | str | None = None,
        session: OnboardingSession | None = None,
    ) -> SafeDeployment:
        """Deploy a new 1-of-1 Safe.

        Every call deploys a new Safe.

        :param owner_address:
            Safe owner. Defaults to the operator.
        """
        owner = Web3.to_checksum_address(owner_address or self.wallet.address)
        self.ensure_nonce_synced()

        try:
            deployment = deploy_safe(
                self.web3,
                self.wallet,
                owner=owner,
                singleton=self.config.safe_singleton,
                proxy_factory=self.config.safe_proxy_factory,
                salt_nonce=self.config.safe_salt_nonce,
                log=self.log,
            )
        except OnboardingError as e:
            raise e.with_step("deploy_safe", owner=owner)

        if session is not None:
            session.safe_address = deployment.safe_address
            session.owner = deployment.owner

        self.log(f"Safe deployed at {deployment.safe_address}")
        return deployment

    def set_permissions(
        self,
        safe_address: HexAddress | str | None = None,
        session: OnboardingSession | None = None,
        client_address: HexAddress | str | None = None,
    ) -> PermissionsSetupResult:
        """Deploy, configure and enable the Roles module in one Safe transaction.

        Calling this twice for the same Safe deploys two independent modules:
        the module salt is derived from the Safe nonce.

        :param client_address:
            Fee terms are looked up for this address. Defaults to the Safe owner in the session, or the operator.
        """
        safe_address = self.resolve_safe_address(safe_address, session)
        if client_address is None:
            client_address = session.owner if session is not None and session.owner else self.wallet.address
        client_address = Web3.to_checksum_address(client_address)

        known = {"safe_address": safe_address}
        execution = SafeTransactionExecution(safe_address=safe_address)
        self.ensure_nonce_synced()

        try:
            check_sole_owner(self.web3, safe_address, self.wallet.address)
            safe_nonce = fetch_safe_nonce(self.web3, safe_address)

            roles_salt_nonce = self.config.roles_salt_nonce
            if roles_salt_nonce is None:
                roles_salt_nonce = derive_roles_salt_nonce(safe_address, safe_nonce)

            roles = prepare_roles_module_deployment(
                safe_address,
                factory=self.config.module_proxy_factory,
                master_copy=self.config.roles_master_copy,
                salt_nonce=roles_salt_nonce,
            )
            known["roles_address"] = roles.roles_address
            self.log(f"Roles module prepared, salt nonce {roles_salt_nonce}, address {roles.roles_address}")

            fee_terms = resolve_fee_terms(
                client_address,
                fetcher=self.config.fee_terms_fetcher,
                api_url=self.config.p2p_api_url,
                api_token=self.config.p2p_api_token,
            )
            self.log(f"Using fee terms deposit={fee_terms.deposit_bps} BPS profit={fee_terms.profit_bps} BPS")

            predicted_proxy_address = predict_p2p_proxy_address(
                self.web3,
                self.config.p2p_superform_proxy_factory,
                client=safe_address,
                fee_terms=fee_terms,
            )
            known["predicted_proxy_address"] = predicted_proxy_address
            self.log(f"Predicted P2P Superform proxy {predicted_proxy_address}")

            steps = self.build_permission_steps(safe_address, roles, predicted_proxy_address)
            calls = [call for step in steps for call in step.calls]

            rules = decode_permission_rules(calls)
            assert len(rules) == 2, f"Operator role must get exactly two functions, got {rules}"

            self.log(f"Executing Roles setup through MultiSendCallOnly {self.config.multisend_call_only}: {len(steps)} steps, {len(calls)} calls")

            tx = prepare_safe_transaction(
                self.web3,
                safe_address,
                to=self.config.multisend_call_only,
                data=encode_multisend_call(calls),
                operation=MultiSendOperation.DELEGATE_CALL,
                nonce=safe_nonce,
                execution=execution,
            )
            known["safe_tx_hash"] = tx.hash.hex()

            tx_hash = execute_safe_transaction(
                self.web3,
                self.wallet,
                safe_address,
                tx,
                step="set_permissions",
                log=self.log,
                execution=execution,
            )
        except OnboardingError as e:
            raise e.with_step("set_permissions", safe_tx_history=list(execution.history), **known)

        if session is not None:
            session.roles_address = roles.roles_address

        self.log(f"Roles module deployed, scoped and enabled by Safe transaction {tx_hash.hex()}")

        return PermissionsSetupResult(
            safe_address=safe_address,
            roles=roles,
            predicted_proxy_address=predicted_proxy_address,
            role_key=self.config.role_key,
            fee_terms=fee_terms,
            steps=steps,
            safe_transaction=tx,
            execution=execution,
            tx_hash=tx_hash,
        )

    def build_permission_steps(
        self,
        safe_address: HexAddress,
        roles: RolesModuleDeployment,
        predicted_proxy_address: HexAddress,
    ) -> list[PermissionStep]:
        """Steps of the Roles setup batch, in execution order.

        Module deployment comes first and enabling it comes last.
        """
        deploy_module = PermissionStep(name="deploy_module", calls=[roles.deployment_call])

        permission_steps = prepare_roles_permission_steps(
            roles.roles_address,
            self.config.role_key,
            operator_address=self.config.p2p_address,
            factory_address=self.config.p2p_superform_proxy_factory,
            predicted_proxy_address=predicted_proxy_address,
        )

        enable_module = PermissionStep(
            name="enable_module",
            calls=[
                BatchedCall(
                    to=safe_address,
                    data=encode_with_signature(ENABLE_MODULE_SIGNATURE, [roles.roles_address]),
                )
            ],
        )

        return [deploy_module] + permission_steps + [enable_module]

    def transfer_asset_to_safe(
        self,
        token: HexAddress | str,
        amount: int | str | Decimal,
        safe_address: HexAddress | str | None = None,
        session: OnboardingSession | None = None,
    ) -> HexBytes:
        """Send tokens from the operator to the Safe.

        :return:
            Transaction hash
        """
        safe_address = self.resolve_safe_address(safe_address, session)
        amount = parse_amount(amount)
        self.ensure_nonce_synced()
        try:
            return transfer_erc20_to_safe(self.web3, self.wallet, token, safe_address, amount, log=self.log)
        except OnboardingError as e:
            raise e.with_step("transfer_to_safe", safe_address=safe_address, token=token)

    def transfer_asset_from_safe(
        self,
        token: HexAddress | str,
        amount: int | str | Decimal,
        safe_address: HexAddress | str | None = None,
        session: OnboardingSession | None = None,
        receiver: HexAddress | str | None = None,
    ) -> HexBytes:
        """Send tokens out of the Safe, executed as a Safe transaction.

        :param receiver:
            Defaults to the operator

        :return:
            ``execTransaction()`` transaction hash
        """
        safe_address = self.resolve_safe_address(safe_address, session)
        amount = parse_amount(amount)
        self.ensure_nonce_synced()
        try:
            check_sole_owner(self.web3, safe_address, self.wallet.address)
            return transfer_erc20_from_safe(self.web3, self.wallet, token, safe_address, amount, receiver=receiver, log=self.log)
        except OnboardingError as e:
            raise e.with_step("transfer_from_safe", safe_address=safe_address, token=token)

    def onboard_client(
        self,
        client_address: HexAddress | str | None = None,
        transfers: Iterable[TokenTransfer] = (),
        fee_client_address: HexAddress | str | None = None,
    ) -> DeploymentResult:
        """Run the full onboarding sequence.

        :param client_address:
            Safe owner. Defaults to the operator, which is the only supported owner:
            the operator must be able to sign the setup transaction alone.

        :param transfers:
            Token transfers to perform after the Safe is configured

        :param fee_client_address:
            Client whose P2P.org fee terms are used. Defaults to ``client_address``.
            The Safe stays owned by the operator.

        :raise OnboardingError:
            With ``step`` set to the failed step and the known addresses in ``context``
        """
        client_address = Web3.to_checksum_address(client_address or self.wallet.address)
        if client_address != self.wallet.address:
            raise ConfigurationError(
                f"Client {client_address} cannot own the Safe: the operator {self.wallet.address} must be the sole owner to sign the setup transaction",
                step="onboard_client",
                context={"client_address": client_address, "operator": self.wallet.address},
            )

        transfers = list(transfers)
        self.log(f"Onboarding client {client_address}")

        # One nonce read per run, after that the wallet allocates locally
        self.wallet.sync_nonce(self.web3)

        session = OnboardingSession()
        safe_deployment = self.deploy_safe(client_address, session=session)
        permissions = self.set_permissions(session=session, client_address=fee_client_address or client_address)

        transfer_hashes = []
        for transfer in transfers:
            if transfer.direction == TransferDirection.to_safe:
                tx_hash = self.transfer_asset_to_safe(transfer.token, transfer.amount, session=session)
            else:
                tx_hash = self.transfer_asset_from_safe(transfer.token, transfer.amount, session=session, receiver=transfer.receiver)
            transfer_hashes.append(tx_hash)

        self.log(f"Onboarding of {client_address} complete, Safe {session.safe_address}")

        return DeploymentResult(
            safe_address=safe_deployment.safe_address,
            roles_address=permissions.roles_address,
            predicted_proxy_address=permissions.predicted_proxy_address,
            role_key=permissions.role_key,
            fee_terms=permissions.fee_terms,
            transactions=OnboardingTransactions(
                safe_deployment=safe_deployment.tx_hash,
                roles_setup=permissions.tx_hash,
                asset_transfers=transfer_hashes,
            ),
            permissions=permissions,
        )


def create_onboarding_client_from_env(
    config: OnboardingConfig | None = None,
    environ: dict | None = None,
    log: Callable[[str], None] | None = None,
) -> OnboardingClient:
    """Create an onboarding client from ``RPC_URL``, ``PRIVATE_KEY``, ``P2P_API_URL`` and ``P2P_API_TOKEN``.

    Values in ``config`` win over the environment.

    :raise ConfigurationError:
        Required environment variables are missing.
    """
    env = load_env(environ)

    if config is None:
        config = OnboardingConfig()

    config = replace(
        config,
        p2p_api_url=config.p2p_api_url or env.p2p_api_url,
        p2p_api_token=config.p2p_api_token or env.p2p_api_token,
    )

    web3 = Web3(HTTPProvider(env.rpc_url))
    wallet = HotWallet.from_private_key(env.private_key)
    return OnboardingClient(web3, wallet, config, log=log)
