"""Onboard a client into P2P.org Superform custody.

- Deploys a 1-of-1 Safe owned by the operator
- Deploys the Zodiac Roles module, scopes the P2P operator and enables the module
  in one Safe transaction

Set up environment:

.. code-block:: shell

    export RPC_URL=https://mainnet.base.org
    export PRIVATE_KEY=0x...
    # Optional
    export P2P_API_URL=https://api.p2p.org/clients
    export P2P_API_TOKEN=...

Optionally move tokens to the Safe after onboarding:

.. code-block:: shell

    export TRANSFER_TOKEN=0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913
    export TRANSFER_AMOUNT=1000000

Then run:

.. code-block:: shell

    python scripts/onboard-client.py
"""

import logging
import os
import sys

from tabulate import tabulate

from p2p_onboarding.errors import OnboardingError
from p2p_onboarding.onboarding import TokenTransfer, TransferDirection, create_onboarding_client_from_env
from p2p_onboarding.utils import get_url_domain, setup_console_logging


logger = logging.getLogger(__name__)


def main():
    setup_console_logging()

    client = create_onboarding_client_from_env(log=print)
    web3 = client.web3
    print(f"Connected to {get_url_domain(os.environ['RPC_URL'])}, chain id is {web3.eth.chain_id}, the latest block is {web3.eth.block_number:,}")
    print(f"Operator is {client.wallet.address}")

    transfers = []
    token = os.environ.get("TRANSFER_TOKEN")
    if token:
        transfers.append(
            TokenTransfer(
                token=token,
                amount=os.environ.get("TRANSFER_AMOUNT", ""),
                direction=TransferDirection.to_safe,
            )
        )

    try:
        result = client.onboard_client(transfers=transfers)
    except OnboardingError as e:
        logger.error("Onboarding failed at step %s", e.step)
        print(f"Onboarding failed: {e}")
        sys.exit(1)

    table = [
        ["Safe", result.safe_address],
        ["Roles modifier", result.roles_address],
        ["Predicted Superform proxy", result.predicted_proxy_address],
        ["Role key", result.role_key.hex()],
        ["Fee terms", f"deposit {result.fee_terms.deposit_bps} BPS, profit {result.fee_terms.profit_bps} BPS"],
        ["Safe deployment tx", result.transactions.safe_deployment.hex()],
        ["Roles setup tx", result.transactions.roles_setup.hex()],
    ]

    for idx, tx_hash in enumerate(result.transactions.asset_transfers, start=1):
        table.append([f"Asset transfer #{idx} tx", tx_hash.hex()])

    print("\nOnboarding complete:")
    print(tabulate(table, tablefmt="simple"))


if __name__ == "__main__":
    main()
