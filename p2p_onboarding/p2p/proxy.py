"""P2P Superform proxy address prediction.

Each client gets its own P2P Superform proxy, deployed by the
proxy factory on the first deposit. The factory is the only authority
on the proxy address, so we ask it instead of computing it ourselves.
"""

import logging

from eth_typing import HexAddress
from web3 import Web3

from p2p_onboarding.abi import get_deployed_contract
from p2p_onboarding.p2p.fees import FeeTerms
from p2p_onboarding.read_retry import read_with_transient_retry


logger = logging.getLogger(__name__)


def predict_p2p_proxy_address(
    web3: Web3,
    factory_address: HexAddress | str,
    client: HexAddress | str,
    fee_terms: FeeTerms,
) -> HexAddress:
    """Ask the P2P Superform proxy factory for the client proxy address.

    - The proxy does not need to exist
    - The address depends on the fee terms

    :raise TransientReadError:
        Factory kept returning no data.

    :return:
        Checksummed proxy address
    """
    factory = get_deployed_contract(web3, "p2p/P2pSuperformProxyFactory.json", factory_address)
    client = Web3.to_checksum_address(client)

    proxy_address = read_with_transient_retry(
        lambda: factory.functions.predictP2pYieldProxyAddress(client, fee_terms.deposit_bps, fee_terms.profit_bps).call(),
        description=f"P2P proxy factory {factory.address} predictP2pYieldProxyAddress()",
    )

    proxy_address = Web3.to_checksum_address(proxy_address)
    logger.info(
        "Predicted P2P proxy for %s at %s, deposit %d BPS, profit %d BPS",
        client,
        proxy_address,
        fee_terms.deposit_bps,
        fee_terms.profit_bps,
    )
    return proxy_address
