from typing import List, Mapping, Optional, Sequence

from eth_typing import ChecksumAddress
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from l1_deployment.chain import ChainClient, Receipt
from l1_deployment.constants import ZERO_ADDRESS
from l1_deployment.diamond import (
    DIAMOND_CUT_DATA_TYPE,
    DiamondCutData,
    FacetCut,
    TargetFacet,
    compute_cut,
    encode_diamond_cut,
    fetch_diamond_state,
    validate_cut,
)
from l1_deployment.errors import ConfigurationError, UpgradeFailed
from l1_deployment.params import TxOptions

DIAMOND_UPGRADE_SIGNATURE = f"executeUpgrade({DIAMOND_CUT_DATA_TYPE})"
DIAMOND_UPGRADE_SELECTOR = function_signature_to_4byte_selector(DIAMOND_UPGRADE_SIGNATURE)


def encode_upgrade_call(data: DiamondCutData) -> bytes:
    return DIAMOND_UPGRADE_SELECTOR + encode_diamond_cut(data)


class UpgradeRegistrar:
    """
    Applies diamond cuts as one atomic transaction through the diamond's governance
    entry point: the facet changes and the initializer either all take effect or the
    diamond keeps its previous routing.
    """

    def __init__(
        self,
        client: ChainClient,
        diamond: ChecksumAddress,
        tx_options: TxOptions = TxOptions(),
    ):
        self.client = client
        self.diamond = to_checksum_address(diamond)
        self.tx_options = tx_options

    def prepare_upgrade(self, targets: Mapping[str, TargetFacet]) -> List[FacetCut]:
        """Diffs ``targets`` against the facets the diamond routes right now."""
        current = fetch_diamond_state(self.client, self.diamond)
        return compute_cut(current, targets)

    def build_cut_data(
        self,
        cuts: Sequence[FacetCut],
        init_target: Optional[ChecksumAddress] = None,
        init_calldata: bytes = b"",
    ) -> DiamondCutData:
        validate_cut(cuts)
        init_target = init_target or ZERO_ADDRESS
        if int(init_target, 16) == 0 and init_calldata:
            raise ConfigurationError("Initializer calldata given without an initializer target.")
        return DiamondCutData(
            facet_cuts=tuple(cuts),
            init_address=to_checksum_address(init_target),
            init_calldata=bytes(init_calldata),
        )

    def apply_upgrade(
        self,
        cuts: Sequence[FacetCut],
        init_target: Optional[ChecksumAddress] = None,
        init_calldata: bytes = b"",
    ) -> Receipt:
        """
        Submits the whole cut list plus initializer in a single transaction.

        A revert raises UpgradeFailed carrying the chain's reason verbatim. Nothing is
        retried: the only recovery is fixing the cause and applying the whole cut again.
        """
        data = self.build_cut_data(cuts, init_target, init_calldata)
        calldata = encode_upgrade_call(data)

        nonce = self.tx_options.nonce
        if nonce is None:
            nonce = self.client.get_transaction_count(self.client.address)
        gas_price = self.tx_options.gas_price
        if gas_price is None:
            gas_price = self.client.get_gas_price()

        print(
            f"\n(i) Upgrading diamond {self.diamond} with {len(data.facet_cuts)} facet cut(s), "
            f"initializer {data.init_address}"
        )
        tx_hash = self.client.send_transaction(
            to=self.diamond,
            data=calldata,
            value=0,
            nonce=nonce,
            gas_limit=self.tx_options.gas_limit,
            gas_price=gas_price,
        )
        receipt = self.client.wait(tx_hash)
        if not receipt.succeeded:
            reason = self.client.get_revert_reason(tx_hash)
            raise UpgradeFailed(name=f"Upgrade of {self.diamond}", reason=reason, tx_hash=tx_hash)

        print(f"(i) Diamond upgraded in {tx_hash}, gas used: {receipt.gas_used}")
        return receipt
