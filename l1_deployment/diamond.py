"""
Diamond (multi-facet proxy) cuts.

A cut maps 4-byte function selectors onto facet contracts. ``compute_cut`` diffs the
selectors a diamond currently routes against a target facet set, yielding the minimal
list of Remove, Replace and Add actions, in that order and sorted by facet address, so
that the same inputs always produce byte-identical upgrade calldata.
"""

from collections import defaultdict
from enum import IntEnum
from typing import Dict, FrozenSet, Iterable, List, Mapping, NamedTuple, Tuple

from eth_abi import decode, encode
from eth_typing import ChecksumAddress
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from l1_deployment.chain import ChainClient
from l1_deployment.constants import ZERO_ADDRESS
from l1_deployment.errors import ConfigurationError, SelectorConflict

# facet address -> selectors it serves
DiamondState = Dict[ChecksumAddress, FrozenSet[bytes]]

FACET_CUT_TYPE = "(address,uint8,bool,bytes4[])"
DIAMOND_CUT_DATA_TYPE = f"({FACET_CUT_TYPE}[],address,bytes)"

LOUPE_FACETS_SELECTOR = function_signature_to_4byte_selector("facets()")


class FacetAction(IntEnum):
    ADD = 0
    REPLACE = 1
    REMOVE = 2


# Remove first so that no selector is ever routed to two facets mid-cut
_ACTION_ORDER = (FacetAction.REMOVE, FacetAction.REPLACE, FacetAction.ADD)


class FacetCut(NamedTuple):
    facet: ChecksumAddress
    action: FacetAction
    selectors: Tuple[bytes, ...]
    is_freezable: bool = False

    def as_abi(self) -> tuple:
        return (self.facet, int(self.action), self.is_freezable, list(self.selectors))


class TargetFacet(NamedTuple):
    address: ChecksumAddress
    selectors: FrozenSet[bytes]
    is_freezable: bool = False


class DiamondCutData(NamedTuple):
    facet_cuts: Tuple[FacetCut, ...]
    init_address: ChecksumAddress
    init_calldata: bytes

    def as_abi(self) -> tuple:
        return (
            [cut.as_abi() for cut in self.facet_cuts],
            self.init_address,
            self.init_calldata,
        )


def _address_key(address: str) -> int:
    return int(address, 16)


def _selector_owners(current: DiamondState) -> Dict[bytes, ChecksumAddress]:
    owners = dict()
    for facet, selectors in current.items():
        if _address_key(facet) == 0:
            continue
        for selector in selectors:
            owners[selector] = to_checksum_address(facet)
    return owners


def _validate_targets(targets: Mapping[str, TargetFacet]) -> None:
    claimed: Dict[bytes, str] = dict()
    facets: Dict[int, str] = dict()
    for name in sorted(targets):
        target = targets[name]
        address = _address_key(target.address)
        if address == 0:
            raise ConfigurationError(f"Target facet {name} has the zero address.")
        # freezability is per facet address, every target sharing one must agree
        sibling = facets.setdefault(address, name)
        if targets[sibling].is_freezable != target.is_freezable:
            raise ConfigurationError(
                f"Target facets {sibling} and {name} share the address {target.address} "
                "but disagree on whether it is freezable."
            )
        for selector in target.selectors:
            if len(selector) != 4:
                raise ConfigurationError(
                    f"Target facet {name} has a malformed selector 0x{selector.hex()}."
                )
            owner = claimed.get(selector)
            if owner is not None and _address_key(targets[owner].address) != _address_key(
                target.address
            ):
                raise SelectorConflict(selector, (owner, name))
            claimed[selector] = name


def compute_cut(current: DiamondState, targets: Mapping[str, TargetFacet]) -> List[FacetCut]:
    """
    Computes the minimal ordered cut turning ``current`` into ``targets``.

    - selectors no facet serves yet are added to their target facet
    - selectors served by a different facet are replaced
    - selectors no target facet claims are removed (one entry per current owner,
      carrying the zero address)
    """
    _validate_targets(targets)
    owners = _selector_owners(current)

    additions: Dict[ChecksumAddress, set] = defaultdict(set)
    replacements: Dict[ChecksumAddress, set] = defaultdict(set)
    freezable: Dict[ChecksumAddress, bool] = dict()
    targeted = set()

    for target in targets.values():
        facet = to_checksum_address(target.address)
        freezable[facet] = target.is_freezable
        for selector in target.selectors:
            targeted.add(selector)
            owner = owners.get(selector)
            if owner is None:
                additions[facet].add(selector)
            elif owner != facet:
                replacements[facet].add(selector)

    removals: Dict[ChecksumAddress, set] = defaultdict(set)
    for selector, owner in owners.items():
        if selector not in targeted:
            removals[owner].add(selector)

    cuts = list()
    for owner in sorted(removals, key=_address_key):
        cuts.append(
            FacetCut(
                facet=ZERO_ADDRESS,
                action=FacetAction.REMOVE,
                selectors=tuple(sorted(removals[owner])),
            )
        )
    for action, grouped in ((FacetAction.REPLACE, replacements), (FacetAction.ADD, additions)):
        for facet in sorted(grouped, key=_address_key):
            cuts.append(
                FacetCut(
                    facet=facet,
                    action=action,
                    selectors=tuple(sorted(grouped[facet])),
                    is_freezable=freezable[facet],
                )
            )
    return cuts


def validate_cut(cuts: Iterable[FacetCut]) -> None:
    """Checks that no selector appears in two entries and that removals carry no facet."""
    seen: Dict[bytes, FacetCut] = dict()
    previous_rank = 0
    for cut in cuts:
        rank = _ACTION_ORDER.index(cut.action)
        if rank < previous_rank:
            raise ConfigurationError("Facet cuts must be ordered Remove, Replace, Add.")
        previous_rank = rank
        if cut.action == FacetAction.REMOVE and _address_key(cut.facet) != 0:
            raise ConfigurationError("Remove entries must carry the zero facet address.")
        for selector in cut.selectors:
            if selector in seen:
                raise SelectorConflict(selector, (seen[selector].facet, cut.facet))
            seen[selector] = cut


def encode_diamond_cut(data: DiamondCutData) -> bytes:
    """ABI-encodes a DiamondCutData struct as a single argument."""
    return encode([DIAMOND_CUT_DATA_TYPE], [data.as_abi()])


def decode_facets(raw: bytes) -> DiamondState:
    (facets,) = decode(["(address,bytes4[])[]"], raw)
    state = dict()
    for facet, selectors in facets:
        state[to_checksum_address(facet)] = frozenset(bytes(selector) for selector in selectors)
    return state


def fetch_diamond_state(client: ChainClient, diamond: ChecksumAddress) -> DiamondState:
    """Reads the current facet -> selectors routing from the diamond's loupe."""
    raw = client.call(diamond, LOUPE_FACETS_SELECTOR)
    return decode_facets(raw)
