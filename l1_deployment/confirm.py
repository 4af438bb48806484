from typing import Optional, Sequence

from eth_typing import ChecksumAddress

from l1_deployment.constants import ZERO_ADDRESS
from l1_deployment.diamond import FacetCut


def _continue() -> None:
    """Asks the user to continue."""
    answer = input("Continue Y/N? ")
    if answer.lower().strip() == "n":
        print("Aborting deployment!")
        exit(-1)


def _confirm_plan(groups: Sequence[Sequence]) -> None:
    """Shows the pending step groups and asks the user to confirm them."""
    if not groups:
        print("\n(i) Nothing left to deploy.")
        return

    print("\nDeployment plan")
    for index, group in enumerate(groups):
        print(f"\tGroup {index}: {', '.join(step.name for step in group)}")
    _continue()


def _confirm_cut(
    cuts: Sequence[FacetCut], init_target: Optional[ChecksumAddress], init_calldata: bytes
) -> None:
    """Shows a diamond cut before it is signed and asks the user to confirm it."""
    print("\nDiamond cut")
    for cut in cuts:
        selectors = ", ".join(f"0x{selector.hex()}" for selector in cut.selectors)
        print(f"\t{cut.action.name} {cut.facet} (freezable={cut.is_freezable}): {selectors}")
    print(f"\tinitializer={init_target or ZERO_ADDRESS}")
    print(f"\tcalldata=0x{init_calldata.hex()}")
    _continue()
