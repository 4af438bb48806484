from pathlib import Path

import click

from l1_deployment.constants import DEPLOYER_PRIVATE_KEY_ENVVAR, WEB3_PROVIDER_URI_ENVVAR
from l1_deployment.types import ChecksumAddress, HexData, MinInt

params_filepath_option = click.option(
    "--params-filepath",
    "-p",
    help="Filepath to a YAML deployment parameters file",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

rpc_uri_option = click.option(
    "--rpc-uri",
    help="HTTP JSON-RPC endpoint of the target chain",
    envvar=WEB3_PROVIDER_URI_ENVVAR,
    required=True,
)

private_key_option = click.option(
    "--private-key",
    help="Private key of the deployer account",
    envvar=DEPLOYER_PRIVATE_KEY_ENVVAR,
    required=True,
)

autosign_option = click.option(
    "--autosign",
    help="Sign all transactions without confirmation prompts",
    is_flag=True,
    default=False,
)

verbose_option = click.option(
    "--verbose",
    "-v",
    help="Print CONTRACTS_*_ADDR lines for every recorded contract",
    is_flag=True,
    default=False,
)

registry_filepath_option = click.option(
    "--registry-filepath",
    "-r",
    help="Filepath to a registry file",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

chain_id_option = click.option(
    "--chain-id",
    "-c",
    help="Only consider entries for this chain ID",
    type=MinInt(1),
    required=False,
)

version_option = click.option(
    "--version",
    help="Version number of the upgrade; facets are recorded as <Facet>V<version>",
    type=MinInt(1),
    required=True,
)

diamond_option = click.option(
    "--diamond",
    help="Diamond proxy to upgrade (default: DiamondProxy from the registry)",
    type=ChecksumAddress(),
    required=False,
)

init_contract_option = click.option(
    "--init-contract",
    help="Upgrade initializer to deploy and run",
    type=click.Choice(["DiamondUpgradeInit", "DefaultUpgrade"]),
    required=False,
)

init_calldata_option = click.option(
    "--init-calldata",
    help="Calldata for the upgrade initializer",
    type=HexData(),
    default="0x",
)
