#!/usr/bin/python3

import click

from l1_deployment.options import registry_filepath_option
from l1_deployment.registry import AddressRegistry, registry_to_env
from l1_deployment.types import MinInt


@click.command(name="export-env")
@registry_filepath_option
@click.option(
    "--chain-id",
    "-c",
    help="Chain ID whose contracts to export",
    type=MinInt(1),
    required=True,
)
def cli(registry_filepath, chain_id):
    """Print the recorded addresses as CONTRACTS_*_ADDR=<address> lines."""
    registry = AddressRegistry.load(filepath=registry_filepath, chain_id=chain_id, silent=True)
    for line in registry_to_env(registry):
        click.echo(line)


if __name__ == "__main__":
    cli()
