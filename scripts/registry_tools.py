#!/usr/bin/python3
from pathlib import Path

import click

from l1_deployment.options import registry_filepath_option
from l1_deployment.registry import merge_registries, normalize_registry
from l1_deployment.types import MinInt


@click.group()
def cli():
    """Registry file maintenance"""


@cli.command()
@click.argument(
    "registries",
    nargs=2,
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
)
@click.option(
    "--output-registry",
    "-o",
    help="Filepath of output registry file",
    type=click.Path(dir_okay=False, exists=False, path_type=Path),
    required=True,
)
@click.option(
    "--chain-id",
    "-c",
    "chain_ids",
    help="Only merge entries for this chain ID; repeat for several chains",
    type=MinInt(1),
    multiple=True,
)
@click.option(
    "--deprecated-contract",
    "-d",
    "deprecated_contracts",
    help="Names of any deprecated contracts to exclude from the merge",
    multiple=True,
)
def merge(registries, output_registry, chain_ids, deprecated_contracts):
    """Merge two registry files; conflicting addresses abort the merge."""
    registry_1, registry_2 = registries
    merge_registries(
        registry_1_filepath=registry_1,
        registry_2_filepath=registry_2,
        output_filepath=output_registry,
        deprecated_contracts=list(deprecated_contracts),
        chain_ids=chain_ids or None,
    )


@cli.command()
@registry_filepath_option
@click.option(
    "--drop-pending",
    help="Forget broadcast transactions that were never confirmed, so the next run resends them",
    is_flag=True,
    default=False,
)
def normalize(registry_filepath, drop_pending):
    """Rewrite a registry file in the standard order and format."""
    dropped = normalize_registry(registry_filepath, drop_pending=drop_pending)
    if dropped:
        click.secho(
            f"Dropped {len(dropped)} pending transaction(s); check them on chain before "
            "deploying again.",
            fg="yellow",
        )


if __name__ == "__main__":
    cli()
