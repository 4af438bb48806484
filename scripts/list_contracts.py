#!/usr/bin/python3

from itertools import groupby
from typing import List, Optional

import click

from l1_deployment.options import chain_id_option, registry_filepath_option
from l1_deployment.registry import ContractKind, RegistryEntry, read_registry


def _display_registry_entries(entries: List[RegistryEntry], chain_id: Optional[int]) -> None:
    """Display registry entries grouped by chain ID."""
    entries = sorted(entries, key=lambda e: (e.chain_id, e.name))
    for entry_chain_id, chain_entries in groupby(entries, key=lambda e: e.chain_id):
        if chain_id is not None and chain_id != entry_chain_id:
            continue
        click.secho(f"\nChain ID {entry_chain_id}", fg="yellow")
        for index, entry in enumerate(chain_entries, start=1):
            if entry.kind == ContractKind.PENDING:
                click.secho(f"    {index}. {entry.name} awaiting {entry.tx_hash}", fg="red")
                continue
            click.secho(
                f"    {index}. {entry.name} {entry.address} ({entry.kind.value})", fg="cyan"
            )


@click.command(name="list-contracts")
@registry_filepath_option
@chain_id_option
def cli(registry_filepath, chain_id):
    """List all contracts in the registry. Optionally filter by chain ID."""
    entries = read_registry(filepath=registry_filepath)
    _display_registry_entries(entries, chain_id)


if __name__ == "__main__":
    cli()
