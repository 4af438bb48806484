#!/usr/bin/python3

import click

from l1_deployment.artifacts import FileArtifactSource
from l1_deployment.chain import Web3ChainClient
from l1_deployment.deployer import L1Deployer
from l1_deployment.errors import DeploymentError
from l1_deployment.options import (
    autosign_option,
    params_filepath_option,
    private_key_option,
    rpc_uri_option,
    verbose_option,
)
from l1_deployment.params import ConfigSource


@click.command()
@params_filepath_option
@rpc_uri_option
@private_key_option
@autosign_option
@verbose_option
def cli(params_filepath, rpc_uri, private_key, autosign, verbose):
    """
    Deploys the L1 stack described by a parameters file.

    Safe to rerun: contracts already recorded in the registry or already live at their
    CREATE2 address are skipped.
    """
    config = ConfigSource.from_yaml(params_filepath)
    client = Web3ChainClient.from_uri(uri=rpc_uri, private_key=private_key)
    deployer = L1Deployer(
        client=client,
        config=config,
        artifacts=FileArtifactSource(config.contracts_dir),
        autosign=autosign,
        verbose=verbose,
    )
    try:
        deployer.run()
    except DeploymentError as e:
        raise click.ClickException(str(e)) from e


if __name__ == "__main__":
    cli()
