#!/usr/bin/python3

import click

from l1_deployment.artifacts import FileArtifactSource
from l1_deployment.chain import Web3ChainClient
from l1_deployment.deployer import L1Deployer
from l1_deployment.errors import DeploymentError
from l1_deployment.options import (
    autosign_option,
    diamond_option,
    init_calldata_option,
    init_contract_option,
    params_filepath_option,
    private_key_option,
    rpc_uri_option,
    verbose_option,
    version_option,
)
from l1_deployment.params import ConfigSource


@click.command()
@params_filepath_option
@rpc_uri_option
@private_key_option
@version_option
@init_contract_option
@init_calldata_option
@diamond_option
@autosign_option
@verbose_option
def cli(
    params_filepath,
    rpc_uri,
    private_key,
    version,
    init_contract,
    init_calldata,
    diamond,
    autosign,
    verbose,
):
    """
    Deploys a new version of the proof system facets and cuts them into the diamond
    in a single transaction.

    The initializer call is either given as raw --init-calldata or as the `upgrade`
    section (method and args) of the parameters file.
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
    init_method, init_args = config.upgrade_initializer
    try:
        receipt = deployer.upgrade_diamond(
            version=version,
            init_contract=init_contract,
            init_method=init_method,
            init_args=init_args,
            init_calldata=init_calldata,
            diamond=diamond,
        )
    except DeploymentError as e:
        raise click.ClickException(str(e)) from e

    if receipt is not None:
        click.secho(f"Upgrade applied in block {receipt.block_number}", fg="green")


if __name__ == "__main__":
    cli()
