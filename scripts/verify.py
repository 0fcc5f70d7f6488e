#!/usr/bin/python3

import asyncio
from pathlib import Path

import click
from ape.cli import ConnectedProviderCommand, network_option

from rrv_deployment.constants import DEFAULT_LEDGER_FILEPATH
from rrv_deployment.exceptions import DeploymentError
from rrv_deployment.networks import (
    get_artifact_resolver,
    get_network_id,
    get_verifier,
    is_local_network,
)
from rrv_deployment.orchestrator import DeploymentOrchestrator
from rrv_deployment.registry import DeploymentLedger


@click.command(cls=ConnectedProviderCommand)
@network_option(required=True)
@click.option(
    "--label",
    "-n",
    "labels",
    help="Label of the deployment to verify",
    type=click.STRING,
    required=True,
    multiple=True,
)
@click.option(
    "--ledger-filepath",
    "-l",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    default=DEFAULT_LEDGER_FILEPATH,
    show_default=True,
    help="Deployment ledger holding the records to verify",
)
@click.option(
    "--artifacts-dir",
    "-a",
    type=click.Path(file_okay=False, exists=True, path_type=Path),
    required=False,
    help="Directory of compiled artifacts; defaults to the ape project",
)
def cli(network, labels, ledger_filepath, artifacts_dir):
    """Verify recorded deployments on the block explorer."""
    if is_local_network():
        raise click.UsageError("Verification is not available on local networks.")

    resolver = get_artifact_resolver(artifacts_dir)
    verifier = get_verifier(resolver)
    if verifier is None:
        raise click.UsageError("No block explorer API key configured.")

    network_id = get_network_id()
    with DeploymentLedger(ledger_filepath) as ledger:
        orchestrator = DeploymentOrchestrator(ledger=ledger, resolver=resolver, verifier=verifier)
        for label in labels:
            print(f"(i) Verifying '{label}'...")
            try:
                record = asyncio.run(orchestrator.verify(network_id, label))
            except (DeploymentError, ValueError) as e:
                raise click.ClickException(f"{e.__class__.__name__}: {e}")
            click.secho(f"'{record.label}' at {record.address} is verified", fg="green")


if __name__ == "__main__":
    cli()
