#!/usr/bin/python3

import asyncio
from dataclasses import replace
from typing import List, Optional

import click
from ape import networks
from ape.cli import ConnectedProviderCommand, account_option, network_option

from rrv_deployment.exceptions import DeploymentError
from rrv_deployment.locks import DeploymentLocks
from rrv_deployment.networks import (
    ApeSigner,
    get_artifact_resolver,
    get_network_description,
    get_verifier,
    is_local_network,
)
from rrv_deployment.options import (
    auto_option,
    label_option,
    ledger_filepath_option,
    lock_timeout_option,
    params_filepath_option,
    verify_option,
)
from rrv_deployment.orchestrator import DeploymentOrchestrator
from rrv_deployment.params import DeploymentParameters, ResolutionContext, validate_chain_id
from rrv_deployment.registry import DeploymentLedger, DeploymentRecord
from rrv_deployment.submitter import ZERO_ADDRESS


def _print_deployment_info(signer, parameters, ledger, verify):
    print(
        f"Account: {signer.address}",
        f"Config: {parameters.path}",
        f"Ledger: {ledger.filepath}",
        f"Verify: {verify}",
        f"Network: {get_network_description()}",
        f"Chain ID: {networks.provider.network.chain_id}",
        f"Gas Price: {networks.provider.gas_price}",
        sep="\n",
    )


def _has_zero_address(value) -> bool:
    if isinstance(value, (list, tuple)):
        return any(_has_zero_address(item) for item in value)
    return value == ZERO_ADDRESS


def _confirm_resolution(resolved_params, label: str, contract_name: str) -> None:
    if resolved_params:
        print(f"\nConstructor parameters for {contract_name} ('{label}')")
        for name, resolved_value in resolved_params.items():
            print(f"\t{name}={resolved_value}")
    else:
        print(f"\n(i) No constructor parameters for {contract_name}")

    click.confirm(f"Deploy {contract_name} as '{label}'?", abort=True)
    if any(_has_zero_address(value) for value in resolved_params.values()):
        click.confirm("Zero address detected in the constructor parameters; continue?", abort=True)


async def _deploy_labels(
    orchestrator: DeploymentOrchestrator,
    signer: ApeSigner,
    parameters: DeploymentParameters,
    labels: List[str],
    verify: Optional[bool],
    auto: bool,
) -> List[DeploymentRecord]:
    records = list()
    for label in labels:
        # labels deploy in order so that later ones may reference earlier addresses
        context = ResolutionContext(
            network=signer.network, deployer=signer.address, ledger=orchestrator.ledger
        )
        request = parameters.request(label, context)
        if verify is not None:
            request = replace(request, verify=verify)

        if not auto and orchestrator.ledger.lookup(signer.network, label) is None:
            resolved_params = parameters.resolve(label, context)
            _confirm_resolution(resolved_params, label, request.contract_name)

        record = await orchestrator.deploy(signer, request)
        records.append(record)
    return records


@click.command(cls=ConnectedProviderCommand, name="deploy-rrv-platform")
@account_option()
@network_option(required=True)
@params_filepath_option
@ledger_filepath_option
@label_option
@verify_option
@lock_timeout_option
@auto_option
def cli(
    account,
    network,
    params_filepath,
    ledger_filepath,
    labels,
    verify,
    lock_timeout,
    auto,
):
    """Deploy the RRV Platform contracts, at most once per network."""
    parameters = DeploymentParameters.from_yaml(filepath=params_filepath)
    if not is_local_network():
        validate_chain_id(parameters.chain_id, networks.provider.network.chain_id)

    labels = list(labels) or parameters.labels
    unknown = [label for label in labels if label not in parameters.labels]
    if unknown:
        raise click.BadOptionUsage(
            option_name="--label",
            message=f"Unknown label(s) {', '.join(unknown)}; expected one of {parameters.labels}",
        )

    if auto:
        print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        account.set_autosign(True)
    signer = ApeSigner(account)

    resolver = get_artifact_resolver(parameters.artifacts_dir)
    verify_requested = parameters.verify if verify is None else verify
    verifier = get_verifier(resolver) if verify_requested else None

    ledger_filepath = ledger_filepath or parameters.ledger_filepath
    with DeploymentLedger(ledger_filepath) as ledger:
        _print_deployment_info(signer, parameters, ledger, verify_requested)
        if not auto:
            click.confirm("Continue?", abort=True)

        lock_kwargs = dict() if lock_timeout is None else {"wait_timeout": lock_timeout}
        locks = DeploymentLocks.for_ledger(ledger, **lock_kwargs)
        orchestrator = DeploymentOrchestrator(
            ledger=ledger, resolver=resolver, verifier=verifier, locks=locks
        )
        try:
            records = asyncio.run(
                _deploy_labels(orchestrator, signer, parameters, labels, verify, auto)
            )
        except (DeploymentError, ValueError) as e:
            raise click.ClickException(f"{e.__class__.__name__}: {e}")

    click.secho(f"\nDeployments on {get_network_description()}", fg="green")
    for index, record in enumerate(records, start=1):
        status = "verified" if record.verified else "unverified"
        click.secho(f"    {index}. {record.label} ({record.contract_name})", fg="yellow")
        click.secho(f"        address: {record.address}", fg="cyan")
        click.secho(f"        tx: {record.tx_hash} (block {record.block_number})", fg="cyan")
        click.secho(f"        {status}", fg="cyan")


if __name__ == "__main__":
    cli()
