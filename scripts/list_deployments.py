#!/usr/bin/python3


from itertools import groupby
from pathlib import Path
from typing import List, Optional

import click

from rrv_deployment.constants import DEFAULT_LEDGER_FILEPATH
from rrv_deployment.registry import DeploymentLedger, DeploymentRecord


def _display_records(records: List[DeploymentRecord]) -> None:
    """Display ledger records grouped by network."""
    for network, network_records in groupby(records, key=lambda r: r.network):
        click.secho(f"\nChain {network}", fg="green")
        for index, record in enumerate(network_records, start=1):
            marker = "" if record.verified else " (unverified)"
            click.secho(
                f"    {index}. {record.label} [{record.contract_name}] {record.address}{marker}",
                fg="cyan",
            )


def _display_pending(ledger: DeploymentLedger, network: Optional[str]) -> None:
    pending = ledger.pending(network)
    if not pending:
        return
    click.secho("\nUnconfirmed deployment attempts", fg="yellow")
    for entry in pending:
        click.secho(
            f"    {entry.network}:{entry.label} nonce={entry.nonce} tx={entry.tx_hash}",
            fg="yellow",
        )


@click.command(name="list-deployments")
@click.option(
    "--ledger-filepath",
    "-l",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    default=DEFAULT_LEDGER_FILEPATH,
    show_default=True,
)
@click.option("--chain-id", "-c", help="Only list deployments on this chain", type=int)
def cli(ledger_filepath, chain_id):
    """List all deployments in the ledger. Optionally filter by chain."""
    network = str(chain_id) if chain_id is not None else None
    with DeploymentLedger(ledger_filepath) as ledger:
        _display_records(ledger.records(network))
        _display_pending(ledger, network)


if __name__ == "__main__":
    cli()
