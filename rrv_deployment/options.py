from pathlib import Path

import click

from rrv_deployment.constants import CONSTRUCTOR_PARAMS_DIR
from rrv_deployment.types import MinInt

params_filepath_option = click.option(
    "--params-filepath",
    "-p",
    help="Deployment parameters YAML file.",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    default=CONSTRUCTOR_PARAMS_DIR / "rrv-platform.yml",
    show_default=True,
)

ledger_filepath_option = click.option(
    "--ledger-filepath",
    "-l",
    help="Deployment ledger file; overrides the one named in the parameters file.",
    type=click.Path(dir_okay=False, path_type=Path),
    required=False,
)

label_option = click.option(
    "--label",
    "-n",
    "labels",
    help="Label of a deployment; may be repeated.",
    type=click.STRING,
    multiple=True,
)

verify_option = click.option(
    "--verify/--no-verify",
    default=None,
    help="Submit source verification to the block explorer after deploying.",
)

auto_option = click.option(
    "--auto",
    help="Automatically sign transactions and skip confirmation prompts.",
    is_flag=True,
    default=False,
)

lock_timeout_option = click.option(
    "--lock-timeout",
    help="Seconds to wait for another in-flight deployment of the same label (0 fails fast).",
    type=MinInt(0),
    default=None,
)
