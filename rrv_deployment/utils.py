import os
from pathlib import Path
from typing import Optional

import yaml
from ape.logging import logger

from rrv_deployment.constants import ETHERSCAN_API_KEY_ENVVAR


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def get_explorer_api_key(envvar: str = ETHERSCAN_API_KEY_ENVVAR) -> Optional[str]:
    """Returns the block explorer API key from the environment, if set."""
    api_key = os.environ.get(envvar)
    if not api_key:
        logger.warning(f"{envvar} is not set; contract verification is unavailable.")
        return None
    return api_key
