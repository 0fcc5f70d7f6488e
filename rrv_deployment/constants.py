from pathlib import Path

import rrv_deployment

#
# Filesystem
#

DEPLOYMENT_DIR = Path(rrv_deployment.__file__).parent
CONSTRUCTOR_PARAMS_DIR = DEPLOYMENT_DIR / "constructor_params"
ARTIFACTS_DIR = DEPLOYMENT_DIR / "artifacts"
DEFAULT_LEDGER_FILEPATH = ARTIFACTS_DIR / "deployments.json"

LEDGER_JSON_FORMAT = {"indent": 4, "separators": (",", ": "), "sort_keys": True}

#
# Transaction submission
#

RECEIPT_POLL_BASE_DELAY = 2  # seconds
RECEIPT_POLL_MAX_DELAY = 30  # seconds
RECEIPT_POLL_MAX_ATTEMPTS = 10
SUBMISSION_MAX_ATTEMPTS = 3
NETWORK_CALL_TIMEOUT = 30  # seconds

#
# Verification
#

VERIFICATION_POLL_INTERVAL = 5  # seconds
VERIFICATION_POLL_MAX_ATTEMPTS = 12
EXPLORER_REQUEST_TIMEOUT = 30  # seconds

ETHERSCAN_API_KEY_ENVVAR = "ETHERSCAN_API_KEY"
ETHERSCAN_API_URL = "https://api.etherscan.io/v2/api"  # multichain, selected by chainid

#
# Locking
#

LOCK_WAIT_TIMEOUT = 300  # seconds
LOCK_FILE_GRACE_PERIOD = 10  # seconds an empty lock file may exist before it is stale
