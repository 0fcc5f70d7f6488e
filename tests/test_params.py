import pytest
import yaml

from rrv_deployment.constants import ARTIFACTS_DIR, CONSTRUCTOR_PARAMS_DIR
from rrv_deployment.params import (
    Constant,
    DeployedLabel,
    DeployerAccount,
    DeploymentParameters,
    ResolutionContext,
    validate_chain_id,
)
from tests.conftest import CHAIN_ID, DEPLOYER, RRV_PLATFORM_ARGS
from tests.test_registry import make_record

CONFIG = {
    "deployment": {"name": "rrv-test", "chain_id": int(CHAIN_ID), "verify": True},
    "constants": {"PLATFORM_NAME": "RRV Platform", "PLATFORM_FEE": 100},
    "contracts": [
        {
            "RRV Platform": {
                "contract": "RRVPlatform",
                "constructor": {
                    "_name": "$PLATFORM_NAME",
                    "_symbol": "RRV Platform",
                    "_fee": "$PLATFORM_FEE",
                },
            }
        },
        {
            "Marketplace": {
                "contract": "RRVMarketplace",
                "verify": False,
                "constructor": ["$RRV Platform", "$deployer", ["$deployer", "$RRV Platform"]],
            }
        },
        "NoArgs",
    ],
}


@pytest.fixture
def params_filepath(tmp_path):
    filepath = tmp_path / "rrv-test.yml"
    filepath.write_text(yaml.safe_dump(CONFIG, sort_keys=False))
    return filepath


@pytest.fixture
def context(ledger):
    return ResolutionContext(network=CHAIN_ID, deployer=DEPLOYER, ledger=ledger)


def test_from_yaml(params_filepath):
    parameters = DeploymentParameters.from_yaml(filepath=params_filepath)
    assert parameters.labels == ["RRV Platform", "Marketplace", "NoArgs"]
    assert parameters.chain_id == int(CHAIN_ID)
    assert parameters.verify is True
    assert parameters.ledger_filepath == ARTIFACTS_DIR / "deployments.json"
    assert parameters.artifacts_dir is None


def test_variables_are_parsed(params_filepath):
    parameters = DeploymentParameters.from_yaml(filepath=params_filepath)
    rrv_params = parameters.contracts["RRV Platform"].constructor_params
    assert isinstance(rrv_params["_name"], Constant)
    assert rrv_params["_symbol"] == "RRV Platform"

    marketplace_params = list(parameters.contracts["Marketplace"].constructor_params.values())
    assert isinstance(marketplace_params[0], DeployedLabel)
    assert isinstance(marketplace_params[1], DeployerAccount)
    assert isinstance(marketplace_params[2][0], DeployerAccount)


def test_request(params_filepath, context):
    parameters = DeploymentParameters.from_yaml(filepath=params_filepath)
    request = parameters.request("RRV Platform", context)
    assert request.label == "RRV Platform"
    assert request.contract_name == "RRVPlatform"
    assert request.constructor_args == RRV_PLATFORM_ARGS
    assert request.verify is True

    request = parameters.request("NoArgs", context)
    assert request.contract_name == "NoArgs"
    assert request.constructor_args == []


def test_label_reference_resolves_from_ledger(params_filepath, context, ledger):
    parameters = DeploymentParameters.from_yaml(filepath=params_filepath)
    with pytest.raises(ValueError, match="must be deployed"):
        parameters.request("Marketplace", context)

    record = ledger.record(CHAIN_ID, "RRV Platform", make_record())
    request = parameters.request("Marketplace", context)
    assert request.constructor_args == [record.address, DEPLOYER, [DEPLOYER, record.address]]
    assert request.verify is False


def test_unknown_constant():
    config = {
        "deployment": {"name": "rrv-test"},
        "contracts": [{"RRV Platform": {"constructor": {"_fee": "$MISSING_FEE"}}}],
    }
    with pytest.raises(ValueError, match="MISSING_FEE"):
        DeploymentParameters(config)


def test_unknown_label_reference():
    config = {
        "deployment": {"name": "rrv-test"},
        "contracts": [{"Marketplace": {"constructor": ["$Somewhere"]}}],
    }
    with pytest.raises(ValueError, match="Somewhere"):
        DeploymentParameters(config)


def test_self_reference():
    config = {
        "deployment": {"name": "rrv-test"},
        "contracts": [{"Marketplace": {"constructor": ["$Marketplace"]}}],
    }
    with pytest.raises(ValueError, match="its own address"):
        DeploymentParameters(config)


@pytest.mark.parametrize(
    "config",
    [
        {"contracts": ["RRVPlatform"]},
        {"deployment": {"name": "rrv-test"}},
        {"deployment": {"name": "rrv-test"}, "contracts": ["RRVPlatform", "RRVPlatform"]},
        {"deployment": {"name": "rrv-test"}, "contracts": [{"A": {}, "B": {}}]},
    ],
)
def test_invalid_config(config):
    with pytest.raises(DeploymentParameters.Invalid):
        DeploymentParameters(config)


def test_validate_chain_id():
    validate_chain_id(None, 1)
    validate_chain_id(1, 1)
    with pytest.raises(DeploymentParameters.Invalid):
        validate_chain_id(1, 11155111)


def test_ledger_and_artifacts_paths(tmp_path):
    config = {
        "deployment": {"ledger": str(tmp_path / "ledger.json"), "artifacts_dir": "out"},
        "contracts": ["RRVPlatform"],
    }
    parameters = DeploymentParameters(config, path=tmp_path / "params.yml")
    assert parameters.ledger_filepath == tmp_path / "ledger.json"
    assert parameters.artifacts_dir == tmp_path / "out"


def test_bundled_rrv_platform_params(context):
    filepath = CONSTRUCTOR_PARAMS_DIR / "rrv-platform.yml"
    parameters = DeploymentParameters.from_yaml(filepath=filepath)
    request = parameters.request("RRV Platform", context)
    assert request.contract_name == "RRVPlatform"
    assert request.constructor_args == RRV_PLATFORM_ARGS
    assert request.verify is True
