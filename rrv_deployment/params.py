import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, List, Optional

from ape.logging import logger

from rrv_deployment.constants import ARTIFACTS_DIR
from rrv_deployment.orchestrator import DeployRequest
from rrv_deployment.registry import DeploymentLedger, NetworkId
from rrv_deployment.utils import _load_yaml

CONTRACT_NAME_KEY = "contract"
CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_VERIFY_KEY = "verify"


class VariableContext:
    def __init__(
        self,
        labels: List[str],
        label: str,
        constants: typing.Dict[str, Any] = None,
    ):
        self.labels = labels or list()
        self.label = label
        self.constants = constants or dict()


class ResolutionContext(typing.NamedTuple):
    """What variables need at deploy time."""

    network: NetworkId
    deployer: str
    ledger: DeploymentLedger


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        return isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, context: ResolutionContext) -> Any:
        return context.deployer


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise ValueError(f"Constant '{constant_name}' not found in deployment file.")

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a deployment constant."""
        return value.isupper()

    def resolve(self, context: ResolutionContext) -> Any:
        return self.constant_value


class DeployedLabel(Variable):
    """The address of another labelled deployment on the same network."""

    def __init__(self, label: str, context: VariableContext):
        if label not in context.labels:
            raise ValueError(f"Label '{label}' not found in deployment file.")
        if label == context.label:
            raise ValueError(f"'{label}' cannot reference its own address.")
        self.label = label

    def resolve(self, context: ResolutionContext) -> Any:
        record = context.ledger.lookup(context.network, self.label)
        if record is None:
            raise ValueError(
                f"'{self.label}' must be deployed on {context.network} before it can be "
                "used as a constructor parameter."
            )
        return record.address


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        return DeployedLabel(variable, context)


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, variable_context)

    return value


def _resolve_param(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, context) for v in value]

    if isinstance(value, Variable):
        return value.resolve(context)

    return value  # literally a value


class ContractParameters(typing.NamedTuple):
    label: str
    contract_name: str
    constructor_params: "OrderedDict[str, Any]"
    verify: Optional[bool]


def _get_labels(config: typing.Dict) -> List[str]:
    labels = list()
    for contract_info in config["contracts"]:
        if isinstance(contract_info, str):
            labels.append(contract_info)
        elif isinstance(contract_info, dict) and len(contract_info) == 1:
            labels.extend(list(contract_info.keys()))
        else:
            raise DeploymentParameters.Invalid("Malformed contracts section in params YAML.")
    if len(set(labels)) != len(labels):
        raise DeploymentParameters.Invalid("Duplicate labels in params YAML.")
    return labels


def _constructor_items(label: str, constructor_data: Any) -> "OrderedDict[str, Any]":
    # named (mapping) or positional (list) constructor parameters
    if constructor_data is None:
        return OrderedDict()
    if isinstance(constructor_data, dict):
        return OrderedDict(constructor_data)
    if isinstance(constructor_data, list):
        return OrderedDict((str(i), v) for i, v in enumerate(constructor_data))
    raise DeploymentParameters.Invalid(f"Malformed constructor parameters for '{label}'.")


def validate_config(config: typing.Dict) -> None:
    deployment = config.get("deployment")
    if not deployment:
        raise DeploymentParameters.Invalid("deployment is not set in params file.")

    contracts = config.get("contracts")
    if not contracts:
        raise DeploymentParameters.Invalid("Params file missing 'contracts' field.")


def validate_chain_id(expected: Optional[int], actual: int) -> None:
    if expected is not None and int(expected) != int(actual):
        raise DeploymentParameters.Invalid(
            f"chain_id in params file ({expected}) does not match "
            f"chain_id of current network ({actual})."
        )


class DeploymentParameters:
    """Deployment settings and constructor parameters for a set of labelled contracts."""

    class Invalid(ValueError):
        """Raised when the deployment parameters are invalid"""

    def __init__(self, config: typing.Dict, path: Optional[Path] = None):
        validate_config(config)
        self.config = config
        self.path = path
        self.constants = config.get("constants") or dict()
        self.labels = _get_labels(config)
        self.contracts = OrderedDict()
        for contract_info in config["contracts"]:
            parameters = self._process_contract(contract_info)
            self.contracts[parameters.label] = parameters

    @classmethod
    def from_yaml(cls, filepath: Path) -> "DeploymentParameters":
        logger.info(f"Processing deployment parameters from {filepath}...")
        config = _load_yaml(filepath)
        return cls(config=config, path=filepath)

    @property
    def _deployment(self) -> typing.Dict[str, Any]:
        return self.config["deployment"]

    @property
    def chain_id(self) -> Optional[int]:
        chain_id = self._deployment.get("chain_id")
        return int(chain_id) if chain_id is not None else None

    @property
    def verify(self) -> bool:
        return bool(self._deployment.get("verify", False))

    @property
    def ledger_filepath(self) -> Path:
        filepath = Path(self._deployment.get("ledger", "deployments.json"))
        if filepath.is_absolute():
            return filepath
        return ARTIFACTS_DIR / filepath

    @property
    def artifacts_dir(self) -> Optional[Path]:
        artifacts_dir = self._deployment.get("artifacts_dir")
        if artifacts_dir is None:
            return None
        artifacts_dir = Path(artifacts_dir)
        if not artifacts_dir.is_absolute() and self.path is not None:
            artifacts_dir = Path(self.path).parent / artifacts_dir
        return artifacts_dir

    def _process_contract(self, contract_info: Any) -> ContractParameters:
        if isinstance(contract_info, str):
            return ContractParameters(
                label=contract_info,
                contract_name=contract_info,
                constructor_params=OrderedDict(),
                verify=None,
            )

        label = list(contract_info.keys())[0]  # only one entry
        contract_data = contract_info[label] or dict()
        if not isinstance(contract_data, dict):
            raise self.Invalid(f"Malformed parameters for '{label}'.")

        context = VariableContext(labels=self.labels, label=label, constants=self.constants)
        constructor_params = OrderedDict()
        raw_params = _constructor_items(
            label, contract_data.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY)
        )
        for name, value in raw_params.items():
            constructor_params[name] = _process_raw_value(value, context)

        return ContractParameters(
            label=label,
            contract_name=contract_data.get(CONTRACT_NAME_KEY, label),
            constructor_params=constructor_params,
            verify=contract_data.get(CONTRACT_VERIFY_KEY),
        )

    def resolve(self, label: str, context: ResolutionContext) -> "OrderedDict[str, Any]":
        """Resolves the constructor parameters for a single label."""
        try:
            parameters = self.contracts[label]
        except KeyError:
            raise self.Invalid(f"No parameters for '{label}' in deployment file.")
        resolved_params = OrderedDict()
        for name, value in parameters.constructor_params.items():
            resolved_params[name] = _resolve_param(value, context)
        return resolved_params

    def request(self, label: str, context: ResolutionContext) -> DeployRequest:
        parameters = self.contracts.get(label)
        resolved_params = self.resolve(label, context)
        verify = self.verify if parameters.verify is None else bool(parameters.verify)
        return DeployRequest(
            label=label,
            contract_name=parameters.contract_name,
            constructor_args=list(resolved_params.values()),
            verify=verify,
        )
