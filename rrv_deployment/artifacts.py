import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

from eth_utils.abi import collapse_if_tuple
from hexbytes import HexBytes

from rrv_deployment.exceptions import UnknownContractError

ABI = List[Dict[str, Any]]


class ContractArtifact(NamedTuple):
    """Compiled output needed to deploy and verify a single contract."""

    name: str
    abi: ABI
    bytecode: HexBytes
    constructor_param_types: List[str]
    compiler_metadata: Dict[str, Any]


def get_constructor_abi(abi: ABI) -> Optional[Dict[str, Any]]:
    for entry in abi:
        if entry.get("type") == "constructor":
            return entry
    return None


def get_constructor_param_types(abi: ABI) -> List[str]:
    """Returns the canonical ABI types of the constructor inputs, in order."""
    constructor_abi = get_constructor_abi(abi)
    if constructor_abi is None:
        return list()
    return [collapse_if_tuple(abi_input) for abi_input in constructor_abi.get("inputs", [])]


def _get_bytecode(data: Dict[str, Any]) -> Optional[str]:
    # hardhat: "bytecode": "0x..."; foundry: "bytecode": {"object": "0x..."}
    # ape ContractType: "deploymentBytecode": {"bytecode": "0x..."}
    bytecode = data.get("bytecode")
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object")
    if not bytecode:
        deployment_bytecode = data.get("deploymentBytecode") or {}
        bytecode = deployment_bytecode.get("bytecode")
    return bytecode


def _get_compiler_metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    metadata = data.get("compiler") or data.get("metadata") or dict()
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return metadata


def artifact_from_json(contract_name: str, data: Dict[str, Any]) -> ContractArtifact:
    abi = data.get("abi")
    if abi is None:
        raise UnknownContractError(f"Artifact for '{contract_name}' has no ABI.")
    bytecode = _get_bytecode(data)
    if not bytecode or HexBytes(bytecode) == HexBytes(b""):
        raise UnknownContractError(
            f"Artifact for '{contract_name}' has no deployment bytecode; "
            "is it an interface or abstract contract?"
        )
    return ContractArtifact(
        name=contract_name,
        abi=abi,
        bytecode=HexBytes(bytecode),
        constructor_param_types=get_constructor_param_types(abi),
        compiler_metadata=_get_compiler_metadata(data),
    )


class ArtifactResolver(ABC):
    """Maps a contract name to its compiled artifact."""

    @abstractmethod
    def resolve(self, contract_name: str) -> ContractArtifact:
        raise NotImplementedError


class MappingArtifactResolver(ArtifactResolver):
    """Resolves from an in-memory mapping of contract name to {abi, bytecode}."""

    def __init__(self, artifacts: Mapping[str, Dict[str, Any]]):
        self._artifacts = dict(artifacts)

    def resolve(self, contract_name: str) -> ContractArtifact:
        try:
            data = self._artifacts[contract_name]
        except KeyError:
            raise UnknownContractError(f"No compiled artifact found for '{contract_name}'.")
        return artifact_from_json(contract_name, data)


class ArtifactDirectoryResolver(ArtifactResolver):
    """
    Resolves from compiled artifact files named <ContractName>.json anywhere below a
    directory (hardhat `artifacts/`, foundry `out/` or ape `.build/`).
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _find(self, contract_name: str) -> Path:
        if not self.directory.is_dir():
            raise UnknownContractError(f"Artifacts directory {self.directory} does not exist.")
        matches = sorted(self.directory.rglob(f"{contract_name}.json"))
        if not matches:
            raise UnknownContractError(
                f"No compiled artifact found for '{contract_name}' in {self.directory}."
            )
        if len(matches) > 1:
            raise ValueError(
                f"Ambiguous artifact for '{contract_name}': "
                f"{', '.join(str(m) for m in matches)}"
            )
        return matches[0]

    def resolve(self, contract_name: str) -> ContractArtifact:
        filepath = self._find(contract_name)
        with open(filepath, "r") as file:
            data = json.load(file)
        return artifact_from_json(contract_name, data)
