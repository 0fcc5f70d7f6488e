import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import requests
from ape import networks, project
from ape.api import AccountAPI
from ape.api.networks import LOCAL_NETWORK_NAME
from ape.contracts import ContractContainer
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3.exceptions import TransactionNotFound

from rrv_deployment.artifacts import (
    ArtifactDirectoryResolver,
    ArtifactResolver,
    ContractArtifact,
    get_constructor_param_types,
)
from rrv_deployment.exceptions import NetworkError, UnknownContractError
from rrv_deployment.submitter import Receipt, Signer, UnsignedDeployment
from rrv_deployment.utils import get_explorer_api_key
from rrv_deployment.verification import EtherscanClient, VerificationSubmitter


def is_local_network() -> bool:
    network_name = networks.provider.network.name
    return network_name == LOCAL_NETWORK_NAME or network_name.endswith("-fork")


def get_network_id() -> str:
    """Ledger identifier of the connected network: its chain id."""
    return str(networks.provider.network.chain_id)


def get_network_description() -> str:
    network = networks.provider.network
    return f"{network.ecosystem.name}:{network.name}"


class ApeSigner(Signer):
    """Signs with an ape account and talks to the connected ape provider."""

    def __init__(self, account: AccountAPI):
        self._account = account
        self._network_id = get_network_id()

    @property
    def account(self) -> AccountAPI:
        return self._account

    @property
    def address(self) -> ChecksumAddress:
        return to_checksum_address(self._account.address)

    @property
    def network(self) -> str:
        return self._network_id

    @property
    def _web3(self):
        return networks.provider.web3

    @staticmethod
    async def _run(func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (requests.RequestException, ConnectionError) as e:
            raise NetworkError(str(e)) from e

    def _sign_and_send(self, tx: UnsignedDeployment) -> str:
        ecosystem = networks.provider.network.ecosystem
        txn = ecosystem.create_transaction(
            data=bytes(tx.data),
            value=tx.value,
            sender=self.address,
            nonce=tx.nonce,
        )
        txn = self._account.prepare_transaction(txn)
        signed = self._account.sign_transaction(txn)
        if signed is None:
            raise ValueError(f"Signing was declined for account {self.address}.")
        tx_hash = self._web3.eth.send_raw_transaction(signed.serialize_transaction())
        return "0x" + bytes(HexBytes(tx_hash)).hex()

    def _fetch_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            receipt = self._web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        contract_address = receipt.get("contractAddress")
        return Receipt(
            tx_hash=tx_hash,
            contract_address=to_checksum_address(contract_address) if contract_address else None,
            block_number=receipt["blockNumber"],
            status=receipt.get("status", 1),
        )

    async def broadcast(self, tx: UnsignedDeployment) -> str:
        return await self._run(self._sign_and_send, tx)

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return await self._run(self._fetch_receipt, tx_hash)

    async def get_nonce(self) -> int:
        return await self._run(self._web3.eth.get_transaction_count, self.address, "latest")

    async def get_code(self, address: str) -> bytes:
        code = await self._run(self._web3.eth.get_code, to_checksum_address(address))
        return bytes(code)


def _get_dependency_contract_container(contract: str) -> ContractContainer:
    for dependency_name, dependency_versions in project.dependencies.items():
        if len(dependency_versions) > 1:
            raise ValueError(f"Ambiguous {dependency_name} dependency for {contract}")
        try:
            dependency_api = list(dependency_versions.values())[0]
            return getattr(dependency_api, contract)
        except AttributeError:
            continue
    raise UnknownContractError(f"No contract found with name '{contract}'.")


def get_contract_container(contract: str) -> ContractContainer:
    try:
        contract_container = getattr(project, contract)
    except AttributeError:
        # not in root project; check dependencies
        contract_container = _get_dependency_contract_container(contract)
    return contract_container


class ApeProjectResolver(ArtifactResolver):
    """Resolves artifacts compiled by the active ape project (and its dependencies)."""

    def _compiler_metadata(self, contract_name: str, source_id: Optional[str]) -> Dict[str, Any]:
        metadata: Dict[str, Any] = dict()
        for compiler in project.manifest.compilers or []:
            if contract_name in (compiler.contractTypes or []):
                metadata["version"] = compiler.version
                metadata["settings"] = compiler.settings or dict()
                break
        if source_id:
            source_path = Path(project.path) / source_id
            if source_path.is_file():
                metadata["source_code"] = source_path.read_text()
                metadata["source_path"] = source_id
        return metadata

    def resolve(self, contract_name: str) -> ContractArtifact:
        contract_type = get_contract_container(contract_name).contract_type
        abi = [entry.model_dump(mode="json", by_alias=True) for entry in contract_type.abi]
        bytecode = contract_type.get_deployment_bytecode()
        if not bytecode:
            raise UnknownContractError(f"'{contract_name}' has no deployment bytecode.")
        return ContractArtifact(
            name=contract_name,
            abi=abi,
            bytecode=HexBytes(bytecode),
            constructor_param_types=get_constructor_param_types(abi),
            compiler_metadata=self._compiler_metadata(contract_name, contract_type.source_id),
        )


def get_artifact_resolver(artifacts_dir: Optional[Path] = None) -> ArtifactResolver:
    if artifacts_dir is not None:
        return ArtifactDirectoryResolver(artifacts_dir)
    return ApeProjectResolver()


def get_verifier(resolver: ArtifactResolver) -> Optional[VerificationSubmitter]:
    """Source verifier for the connected network, if one is available."""
    if is_local_network():
        # nothing to verify against
        return None
    api_key = get_explorer_api_key()
    if not api_key:
        return None
    explorer = EtherscanClient(api_key=api_key, chain_id=networks.provider.network.chain_id)
    return VerificationSubmitter(explorer=explorer, resolver=resolver)
