import asyncio
from typing import List, Optional

import pytest
from eth_utils import keccak, to_checksum_address

from rrv_deployment.artifacts import MappingArtifactResolver
from rrv_deployment.encoding import predict_contract_address
from rrv_deployment.locks import DeploymentLocks
from rrv_deployment.orchestrator import DeploymentOrchestrator, DeployRequest
from rrv_deployment.registry import DeploymentLedger
from rrv_deployment.submitter import (
    Receipt,
    RetryPolicy,
    Signer,
    TransactionSubmitter,
    UnsignedDeployment,
)
from rrv_deployment.verification import (
    Explorer,
    ExplorerResult,
    VerificationStatus,
    VerificationSubmitter,
)

# Common constants
CHAIN_ID = "11155111"
OTHER_CHAIN_ID = "80002"
DEPLOYER = to_checksum_address("0x6ac7ea33f8831ea9dcc53393aaa88b25a785dbf0")

RRV_PLATFORM_ARGS = ["RRV Platform", "RRV Platform", 100]
RRV_PLATFORM_ABI = [
    {
        "type": "constructor",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_name", "type": "string", "internalType": "string"},
            {"name": "_symbol", "type": "string", "internalType": "string"},
            {"name": "_fee", "type": "uint256", "internalType": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "fee",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]
RRV_PLATFORM_BYTECODE = "0x608060405234801561001057600080fd5b50"
COMPILER_METADATA = {
    "version": "0.8.23",
    "settings": {"optimizer": {"enabled": True, "runs": 200}},
    "source_code": "contract RRVPlatform {}",
}

ARTIFACTS = {
    "RRVPlatform": {
        "abi": RRV_PLATFORM_ABI,
        "bytecode": RRV_PLATFORM_BYTECODE,
        "compiler": COMPILER_METADATA,
    },
    "NoArgs": {"abi": [], "bytecode": "0x6080"},
    "IRRVPlatform": {"abi": [], "bytecode": "0x"},
}


class FakeSigner(Signer):
    """In-memory chain for a single account; every broadcast consumes a nonce."""

    def __init__(self, network: str = CHAIN_ID, address: str = DEPLOYER, nonce: int = 0):
        self._network = network
        self._address = to_checksum_address(address)
        self.nonce = nonce
        self.broadcasts: List[UnsignedDeployment] = list()
        self.broadcast_errors: List[Exception] = list()
        self.receipts = dict()
        self.code = dict()
        self.receipt_polls = 0
        self.pending_polls = 0
        self.revert = False
        self.never_mine = False
        self.hang_receipts = False

    @property
    def address(self):
        return self._address

    @property
    def network(self):
        return self._network

    async def broadcast(self, tx: UnsignedDeployment) -> str:
        await asyncio.sleep(0)
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        self.broadcasts.append(tx)
        tx_hash = "0x" + keccak(text=f"{self.network}:{tx.nonce}:{len(self.broadcasts)}").hex()
        contract_address = predict_contract_address(self.address, tx.nonce)
        if not self.revert:
            self.code[contract_address] = b"\x60\x80"
        self.receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            contract_address=None if self.revert else contract_address,
            block_number=100 + len(self.broadcasts),
            status=0 if self.revert else 1,
        )
        self.nonce += 1
        return tx_hash

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        self.receipt_polls += 1
        if self.hang_receipts:
            await asyncio.Event().wait()
        if self.never_mine:
            return None
        if self.pending_polls > 0:
            self.pending_polls -= 1
            return None
        return self.receipts.get(tx_hash)

    async def get_nonce(self) -> int:
        return self.nonce

    async def get_code(self, address: str) -> bytes:
        return self.code.get(to_checksum_address(address), b"")


class FakeExplorer(Explorer):
    """Replays scripted explorer results; the last one repeats."""

    def __init__(self, submit_results=None, status_results=None):
        self.submit_results = list(submit_results or [])
        self.status_results = list(status_results or [])
        self.submissions = list()
        self.status_checks = list()

    @staticmethod
    def _next(results):
        if len(results) > 1:
            return results.pop(0)
        return results[0]

    async def submit(self, job, compiler_metadata):
        self.submissions.append((job.address, job.constructor_args_encoded, compiler_metadata))
        result = self._next(self.submit_results)
        if isinstance(result, Exception):
            raise result
        return result

    async def check_status(self, guid):
        self.status_checks.append(guid)
        result = self._next(self.status_results)
        if isinstance(result, Exception):
            raise result
        return result


class RecordingSleep:
    def __init__(self):
        self.delays = list()

    async def __call__(self, delay):
        self.delays.append(delay)


def queued(guid: str = "guid-1") -> ExplorerResult:
    return ExplorerResult(VerificationStatus.PENDING, guid, guid=guid)


def verified() -> ExplorerResult:
    return ExplorerResult(VerificationStatus.SUCCEEDED, "Pass - Verified")


def rejected() -> ExplorerResult:
    return ExplorerResult(VerificationStatus.FAILED, "Fail - Unable to verify")


# Fixtures
@pytest.fixture
def resolver():
    return MappingArtifactResolver(ARTIFACTS)


@pytest.fixture
def ledger_filepath(tmp_path):
    return tmp_path / "deployments.json"


@pytest.fixture
def ledger(ledger_filepath):
    with DeploymentLedger(ledger_filepath) as ledger:
        yield ledger


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def policy():
    return RetryPolicy(
        base_delay=2, max_delay=30, max_attempts=4, submit_attempts=3, call_timeout=5
    )


@pytest.fixture
def submitter(policy, sleep):
    return TransactionSubmitter(policy=policy, sleep=sleep)


@pytest.fixture
def explorer():
    return FakeExplorer(submit_results=[queued()], status_results=[verified()])


@pytest.fixture
def verifier(explorer, resolver, sleep):
    return VerificationSubmitter(
        explorer=explorer, resolver=resolver, interval=5, max_attempts=4, sleep=sleep
    )


@pytest.fixture
def locks(ledger):
    return DeploymentLocks.for_ledger(ledger)


@pytest.fixture
def orchestrator(ledger, resolver, submitter, verifier, locks):
    return DeploymentOrchestrator(
        ledger=ledger, resolver=resolver, submitter=submitter, verifier=verifier, locks=locks
    )


@pytest.fixture
def rrv_request():
    return DeployRequest(
        label="RRV Platform", contract_name="RRVPlatform", constructor_args=RRV_PLATFORM_ARGS
    )
