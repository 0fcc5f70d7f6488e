from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ape.logging import logger
from eth_utils import to_checksum_address

from rrv_deployment.artifacts import ArtifactResolver
from rrv_deployment.encoding import (
    build_deployment_data,
    normalize_args,
    predict_contract_address,
)
from rrv_deployment.exceptions import (
    InProgressError,
    NotFoundError,
    RevertedError,
    VerificationError,
)
from rrv_deployment.locks import DeploymentLocks
from rrv_deployment.registry import (
    DeploymentLedger,
    DeploymentRecord,
    Label,
    NetworkId,
    PendingDeployment,
    ledger_key,
)
from rrv_deployment.submitter import Signer, TransactionSubmitter, UnsignedDeployment
from rrv_deployment.verification import VerificationSubmitter


class DeploymentState(Enum):
    NOT_STARTED = "not_started"
    RESOLVING = "resolving"
    AWAITING_RECEIPT = "awaiting_receipt"
    RECORDED = "recorded"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentState.DONE, DeploymentState.FAILED)


@dataclass(frozen=True)
class DeployRequest:
    label: Label
    contract_name: str
    constructor_args: List[Any] = field(default_factory=list)
    verify: bool = False


class DeploymentOrchestrator:
    """
    Deploys a labelled contract at most once per network.

    The ledger is the source of truth for "already deployed": a record is written only
    once a deployment receipt is confirmed, and before any verification is attempted.
    Verification failures are reported but never undo or fail a recorded deployment.
    """

    def __init__(
        self,
        ledger: DeploymentLedger,
        resolver: ArtifactResolver,
        submitter: Optional[TransactionSubmitter] = None,
        verifier: Optional[VerificationSubmitter] = None,
        locks: Optional[DeploymentLocks] = None,
    ):
        if not ledger.is_open:
            raise ValueError(f"{ledger} must be opened before deploying.")
        self.ledger = ledger
        self.resolver = resolver
        self.submitter = submitter or TransactionSubmitter()
        self.verifier = verifier
        self.locks = locks or DeploymentLocks.for_ledger(ledger)
        self._states: Dict[str, DeploymentState] = dict()

    def state(self, network: NetworkId, label: Label) -> DeploymentState:
        return self._states.get(ledger_key(network, label), DeploymentState.NOT_STARTED)

    def _set_state(self, network: NetworkId, label: Label, state: DeploymentState) -> None:
        logger.debug(f"{ledger_key(network, label)} -> {state.value}")
        self._states[ledger_key(network, label)] = state

    async def deploy(self, signer: Signer, request: DeployRequest) -> DeploymentRecord:
        network = signer.network
        existing = self.ledger.lookup(network, request.label)
        if existing is not None:
            logger.info(
                f"'{request.label}' is already deployed on {network} at {existing.address}; "
                "skipping deployment."
            )
            return existing

        async with self.locks.hold(network, request.label):
            try:
                record, deployed = await self._deploy_locked(signer, request)
            except BaseException:
                self._set_state(network, request.label, DeploymentState.FAILED)
                raise

        if deployed and request.verify:
            record = await self._verify_quietly(record)
        self._set_state(network, request.label, DeploymentState.DONE)
        return record

    async def _deploy_locked(
        self, signer: Signer, request: DeployRequest
    ) -> Tuple[DeploymentRecord, bool]:
        network, label = signer.network, request.label

        # another caller may have finished while we waited on the lock
        existing = self.ledger.lookup(network, label)
        if existing is not None:
            return existing, False

        self._set_state(network, label, DeploymentState.RESOLVING)
        artifact = self.resolver.resolve(request.contract_name)
        data, encoded_args = build_deployment_data(artifact, request.constructor_args)

        nonce = await self.submitter.call(signer.get_nonce())
        record = await self._reconcile(signer, request, nonce)
        if record is not None:
            return record, True

        pending = PendingDeployment(
            network=network,
            label=label,
            contract_name=request.contract_name,
            deployer=signer.address,
            nonce=nonce,
            predicted_address=predict_contract_address(signer.address, nonce),
            constructor_args=normalize_args(request.constructor_args),
            constructor_args_encoded="0x" + bytes(encoded_args).hex(),
        )
        self.ledger.set_pending(pending)

        self._set_state(network, label, DeploymentState.AWAITING_RECEIPT)
        logger.info(f"Deploying {request.contract_name} as '{label}' on {network}...")
        tx = UnsignedDeployment(sender=signer.address, data=data, nonce=nonce)
        tx_hash = await self.submitter.broadcast(signer, tx)
        pending = pending._replace(tx_hash=tx_hash)
        self.ledger.set_pending(pending)

        try:
            receipt = await self.submitter.wait_for_receipt(signer, tx_hash)
        except RevertedError:
            # nothing can land for this attempt anymore
            self.ledger.clear_pending(network, label)
            raise

        record = self._record(pending, tx_hash, receipt.contract_address, receipt.block_number)
        return record, True

    def _record(
        self, pending: PendingDeployment, tx_hash: str, address: str, block_number: int
    ) -> DeploymentRecord:
        record = DeploymentRecord(
            network=pending.network,
            label=pending.label,
            contract_name=pending.contract_name,
            address=to_checksum_address(address),
            tx_hash=tx_hash,
            block_number=block_number,
            deployer=pending.deployer,
            constructor_args=pending.constructor_args,
            constructor_args_encoded=pending.constructor_args_encoded,
            verified=False,
        )
        record = self.ledger.record(pending.network, pending.label, record)
        self._set_state(pending.network, pending.label, DeploymentState.RECORDED)
        logger.success(f"Recorded '{record.label}' on {record.network} at {record.address}")
        return record

    async def _reconcile(
        self, signer: Signer, request: DeployRequest, nonce: int
    ) -> Optional[DeploymentRecord]:
        """
        Resolves an attempt left behind by an interrupted run. Records the earlier
        deployment if it landed and discards the journal entry if its nonce is still
        unused. Anything else needs an operator.
        """
        network, label = signer.network, request.label
        pending = self.ledger.get_pending(network, label)
        if pending is None:
            return None

        logger.warning(
            f"Found an unconfirmed deployment attempt of '{label}' on {network} "
            f"(nonce {pending.nonce}, tx {pending.tx_hash}); reconciling."
        )
        code = await self.submitter.call(signer.get_code(pending.predicted_address))
        if code:
            if pending.tx_hash is None:
                raise InProgressError(
                    f"Contract code exists at {pending.predicted_address} for the interrupted "
                    f"deployment of '{label}' on {network}, but its transaction hash is "
                    "unknown; reconcile the ledger manually."
                )
            receipt = await self.submitter.wait_for_receipt(signer, pending.tx_hash)
            return self._record(
                pending, pending.tx_hash, receipt.contract_address, receipt.block_number
            )

        if nonce > pending.nonce:
            raise InProgressError(
                f"Nonce {pending.nonce} of {pending.deployer} was used on {network}, but no "
                f"contract exists at {pending.predicted_address} for the interrupted "
                f"deployment of '{label}'; reconcile the ledger manually."
            )

        # No code and the journaled nonce is still unused. The new attempt reuses it,
        # so at most one of the two transactions can land.
        self.ledger.clear_pending(network, label)
        return None

    async def _verify_quietly(self, record: DeploymentRecord) -> DeploymentRecord:
        if self.verifier is None:
            logger.warning(f"No explorer configured; skipping verification of '{record.label}'.")
            return record

        self._set_state(record.network, record.label, DeploymentState.VERIFYING)
        try:
            return await self._verify(record)
        except VerificationError as e:
            logger.warning(f"Verification of '{record.label}' failed: {e}")
            return record

    async def _verify(self, record: DeploymentRecord) -> DeploymentRecord:
        await self.verifier.verify(
            address=record.address,
            contract_name=record.contract_name,
            constructor_args_encoded=record.constructor_args_encoded,
        )
        return self.ledger.mark_verified(record.network, record.label)

    async def verify(self, network: NetworkId, label: Label) -> DeploymentRecord:
        """Explicitly (re-)submits verification for a recorded deployment."""
        if self.verifier is None:
            raise ValueError("No explorer configured for verification.")
        record = self.ledger.lookup(network, label)
        if record is None:
            raise NotFoundError(f"No deployment of '{label}' recorded on {network}.")
        if record.verified:
            logger.info(f"'{label}' on {network} is already verified.")
            return record

        self._set_state(network, label, DeploymentState.VERIFYING)
        try:
            record = await self._verify(record)
        except BaseException:
            self._set_state(network, label, DeploymentState.FAILED)
            raise
        self._set_state(network, label, DeploymentState.DONE)
        return record
