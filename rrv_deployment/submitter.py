import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ape.logging import logger
from eth_typing import ChecksumAddress
from hexbytes import HexBytes

from rrv_deployment.constants import (
    NETWORK_CALL_TIMEOUT,
    RECEIPT_POLL_BASE_DELAY,
    RECEIPT_POLL_MAX_ATTEMPTS,
    RECEIPT_POLL_MAX_DELAY,
    SUBMISSION_MAX_ATTEMPTS,
)
from rrv_deployment.exceptions import ReceiptTimeoutError, RevertedError, SubmissionError

ZERO_ADDRESS = "0x" + "00" * 20

TRANSIENT_ERRORS = (ConnectionError, TimeoutError, asyncio.TimeoutError)


@dataclass(frozen=True)
class UnsignedDeployment:
    """A contract-creation transaction, not yet signed."""

    sender: ChecksumAddress
    data: HexBytes
    nonce: Optional[int] = None
    value: int = 0


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    contract_address: Optional[ChecksumAddress]
    block_number: int
    status: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1 and self.contract_address not in (None, ZERO_ADDRESS)


class Signer(ABC):
    """
    Capability that signs and broadcasts transactions for a single account on a
    single network, and answers the chain queries the orchestrator needs.
    """

    @property
    @abstractmethod
    def address(self) -> ChecksumAddress:
        raise NotImplementedError

    @property
    @abstractmethod
    def network(self) -> str:
        """Identifier of the network this signer is connected to."""
        raise NotImplementedError

    @abstractmethod
    async def broadcast(self, tx: UnsignedDeployment) -> str:
        """Signs and broadcasts the transaction; returns its hash."""
        raise NotImplementedError

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Returns the receipt, or None if the transaction is not yet included."""
        raise NotImplementedError

    @abstractmethod
    async def get_nonce(self) -> int:
        """Confirmed transaction count of the signer, excluding the mempool."""
        raise NotImplementedError

    @abstractmethod
    async def get_code(self, address: str) -> bytes:
        raise NotImplementedError


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = RECEIPT_POLL_BASE_DELAY
    max_delay: float = RECEIPT_POLL_MAX_DELAY
    max_attempts: int = RECEIPT_POLL_MAX_ATTEMPTS
    submit_attempts: int = SUBMISSION_MAX_ATTEMPTS
    call_timeout: float = NETWORK_CALL_TIMEOUT

    def delay(self, attempt: int) -> float:
        """Backoff before the (attempt + 1)th poll, zero-indexed."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def max_wait(self) -> float:
        """Upper bound on the time spent waiting for a receipt."""
        sleeps = sum(self.delay(attempt) for attempt in range(self.max_attempts - 1))
        return sleeps + self.max_attempts * self.call_timeout


class TransactionSubmitter:
    """Broadcasts deployment transactions and waits for their receipts within bounded budgets."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def call(self, awaitable: Awaitable):
        """Awaits a single network call, bounded by the policy call timeout."""
        return await asyncio.wait_for(awaitable, timeout=self.policy.call_timeout)

    async def broadcast(self, signer: Signer, tx: UnsignedDeployment) -> str:
        attempts = self.policy.submit_attempts
        for attempt in range(1, attempts + 1):
            try:
                tx_hash = await self.call(signer.broadcast(tx))
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Broadcast attempt {attempt}/{attempts} failed: {e}")
                if attempt == attempts:
                    raise SubmissionError(
                        f"Could not broadcast deployment after {attempts} attempts: {e}"
                    ) from e
                await self._sleep(self.policy.delay(attempt - 1))
            except Exception as e:
                raise SubmissionError(f"Deployment transaction was rejected: {e}") from e
            else:
                logger.info(f"Broadcast deployment transaction {tx_hash}")
                return tx_hash

    async def wait_for_receipt(self, signer: Signer, tx_hash: str) -> Receipt:
        attempts = self.policy.max_attempts
        for attempt in range(attempts):
            try:
                receipt = await self.call(signer.get_receipt(tx_hash))
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Receipt poll {attempt + 1}/{attempts} for {tx_hash} failed: {e}")
                receipt = None

            if receipt is not None:
                if not receipt.succeeded:
                    raise RevertedError(
                        f"Deployment transaction {tx_hash} reverted "
                        f"(status={receipt.status}, contract={receipt.contract_address}).",
                        tx_hash=tx_hash,
                    )
                return receipt

            if attempt < attempts - 1:
                await self._sleep(self.policy.delay(attempt))

        raise ReceiptTimeoutError(
            f"No receipt for {tx_hash} after {attempts} polls.", tx_hash=tx_hash
        )

    async def submit(self, signer: Signer, tx: UnsignedDeployment) -> Receipt:
        tx_hash = await self.broadcast(signer, tx)
        return await self.wait_for_receipt(signer, tx_hash)
