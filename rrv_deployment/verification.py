import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

import requests
from ape.logging import logger
from eth_typing import ChecksumAddress

from rrv_deployment.artifacts import ArtifactResolver
from rrv_deployment.constants import (
    ETHERSCAN_API_URL,
    EXPLORER_REQUEST_TIMEOUT,
    VERIFICATION_POLL_INTERVAL,
    VERIFICATION_POLL_MAX_ATTEMPTS,
)
from rrv_deployment.exceptions import NetworkError, VerificationError


class VerificationStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    ALREADY_VERIFIED = "already_verified"
    FAILED = "failed"

    @property
    def is_verified(self) -> bool:
        return self in (VerificationStatus.SUCCEEDED, VerificationStatus.ALREADY_VERIFIED)


@dataclass
class VerificationJob:
    address: ChecksumAddress
    contract_name: str
    constructor_args_encoded: str
    status: VerificationStatus = VerificationStatus.PENDING
    guid: Optional[str] = None


class ExplorerResult(NamedTuple):
    status: VerificationStatus
    message: str = ""
    guid: Optional[str] = None


class Explorer(ABC):
    """Source-verification capability of a block explorer."""

    @abstractmethod
    async def submit(
        self, job: VerificationJob, compiler_metadata: Dict[str, Any]
    ) -> ExplorerResult:
        """
        Submits a verification request. A PENDING result with a guid is a queued job;
        PENDING without a guid means the explorer is not ready yet and the request
        should be submitted again later.
        """
        raise NotImplementedError

    @abstractmethod
    async def check_status(self, guid: str) -> ExplorerResult:
        raise NotImplementedError


class EtherscanClient(Explorer):
    """Etherscan-compatible (v2, multichain) contract verification API."""

    def __init__(
        self,
        api_key: str,
        chain_id: int,
        api_url: str = ETHERSCAN_API_URL,
        timeout: float = EXPLORER_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ValueError("An explorer API key is required for verification.")
        self.api_key = api_key
        self.chain_id = chain_id
        self.api_url = api_url
        self.timeout = timeout
        self._session = session or requests.Session()

    @staticmethod
    def _classify(payload: Dict[str, Any], submitted: bool = False) -> ExplorerResult:
        if not isinstance(payload, dict):
            raise NetworkError(f"Unexpected explorer response: {payload!r}")
        result = str(payload.get("result", ""))
        message = result.lower()
        if "already verified" in message:
            return ExplorerResult(VerificationStatus.ALREADY_VERIFIED, result)
        if "pending" in message or "unable to locate contractcode" in message:
            # queued, or bytecode not indexed yet
            return ExplorerResult(VerificationStatus.PENDING, result)
        if "rate limit" in message:
            return ExplorerResult(VerificationStatus.PENDING, result)
        if payload.get("status") == "1":
            if submitted:
                return ExplorerResult(VerificationStatus.PENDING, result, guid=result)
            return ExplorerResult(VerificationStatus.SUCCEEDED, result)
        return ExplorerResult(VerificationStatus.FAILED, result)

    def _request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = self._session.request(
                method,
                self.api_url,
                params={"chainid": self.chain_id, **(params or {})},
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Explorer request failed: {e}") from e
        if response.status_code != 200:
            raise NetworkError(f"Explorer request failed with status {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Explorer returned a malformed response: {e}") from e

    @staticmethod
    def _source_fields(contract_name: str, metadata: Dict[str, Any]) -> Dict[str, str]:
        settings = metadata.get("settings", {})
        optimizer = metadata.get("optimizer") or settings.get("optimizer", {})
        version = metadata.get("version") or metadata.get("compiler", {}).get("version", "")
        if version and not version.startswith("v"):
            version = f"v{version}"

        standard_json_input = metadata.get("standard_json_input")
        if standard_json_input is not None:
            source_path = metadata.get("source_path", f"{contract_name}.sol")
            return {
                "sourceCode": json.dumps(standard_json_input),
                "codeformat": "solidity-standard-json-input",
                "contractname": f"{source_path}:{contract_name}",
                "compilerversion": version,
            }
        return {
            "sourceCode": metadata.get("source_code", ""),
            "codeformat": "solidity-single-file",
            "contractname": contract_name,
            "compilerversion": version,
            "optimizationUsed": "1" if optimizer.get("enabled") else "0",
            "runs": str(optimizer.get("runs", 200)),
        }

    async def submit(
        self, job: VerificationJob, compiler_metadata: Dict[str, Any]
    ) -> ExplorerResult:
        data = {
            "apikey": self.api_key,
            "module": "contract",
            "action": "verifysourcecode",
            "contractaddress": job.address,
            "constructorArguements": job.constructor_args_encoded.removeprefix("0x"),
            **self._source_fields(job.contract_name, compiler_metadata),
        }
        payload = await asyncio.to_thread(self._request, "POST", data=data)
        return self._classify(payload, submitted=True)

    async def check_status(self, guid: str) -> ExplorerResult:
        params = {
            "apikey": self.api_key,
            "module": "contract",
            "action": "checkverifystatus",
            "guid": guid,
        }
        payload = await asyncio.to_thread(self._request, "GET", params=params)
        return self._classify(payload)


class VerificationSubmitter:
    """Submits source verification and polls the explorer until it settles."""

    def __init__(
        self,
        explorer: Explorer,
        resolver: ArtifactResolver,
        interval: float = VERIFICATION_POLL_INTERVAL,
        max_attempts: int = VERIFICATION_POLL_MAX_ATTEMPTS,
        call_timeout: float = EXPLORER_REQUEST_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.explorer = explorer
        self.resolver = resolver
        self.interval = interval
        self.max_attempts = max_attempts
        self.call_timeout = call_timeout
        self._sleep = sleep

    async def _poll_once(
        self, job: VerificationJob, compiler_metadata: Dict[str, Any]
    ) -> ExplorerResult:
        if job.guid is None:
            result = await asyncio.wait_for(
                self.explorer.submit(job, compiler_metadata), timeout=self.call_timeout
            )
            if result.guid is not None:
                job.guid = result.guid
                logger.info(f"Verification of {job.contract_name} queued as {job.guid}")
            return result
        return await asyncio.wait_for(
            self.explorer.check_status(job.guid), timeout=self.call_timeout
        )

    async def verify(
        self, address: ChecksumAddress, contract_name: str, constructor_args_encoded: str
    ) -> VerificationStatus:
        artifact = self.resolver.resolve(contract_name)
        job = VerificationJob(
            address=address,
            contract_name=contract_name,
            constructor_args_encoded=constructor_args_encoded,
        )
        logger.info(f"Verifying {contract_name} at {address}...")

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self._poll_once(job, artifact.compiler_metadata)
            except (NetworkError, asyncio.TimeoutError) as e:
                logger.warning(f"Verification poll {attempt}/{self.max_attempts} failed: {e}")
                result = ExplorerResult(VerificationStatus.PENDING, str(e))
            except Exception as e:
                raise VerificationError(
                    f"Verification of {contract_name} at {address} failed: {e!r}"
                ) from e

            job.status = result.status
            if result.status.is_verified:
                logger.success(
                    f"{contract_name} at {address}: {result.message or result.status.value}"
                )
                return result.status
            if result.status is VerificationStatus.FAILED:
                raise VerificationError(
                    f"Explorer rejected verification of {contract_name} at {address}: "
                    f"{result.message}"
                )

            if attempt < self.max_attempts:
                await self._sleep(self.interval)

        raise VerificationError(
            f"Verification of {contract_name} at {address} did not complete "
            f"after {self.max_attempts} polls."
        )
