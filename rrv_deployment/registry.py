import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from rrv_deployment.constants import LEDGER_JSON_FORMAT
from rrv_deployment.exceptions import ConflictError, LedgerCorruptedError, NotFoundError

NetworkId = str
Label = str

DEPLOYMENTS_KEY = "deployments"
PENDING_KEY = "pending"


def ledger_key(network: NetworkId, label: Label) -> str:
    return f"{network}:{label}"


class DeploymentRecord(NamedTuple):
    """A confirmed deployment of a labelled contract on a network."""

    network: NetworkId
    label: Label
    contract_name: str
    address: ChecksumAddress
    tx_hash: str
    block_number: int
    deployer: ChecksumAddress
    constructor_args: List[Any]
    constructor_args_encoded: str
    verified: bool = False

    @property
    def key(self) -> str:
        return ledger_key(self.network, self.label)

    def with_verified(self) -> "DeploymentRecord":
        return self._replace(verified=True)

    def to_json(self) -> Dict[str, Any]:
        data = self._asdict()
        data["constructor_args"] = list(self.constructor_args)
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "DeploymentRecord":
        return cls(
            network=data["network"],
            label=data["label"],
            contract_name=data["contract_name"],
            address=to_checksum_address(data["address"]),
            tx_hash=data["tx_hash"],
            block_number=int(data["block_number"]),
            deployer=to_checksum_address(data["deployer"]),
            constructor_args=list(data["constructor_args"]),
            constructor_args_encoded=data["constructor_args_encoded"],
            verified=bool(data.get("verified", False)),
        )


class PendingDeployment(NamedTuple):
    """
    Journal entry for a deployment attempt that was broadcast (or about to be)
    but has not been confirmed and recorded yet.
    """

    network: NetworkId
    label: Label
    contract_name: str
    deployer: ChecksumAddress
    nonce: int
    predicted_address: ChecksumAddress
    constructor_args: List[Any]
    constructor_args_encoded: str
    tx_hash: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        data = self._asdict()
        data["constructor_args"] = list(self.constructor_args)
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PendingDeployment":
        return cls(
            network=data["network"],
            label=data["label"],
            contract_name=data["contract_name"],
            deployer=to_checksum_address(data["deployer"]),
            nonce=int(data["nonce"]),
            predicted_address=to_checksum_address(data["predicted_address"]),
            constructor_args=list(data["constructor_args"]),
            constructor_args_encoded=data["constructor_args_encoded"],
            tx_hash=data.get("tx_hash"),
        )


class DeploymentLedger:
    """
    Durable mapping of (network, label) to DeploymentRecord, backed by a JSON file.

    Every mutation re-reads the file, upserts a single key and atomically replaces
    the file, so concurrent writers of different keys never lose each other's
    entries and a crash mid-write leaves the previous contents intact.
    """

    def __init__(self, filepath: Path):
        self.filepath = Path(filepath)
        self._lock_filepath = self.filepath.with_suffix(self.filepath.suffix + ".lock")
        self._data = self._empty()
        self._is_open = False

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.filepath})"

    def __enter__(self) -> "DeploymentLedger":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self) -> "DeploymentLedger":
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        self._data = self._read()
        self._is_open = True
        return self

    def flush(self) -> None:
        """Rewrites the ledger file in its normalized form."""
        self._check_open()
        with self._write_lock():
            data = self._read()
            self._write(data)
            self._data = data

    def close(self) -> None:
        if not self._is_open:
            return
        if self.filepath.exists():
            self.flush()
        self._is_open = False

    #
    # Records
    #

    def lookup(self, network: NetworkId, label: Label) -> Optional[DeploymentRecord]:
        self._check_open()
        self._data = self._read()
        entry = self._data[DEPLOYMENTS_KEY].get(ledger_key(network, label))
        if entry is None:
            return None
        return DeploymentRecord.from_json(entry)

    def records(self, network: Optional[NetworkId] = None) -> List[DeploymentRecord]:
        self._check_open()
        self._data = self._read()
        records = [DeploymentRecord.from_json(e) for e in self._data[DEPLOYMENTS_KEY].values()]
        if network is not None:
            records = [r for r in records if r.network == network]
        return sorted(records, key=lambda r: (r.network, r.label))

    def record(
        self, network: NetworkId, label: Label, record: DeploymentRecord
    ) -> DeploymentRecord:
        """
        Writes a record for (network, label). Writing the same address again is a no-op
        that returns the stored record; a different address raises ConflictError.
        """
        self._check_open()
        if (record.network, record.label) != (network, label):
            raise ValueError(
                f"Record for {record.key} cannot be stored under {ledger_key(network, label)}."
            )
        key = ledger_key(network, label)
        with self._write_lock():
            data = self._read()
            existing = data[DEPLOYMENTS_KEY].get(key)
            if existing is not None:
                existing_record = DeploymentRecord.from_json(existing)
                if existing_record.address != to_checksum_address(record.address):
                    raise ConflictError(
                        f"'{label}' is already deployed on {network} at "
                        f"{existing_record.address}; refusing to record {record.address}."
                    )
                self._data = data
                return existing_record

            data[DEPLOYMENTS_KEY][key] = record.to_json()
            data[PENDING_KEY].pop(key, None)
            self._write(data)
            self._data = data
        return record

    def mark_verified(self, network: NetworkId, label: Label) -> DeploymentRecord:
        self._check_open()
        key = ledger_key(network, label)
        with self._write_lock():
            data = self._read()
            entry = data[DEPLOYMENTS_KEY].get(key)
            if entry is None:
                raise NotFoundError(f"No deployment of '{label}' recorded on {network}.")
            record = DeploymentRecord.from_json(entry)
            if record.verified:
                self._data = data
                return record
            record = record.with_verified()
            data[DEPLOYMENTS_KEY][key] = record.to_json()
            self._write(data)
            self._data = data
        return record

    #
    # Pending attempts
    #

    def get_pending(self, network: NetworkId, label: Label) -> Optional[PendingDeployment]:
        self._check_open()
        self._data = self._read()
        entry = self._data[PENDING_KEY].get(ledger_key(network, label))
        if entry is None:
            return None
        return PendingDeployment.from_json(entry)

    def pending(self, network: Optional[NetworkId] = None) -> List[PendingDeployment]:
        self._check_open()
        self._data = self._read()
        entries = [PendingDeployment.from_json(e) for e in self._data[PENDING_KEY].values()]
        if network is not None:
            entries = [e for e in entries if e.network == network]
        return sorted(entries, key=lambda e: (e.network, e.label))

    def set_pending(self, pending: PendingDeployment) -> None:
        self._upsert(PENDING_KEY, ledger_key(pending.network, pending.label), pending.to_json())

    def clear_pending(self, network: NetworkId, label: Label) -> None:
        self._upsert(PENDING_KEY, ledger_key(network, label), None)

    #
    # Storage
    #

    @staticmethod
    def _empty() -> Dict[str, Dict[str, Any]]:
        return {DEPLOYMENTS_KEY: dict(), PENDING_KEY: dict()}

    def _check_open(self) -> None:
        if not self._is_open:
            raise RuntimeError(f"{self} is not open.")

    def _upsert(self, section: str, key: str, value: Optional[Dict[str, Any]]) -> None:
        self._check_open()
        with self._write_lock():
            data = self._read()
            if value is None:
                data[section].pop(key, None)
            else:
                data[section][key] = value
            self._write(data)
            self._data = data

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.filepath.exists():
            return self._empty()
        try:
            with open(self.filepath, "r") as file:
                raw = json.load(file)
        except json.JSONDecodeError as e:
            raise LedgerCorruptedError(f"Ledger at {self.filepath} is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise LedgerCorruptedError(f"Ledger at {self.filepath} is malformed.")
        data = self._empty()
        for section in (DEPLOYMENTS_KEY, PENDING_KEY):
            entries = raw.get(section, {})
            if not isinstance(entries, dict):
                raise LedgerCorruptedError(
                    f"Ledger at {self.filepath} has a malformed '{section}' section."
                )
            data[section].update(entries)
        return data

    def _write(self, data: Dict[str, Dict[str, Any]]) -> None:
        fd, temp_filepath = tempfile.mkstemp(
            dir=self.filepath.parent, prefix=f".{self.filepath.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as file:
                json.dump(data, file, **LEDGER_JSON_FORMAT)
                file.flush()
                os.fsync(file.fileno())
            os.replace(temp_filepath, self.filepath)
        except BaseException:
            Path(temp_filepath).unlink(missing_ok=True)
            raise

    @contextmanager
    def _write_lock(self):
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_filepath, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
