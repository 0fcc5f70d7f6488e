from typing import Any, List, Sequence, Tuple

import rlp
from eth_abi import encode, is_encodable
from eth_abi.grammar import TupleType, parse
from eth_typing import ChecksumAddress
from eth_utils import is_0x_prefixed, is_address, is_hex, keccak, to_checksum_address
from hexbytes import HexBytes

from rrv_deployment.artifacts import ContractArtifact
from rrv_deployment.exceptions import ArgumentMismatchError


def _coerce(abi_type, value: Any) -> Any:
    """Normalizes hex strings for bytes params and addresses to checksum form."""
    if abi_type.is_array:
        if isinstance(value, (list, tuple)):
            return [_coerce(abi_type.item_type, v) for v in value]
        return value
    if isinstance(abi_type, TupleType):
        if isinstance(value, (list, tuple)) and len(value) == len(abi_type.components):
            return tuple(_coerce(c, v) for c, v in zip(abi_type.components, value))
        return value
    if abi_type.base == "bytes" and isinstance(value, str):
        if is_0x_prefixed(value) and is_hex(value):
            return bytes(HexBytes(value))
    if abi_type.base == "address" and isinstance(value, str) and is_address(value):
        return to_checksum_address(value)
    return value


def validate_constructor_args(
    contract_name: str, param_types: Sequence[str], args: Sequence[Any]
) -> List[Any]:
    """
    Matches constructor args positionally against the constructor param types.
    Returns the coerced args, ready for encoding.
    """
    if len(args) != len(param_types):
        raise ArgumentMismatchError(
            f"Constructor parameters length mismatch - "
            f"{contract_name} ABI requires {len(param_types)}, Got {len(args)}."
        )

    coerced_args = list()
    for position, (param_type, value) in enumerate(zip(param_types, args)):
        coerced = _coerce(parse(param_type), value)
        if not is_encodable(param_type, coerced):
            raise ArgumentMismatchError(
                f"{contract_name} constructor param at position {position} has a value "
                f"'{value}' whose type does not match expected ABI type '{param_type}'"
            )
        coerced_args.append(coerced)
    return coerced_args


def encode_constructor_args(param_types: Sequence[str], args: Sequence[Any]) -> HexBytes:
    if not param_types:
        return HexBytes(b"")
    return HexBytes(encode(list(param_types), list(args)))


def build_deployment_data(
    artifact: ContractArtifact, args: Sequence[Any]
) -> Tuple[HexBytes, HexBytes]:
    """
    Returns (creation data, encoded constructor args) for deploying the artifact.
    Raises ArgumentMismatchError before anything is sent to the network.
    """
    coerced_args = validate_constructor_args(
        contract_name=artifact.name,
        param_types=artifact.constructor_param_types,
        args=args,
    )
    encoded_args = encode_constructor_args(artifact.constructor_param_types, coerced_args)
    return HexBytes(bytes(artifact.bytecode) + bytes(encoded_args)), encoded_args


def normalize_args(args: Sequence[Any]) -> List[Any]:
    """JSON-friendly rendition of constructor args."""
    normalized = list()
    for value in args:
        if isinstance(value, (bytes, bytearray)):
            normalized.append("0x" + bytes(value).hex())
        elif isinstance(value, (list, tuple)):
            normalized.append(normalize_args(value))
        else:
            normalized.append(value)
    return normalized


def predict_contract_address(deployer: str, nonce: int) -> ChecksumAddress:
    """Address of the contract created by `deployer` with a CREATE at `nonce`."""
    encoded = rlp.encode([bytes(HexBytes(deployer)), nonce])
    return to_checksum_address(keccak(encoded)[12:])
