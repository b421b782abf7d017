from __future__ import annotations

import re
from typing import Any, List, Sequence, Tuple

from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, is_address, to_checksum_address

from deployer.errors import ArgEncodingError
from deployer.types import DeploymentArtifact


def _strip_0x(hex_str: str) -> str:
    s = str(hex_str or "")
    return s[2:] if s[:2].lower() == "0x" else s


_ARRAY_RE = re.compile(r"^(?P<elem>.+)\[(?P<size>\d*)\]$")
_UINT_RE = re.compile(r"^uint\d*$")


def _check_value(abi_type: str, value: Any) -> Any:
    """Reject values eth_abi would otherwise coerce or report vaguely."""
    array = _ARRAY_RE.match(abi_type)
    if array:
        if isinstance(value, (str, bytes, bytearray)) or not isinstance(value, (list, tuple)):
            raise ArgEncodingError(f"{abi_type} expects a list, got {type(value).__name__}")
        size = array.group("size")
        if size and len(value) != int(size):
            raise ArgEncodingError(f"{abi_type} expects {size} items, got {len(value)}")
        return [_check_value(array.group("elem"), item) for item in value]
    if abi_type == "address":
        if isinstance(value, (bytes, bytearray)):
            if len(value) != 20:
                raise ArgEncodingError(f"address must be exactly 20 bytes, got {len(value)}")
            return to_checksum_address(value)
        text = str(value or "")
        if len(_strip_0x(text)) != 40 or not is_address(text):
            raise ArgEncodingError(f"invalid address: {value!r}")
        return to_checksum_address(text)
    if _UINT_RE.match(abi_type):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ArgEncodingError(f"{abi_type} expects an int, got {type(value).__name__}")
        if value < 0:
            raise ArgEncodingError(f"{abi_type} cannot hold negative value {value}")
    return value


def check_constructor_signature(artifact: DeploymentArtifact, args: Sequence[Tuple[str, Any]]) -> None:
    declared = [t for _, t in artifact.constructor_inputs()]
    supplied = [str(t) for t, _ in args]
    if declared != supplied:
        raise ArgEncodingError(
            f"constructor signature mismatch: {artifact.contract_name}({','.join(declared)}) "
            f"but got ({','.join(supplied)})"
        )


def encode_constructor_args(args: Sequence[Tuple[str, Any]]) -> str:
    """ABI-encode ordered (type, value) pairs; returns lowercase hex without 0x."""
    types: List[str] = []
    values: List[Any] = []
    for abi_type, value in args:
        abi_type = str(abi_type).strip()
        types.append(abi_type)
        values.append(_check_value(abi_type, value))
    if not types:
        return ""
    try:
        return abi_encode(types, values).hex()
    except Exception as exc:
        raise ArgEncodingError(f"cannot encode ({','.join(types)}): {exc}") from exc


def decode_constructor_args(types: Sequence[str], encoded_hex: str) -> Tuple[Any, ...]:
    try:
        return tuple(abi_decode(list(types), decode_hex(_strip_0x(encoded_hex))))
    except (DecodingError, ValueError) as exc:
        raise ArgEncodingError(f"cannot decode ({','.join(types)}): {exc}") from exc
