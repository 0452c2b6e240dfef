"""ACME utilities."""
import decimal
from typing import Any

import josepy as jose

from kmsacme import errors


def b64encode(data: bytes) -> str:
    """Encode ``data`` as base64url without padding (RFC 4648, section 5).

    :param bytes data:
    :rtype: str

    """
    return jose.b64encode(data).decode('ascii')


def decode_status(value: Any) -> str:
    """Normalize a status-like JSON value to its string form.

    Servers are not consistent about the JSON type of ``status``, so
    strings are returned unchanged while integers and floats are
    rendered in their canonical form (``200`` -> ``"200"``,
    ``0.5`` -> ``"0.5"``, ``2.0`` -> ``"2"``, ``1e-07`` ->
    ``"0.0000001"``). Floats never use exponent notation.

    :raises .DecodeError: for any other JSON type.

    """
    # bool is an int subclass but true/false is not a status
    if isinstance(value, bool):
        raise errors.DecodeError(f'Unexpected status value: {value!r}')
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        # repr gives the shortest round-tripping digits
        return format(decimal.Decimal(repr(value)), 'f')
    raise errors.DecodeError(f'Unexpected status value: {value!r}')
