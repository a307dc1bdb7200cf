"""
Bytecode normalization.

Compiled and deployed bytecode legitimately differ in a few places: the CBOR
metadata trailer the compiler appends, the immutable variables that are
written into runtime code at deployment, and the ABI-encoded constructor
arguments appended to the creation input. Everything here is pure.

License: AGPL-3.0
"""

import io

import cbor2

from .errors import NormalizationError

WORD = 32


def _parse_cbor_map(data):
    """Decode data as exactly one non-empty CBOR map with string keys, or return None."""
    if not data:
        return None
    fp = io.BytesIO(data)
    try:
        value = cbor2.CBORDecoder(fp).decode()
    except (cbor2.CBORDecodeError, ValueError, TypeError, EOFError):
        return None
    if fp.tell() != len(data):
        return None
    # solc always writes at least one of solc, ipfs, bzzr0 or bzzr1
    if not isinstance(value, dict) or not value or not all(isinstance(k, str) for k in value):
        return None
    return value


def strip_metadata(code):
    """
    Split code into (core, trailer).

    The last two bytes of solc output hold the big-endian length of the CBOR
    map that precedes them; trailer is that map plus the two length bytes.
    When the length is implausible or the bytes before it are not a CBOR map
    the whole buffer is core and trailer is empty.
    """
    code = bytes(code)
    if len(code) <= 2:
        return code, b""

    length = int.from_bytes(code[-2:], "big")
    # The length field excludes its own two bytes.
    if length == 0 or length > len(code) - 2:
        return code, b""

    split = len(code) - length - 2
    if _parse_cbor_map(code[split:-2]) is None:
        return code, b""
    return code[:split], code[split:]


def decode_metadata(trailer):
    """Decode a trailer produced by strip_metadata into printable fields."""
    if len(trailer) <= 2:
        return None
    value = _parse_cbor_map(bytes(trailer[:-2]))
    if value is None:
        return None

    decoded = {}
    for key, item in value.items():
        if key == "solc" and isinstance(item, bytes) and len(item) == 3:
            # Release builds store the version as three bytes, e.g. 0x000814 -> 0.8.20
            decoded[key] = ".".join(str(b) for b in item)
        elif isinstance(item, bytes):
            decoded[key] = "0x" + item.hex()
        else:
            decoded[key] = str(item)
    return decoded


def _iter_ranges(immutable_map):
    for name, ranges in immutable_map.items():
        for offset, length in ranges:
            yield name, offset, length


def mask_immutables(code, immutable_map):
    """Return a copy of code with every immutable range overwritten by zeros."""
    buf = bytearray(code)
    for name, offset, length in _iter_ranges(immutable_map):
        if offset < 0 or length < 0 or offset + length > len(buf):
            raise NormalizationError(
                f"Immutable {name} at offset {offset} (length {length}) is outside "
                f"bytecode of length {len(buf)}"
            )
        buf[offset:offset + length] = bytes(length)
    return bytes(buf)


def split_creation_input(compiled_creation, onchain_input):
    """Truncate on-chain creation input to the compiled length: (prefix, constructor args)."""
    size = len(compiled_creation)
    return bytes(onchain_input[:size]), bytes(onchain_input[size:])


# ---------------------------------------------------------------------------
# Constructor argument shape checks
# ---------------------------------------------------------------------------

def _split_array(abi_type):
    """'uint256[3][]' -> ('uint256[3]', None); 'uint256[3]' -> ('uint256', 3)."""
    start = abi_type.rindex("[")
    inner = abi_type[start + 1:-1]
    return abi_type[:start], (int(inner) if inner else None)


def _is_dynamic(param):
    abi_type = param["type"]
    if abi_type.endswith("]"):
        base, size = _split_array(abi_type)
        if size is None:
            return True
        return _is_dynamic(dict(param, type=base))
    if abi_type in ("string", "bytes"):
        return True
    if abi_type == "tuple":
        return any(_is_dynamic(c) for c in param.get("components", []))
    return False


def _head_size(param):
    if _is_dynamic(param):
        return WORD
    abi_type = param["type"]
    if abi_type.endswith("]"):
        base, size = _split_array(abi_type)
        return size * _head_size(dict(param, type=base))
    if abi_type == "tuple":
        return sum(_head_size(c) for c in param.get("components", []))
    return WORD


def validate_constructor_args(args, inputs=None):
    """
    Check that args look like an ABI encoding of the constructor inputs.

    Only the shape is checked: word alignment, head size, and that offsets of
    dynamic parameters point inside the buffer. Values are never compared.
    inputs=None means the constructor signature is unknown.
    """
    if len(args) % WORD:
        raise NormalizationError(
            f"Constructor arguments are {len(args)} bytes, not a multiple of {WORD}"
        )
    if inputs is None:
        return

    try:
        head = sum(_head_size(p) for p in inputs)
    except (KeyError, ValueError) as e:
        raise NormalizationError(f"Unreadable constructor ABI: {e}")

    if len(args) < head:
        raise NormalizationError(
            f"Constructor arguments are {len(args)} bytes, expected at least {head}"
        )

    has_dynamic = False
    pos = 0
    for param in inputs:
        if _is_dynamic(param):
            has_dynamic = True
            offset = int.from_bytes(args[pos:pos + WORD], "big")
            if offset % WORD or offset < head or offset + WORD > len(args):
                raise NormalizationError(
                    f"Constructor argument {param.get('name') or param['type']} has "
                    f"invalid offset {offset}"
                )
        pos += _head_size(param)

    if not has_dynamic and len(args) != head:
        raise NormalizationError(
            f"Constructor arguments are {len(args)} bytes, expected exactly {head}"
        )
