"""
Tiered comparison of compiled and on-chain bytecode.

The first satisfied rule wins:
  1. nothing on chain                          -> Absent
  2. byte-identical                            -> ExactMatch
  3. identical once metadata trailers are cut  -> ExactMatch / PartialMatch
  4. (runtime) identical once immutables are
     zeroed on both sides                      -> ExactMatch / PartialMatch
  5. anything else                             -> NoMatch

In 3 and 4 the verdict is ExactMatch when the trailers are also equal and
PartialMatch when only the trailers differ.

License: AGPL-3.0
"""

from .models import MatchVerdict
from .normalize import (
    mask_immutables,
    split_creation_input,
    strip_metadata,
    validate_constructor_args,
)


def _trailer_verdict(trailer_a, trailer_b):
    if trailer_a == trailer_b:
        return MatchVerdict.EXACT_MATCH
    return MatchVerdict.PARTIAL_MATCH


def _compare_stripped(compiled, onchain):
    core_c, trailer_c = strip_metadata(compiled)
    core_o, trailer_o = strip_metadata(onchain)
    if core_c == core_o:
        return _trailer_verdict(trailer_c, trailer_o)
    return None


def match_creation(compiled, onchain_input, constructor_inputs=None):
    """
    Compare compiled creation code with the input of the creation transaction.

    Whatever follows the compiled length is treated as ABI-encoded constructor
    arguments; it only has to be well formed. Raises NormalizationError when
    it is not.
    """
    if not onchain_input:
        return MatchVerdict.ABSENT
    if not compiled:
        return MatchVerdict.NO_MATCH

    if bytes(compiled) == bytes(onchain_input):
        return MatchVerdict.EXACT_MATCH

    prefix, args = split_creation_input(compiled, onchain_input)
    if len(prefix) < len(compiled):
        return MatchVerdict.NO_MATCH

    if prefix == bytes(compiled):
        verdict = MatchVerdict.EXACT_MATCH
    else:
        verdict = _compare_stripped(compiled, prefix)
        if verdict is None:
            return MatchVerdict.NO_MATCH

    validate_constructor_args(args, constructor_inputs)
    return verdict


def match_runtime(compiled, onchain_code, immutable_map=None):
    """
    Compare compiled runtime code with the code stored at the address.

    Raises NormalizationError when an immutable range falls outside either
    buffer, which means the artifact does not describe this code.
    """
    if not onchain_code:
        return MatchVerdict.ABSENT
    if not compiled:
        return MatchVerdict.NO_MATCH

    if bytes(compiled) == bytes(onchain_code):
        return MatchVerdict.EXACT_MATCH

    verdict = _compare_stripped(compiled, onchain_code)
    if verdict is not None:
        return verdict

    if not immutable_map:
        return MatchVerdict.NO_MATCH

    # Offsets are relative to the start of runtime code, so mask before stripping.
    masked_c = mask_immutables(compiled, immutable_map)
    masked_o = mask_immutables(onchain_code, immutable_map)
    if masked_c == masked_o:
        return MatchVerdict.EXACT_MATCH

    verdict = _compare_stripped(masked_c, masked_o)
    if verdict is not None:
        return verdict
    return MatchVerdict.NO_MATCH
