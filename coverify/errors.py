"""
Exception taxonomy for the verification engine.

Request level errors (RequestError, BuildError) abort a verification before
any chain is contacted. Chain level errors (RpcError, TxNotFound, TxPending)
are caught by the orchestrator and recorded on that chain's result only.

License: AGPL-3.0
"""

from enum import Enum


class CoverifyError(Exception):
    """Base class for every error raised by coverify."""


class ConfigError(CoverifyError):
    """Settings could not be loaded or are malformed."""


class VerificationError(CoverifyError):
    """A request-level failure: no per-chain result can be produced."""


class RequestError(VerificationError):
    """The verification request itself is malformed."""


class BuildFailure(Enum):
    CLONE = "clone"
    CHECKOUT = "checkout"
    PROFILE = "profile"
    COMPILE = "compile"
    CONTRACT_NOT_FOUND = "contract_not_found"


class BuildError(VerificationError):
    """Cloning, checking out or compiling the repository failed."""

    def __init__(self, kind, message, diagnostics=""):
        super().__init__(message)
        self.kind = kind
        self.diagnostics = diagnostics

    def __str__(self):
        text = f"{self.kind.value}: {self.args[0]}"
        if self.diagnostics:
            text += f"\n{self.diagnostics}"
        return text


class ChainError(CoverifyError):
    """A failure scoped to a single chain."""

    def __init__(self, chain_id, message):
        super().__init__(message)
        self.chain_id = chain_id


class RpcError(ChainError):
    """The chain's RPC endpoint failed or answered with something unusable."""

    def __init__(self, chain_id, message, transient=True):
        super().__init__(chain_id, message)
        self.transient = transient


class TxNotFound(ChainError):
    """The RPC endpoint knows no transaction with the given hash."""


class TxPending(ChainError):
    """The transaction exists but has not been included in a block yet."""


class DecompilationError(CoverifyError):
    """The decompilation engine gave up; never fails a verification."""


class NormalizationError(CoverifyError):
    """Build artifact and on-chain bytecode are inconsistent with each other."""
