"""
Multi-chain smart contract verification.

Builds a contract from a git commit and checks that the result matches the
bytecode deployed at an address on one or more EVM chains, falling back to
decompilation where it does not.

License: AGPL-3.0
"""

from .config import ChainEndpoint, Settings, load_settings
from .errors import (
    BuildError,
    BuildFailure,
    ChainError,
    ConfigError,
    CoverifyError,
    NormalizationError,
    RequestError,
    RpcError,
    TxNotFound,
    TxPending,
    VerificationError,
)
from .models import (
    BuildArtifact,
    ChainVerificationResult,
    ContractId,
    MatchVerdict,
    VerificationRequest,
    VerificationResult,
)
from .verifier import Verifier, verify

__version__ = "0.1.0"
