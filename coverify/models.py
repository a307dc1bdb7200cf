"""
Data model shared by the build, chain and matching stages.

Everything here is immutable once built: a BuildArtifact is read concurrently
by every chain task and a VerificationResult is handed back to the caller as-is.

License: AGPL-3.0
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import RequestError

COMMIT_RE = re.compile(r"^[0-9a-fA-F]{40}$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def from_hex(value):
    """Decode a hex string with or without the 0x prefix."""
    if value is None:
        return b""
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


def to_hex(data):
    return "0x" + bytes(data).hex()


@dataclass(frozen=True)
class ContractId:
    """A contract inside a repository, e.g. ``src/Counter.sol:Counter``."""

    path: str
    name: str

    @classmethod
    def parse(cls, value):
        path, sep, name = value.rpartition(":")
        if not sep or not path or not name:
            raise RequestError(f"Contract must be given as <file>:<name>, got {value!r}")
        return cls(path=path, name=name)

    def __str__(self):
        return f"{self.path}:{self.name}"


@dataclass(frozen=True)
class VerificationRequest:
    repo_url: str
    commit: str
    contract: ContractId
    address: str
    creation_tx_hash: Optional[str] = None
    profile: str = "default"
    chain_id: Optional[int] = None  # None means every configured chain

    def __post_init__(self):
        if not self.repo_url:
            raise RequestError("Repository URL is required")
        if not COMMIT_RE.match(self.commit or ""):
            raise RequestError(f"Commit must be a full 40 character hex hash, got {self.commit!r}")
        if not ADDRESS_RE.match(self.address or ""):
            raise RequestError(f"Invalid contract address: {self.address!r}")
        if self.creation_tx_hash is not None and not TX_HASH_RE.match(self.creation_tx_hash):
            raise RequestError(f"Invalid creation transaction hash: {self.creation_tx_hash!r}")
        if not self.profile:
            raise RequestError("Build profile name is required")
        if isinstance(self.contract, str):
            object.__setattr__(self, "contract", ContractId.parse(self.contract))
        object.__setattr__(self, "commit", self.commit.lower())
        object.__setattr__(self, "address", self.address.lower())
        if self.creation_tx_hash is not None:
            object.__setattr__(self, "creation_tx_hash", self.creation_tx_hash.lower())

    def to_dict(self):
        return {
            "repo_url": self.repo_url,
            "commit": self.commit,
            "contract": str(self.contract),
            "address": self.address,
            "creation_tx_hash": self.creation_tx_hash,
            "profile": self.profile,
            "chain_id": self.chain_id,
        }


@dataclass(frozen=True)
class ImmutableReference:
    """All byte ranges of runtime code that hold one immutable variable."""

    name: str
    ranges: Tuple[Tuple[int, int], ...]  # (offset, length)


@dataclass(frozen=True)
class BuildArtifact:
    contract: ContractId
    creation_code: bytes
    runtime_code: bytes
    abi: Tuple[dict, ...]
    immutable_references: Tuple[ImmutableReference, ...] = ()
    metadata_length: int = 0  # trailer length of runtime_code, length bytes included
    compiler_version: Optional[str] = None

    @property
    def immutable_map(self):
        return {ref.name: list(ref.ranges) for ref in self.immutable_references}

    @property
    def constructor_inputs(self):
        # None when the ABI is unknown, [] when there is no constructor
        if not self.abi:
            return None
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return list(entry.get("inputs", []))
        return []

    def to_dict(self):
        """Build facts a reader needs to trust the verdicts; code bytes are left out."""
        return {
            "contract": str(self.contract),
            "compiler_version": self.compiler_version,
            "abi": list(self.abi),
            "metadata_length": self.metadata_length,
            "immutables": [ref.name for ref in self.immutable_references],
        }


class CodeStatus(Enum):
    EMPTY = "empty"
    PRESENT = "present"
    ERROR = "error"


@dataclass(frozen=True)
class OnChainCode:
    """What eth_getCode produced: nothing deployed, some code, or a failure."""

    status: CodeStatus
    code: bytes = b""
    reason: Optional[str] = None

    @classmethod
    def empty(cls):
        return cls(CodeStatus.EMPTY)

    @classmethod
    def present(cls, code):
        if not code:
            return cls.empty()
        return cls(CodeStatus.PRESENT, bytes(code))

    @classmethod
    def error(cls, reason):
        return cls(CodeStatus.ERROR, reason=reason)


@dataclass(frozen=True)
class OnChainData:
    chain_id: int
    code: OnChainCode
    creation_input: Optional[bytes] = None
    creation_error: Optional[str] = None


class MatchVerdict(Enum):
    EXACT_MATCH = "ExactMatch"
    PARTIAL_MATCH = "PartialMatch"
    NO_MATCH = "NoMatch"
    ABSENT = "Absent"

    @property
    def is_match(self):
        return self in (MatchVerdict.EXACT_MATCH, MatchVerdict.PARTIAL_MATCH)


@dataclass(frozen=True)
class Decompilation:
    engine: str
    abi: Tuple[dict, ...]
    pseudo_source: str

    def to_dict(self):
        return {"engine": self.engine, "abi": list(self.abi), "pseudo_source": self.pseudo_source}


@dataclass(frozen=True)
class ChainVerificationResult:
    chain_id: int
    creation: MatchVerdict
    runtime: MatchVerdict
    error: Optional[str] = None
    diagnostics: Tuple[str, ...] = ()
    metadata: Optional[Dict[str, str]] = None
    decompilation: Optional[Decompilation] = None

    def to_dict(self):
        return {
            "chain_id": self.chain_id,
            "creation": self.creation.value,
            "runtime": self.runtime.value,
            "error": self.error,
            "diagnostics": list(self.diagnostics),
            "metadata": self.metadata,
            "decompilation": self.decompilation.to_dict() if self.decompilation else None,
        }


@dataclass(frozen=True)
class VerificationResult:
    request: Optional[VerificationRequest]
    address: str
    chains: Tuple[ChainVerificationResult, ...] = field(default_factory=tuple)
    artifact: Optional[BuildArtifact] = None

    @property
    def verified_chains(self):
        return [c.chain_id for c in self.chains if c.runtime.is_match]

    def to_dict(self):
        return {
            "request": self.request.to_dict() if self.request else None,
            "address": self.address,
            "chains": [c.to_dict() for c in self.chains],
            "artifact": self.artifact.to_dict() if self.artifact else None,
        }

    def to_json(self, indent=None):
        return json.dumps(self.to_dict(), sort_keys=True, indent=indent)


def assemble_result(
    request, address, chain_ids, chain_results: List[ChainVerificationResult], artifact=None
):
    """Pack per-chain results into a VerificationResult, one entry per requested chain."""
    seen = [r.chain_id for r in chain_results]
    if sorted(seen) != sorted(chain_ids) or len(set(seen)) != len(seen):
        raise ValueError(f"Expected one result per chain {sorted(chain_ids)}, got {seen}")
    return VerificationResult(
        request=request, address=address, chains=tuple(chain_results), artifact=artifact
    )
