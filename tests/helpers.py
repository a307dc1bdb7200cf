"""Canned bytecode and test doubles shared by the test modules."""

import asyncio
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from coverify.build import BuildOutput, BuildTool
from coverify.config import ChainEndpoint, Settings
from coverify.decompile import Decompiler
from coverify.errors import BuildError, BuildFailure
from coverify.models import BuildArtifact, ContractId, Decompilation, ImmutableReference

# solc 0.8.0 metadata: {"ipfs": <34 bytes>, "solc": 0x000800}, 51 bytes + 2 length bytes
IPFS_A = "1220dceca8706b29e917d2358f278d6f966d54639965254247559c551d740c883163"
IPFS_B = "1220111111116b29e917d2358f278d6f966d54639965254247559c551d740c883163"
TRAILER_A = bytes.fromhex("a26469706673" + "5822" + IPFS_A + "64736f6c6343000800" + "0033")
TRAILER_B = bytes.fromhex("a26469706673" + "5822" + IPFS_B + "64736f6c6343000800" + "0033")

RUNTIME_CORE = bytes.fromhex("6080604052600080fdfe")
RUNTIME = RUNTIME_CORE + TRAILER_A

INIT_CODE = bytes.fromhex("6080604052348015600f57600080fd5b50603f80601d6000396000f3fe")
CREATION = INIT_CODE + RUNTIME

# PUSH32 <owner> PUSH1 0 MSTORE PUSH1 32 PUSH1 0 RETURN INVALID; owner lives at bytes 1..33
OWNER = bytes.fromhex("000000000000000000000000" + "5b38da6a701c568545dcfcb03fcb875f56beddc4")
IMMUTABLE_CORE_COMPILED = bytes.fromhex("7f") + bytes(32) + bytes.fromhex("60005260206000f3fe")
IMMUTABLE_CORE_DEPLOYED = bytes.fromhex("7f") + OWNER + bytes.fromhex("60005260206000f3fe")
IMMUTABLE_MAP = {"owner": [(1, 32)]}

UINT256_CONSTRUCTOR_ABI = (
    {"type": "constructor", "inputs": [{"name": "initialNumber", "type": "uint256"}], "stateMutability": "nonpayable"},
    {"type": "function", "name": "increment", "inputs": [], "outputs": [], "stateMutability": "nonpayable"},
)

ADDRESS = "0x" + "ab" * 20
TX_HASH = "0x" + "cd" * 32
COMMIT = "a" * 40
CONTRACT = ContractId("src/Counter.sol", "Counter")


def word(value):
    return int(value).to_bytes(32, "big")


def make_artifact(runtime=RUNTIME, creation=CREATION, abi=UINT256_CONSTRUCTOR_ABI, immutables=()):
    return BuildArtifact(
        contract=CONTRACT,
        creation_code=creation,
        runtime_code=runtime,
        abi=tuple(abi),
        immutable_references=tuple(immutables),
        metadata_length=len(TRAILER_A),
        compiler_version="0.8.0+commit.c7dfd78e",
    )


def make_settings(*chain_ids, **kwargs):
    chains = {
        cid: ChainEndpoint(chain_id=cid, name=f"chain-{cid}", rpc_url=f"http://rpc.invalid/{cid}")
        for cid in chain_ids
    }
    kwargs.setdefault("rpc_backoff", 0)
    return Settings(chains=chains, **kwargs)


class FakeFetcher:
    """Stands in for ChainDataFetcher; values or exceptions per call."""

    def __init__(self, chain_id, code=b"", creation_input=None, error=None, tx_error=None,
                 delay=0, tracker=None):
        self.chain_id = chain_id
        self.code = code
        self.creation_input = creation_input
        self.error = error
        self.tx_error = tx_error
        self.delay = delay
        self.tracker = tracker
        self.closed = False

    def close(self):
        self.closed = True

    async def get_code(self, address):
        if self.tracker is not None:
            self.tracker.enter()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            if self.tracker is not None:
                self.tracker.leave()
        if self.error is not None:
            raise self.error
        return self.code

    async def get_creation_input(self, tx_hash):
        if self.tx_error is not None:
            raise self.tx_error
        return self.creation_input


class ConcurrencyTracker:
    def __init__(self):
        self.current = 0
        self.peak = 0

    def enter(self):
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self):
        self.current -= 1


def fetcher_factory(fetchers):
    return lambda endpoint: fetchers[endpoint.chain_id]


class FakeDecompiler(Decompiler):
    name = "fake"

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def decompile(self, bytecode):
        self.calls.append(bytes(bytecode))
        if self.error is not None:
            raise self.error
        return Decompilation(engine=self.name, abi=({"type": "function", "name": "f"},), pseudo_source="// f")


class FakeGit:
    """Creates the working directory instead of cloning; knows a single commit."""

    def __init__(self, commit=COMMIT):
        self.commit = commit
        self.working_dirs = []
        self.timeouts = []

    def clone(self, url, working_dir, timeout=None):
        self.timeouts.append(timeout)
        os.makedirs(working_dir)
        self.working_dirs.append(working_dir)
        return working_dir

    def checkout(self, working_dir, commit, timeout=None):
        self.timeouts.append(timeout)
        if commit != self.commit:
            raise BuildError(BuildFailure.CHECKOUT, f"Commit {commit} not found")


class FakeBuildTool(BuildTool):
    name = "fake"

    def __init__(self, contracts=None, error=None):
        self.contracts = contracts or {}
        self.error = error
        self.calls = []
        self.timeouts = []

    def compile(self, working_dir, profile, targets=None, timeout=None):
        self.calls.append((working_dir, profile, targets))
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        return BuildOutput(self.contracts)


def solc_entry(creation=CREATION, runtime=RUNTIME, abi=UINT256_CONSTRUCTOR_ABI, immutable_refs=None, ast=None):
    return {
        "abi": list(abi),
        "evm": {
            "bytecode": {"object": creation.hex()},
            "deployedBytecode": {"object": runtime.hex(), "immutableReferences": immutable_refs or {}},
        },
        "metadata": '{"compiler": {"version": "0.8.0+commit.c7dfd78e"}}',
        "ast": ast,
    }


IMMUTABLE_REFERENCE = ImmutableReference(name="owner", ranges=((1, 32),))
