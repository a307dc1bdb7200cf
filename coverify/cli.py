"""
Command line interface.

    coverify verify --repo https://github.com/org/project --commit <sha> \\
        --contract src/Counter.sol:Counter --address 0x... [--chain 10]
    coverify inspect 0x... [--chain 1]

RPC URLs come from the environment or the keyring, see coverify.config.

License: AGPL-3.0
"""

import argparse
import asyncio
import dataclasses
import logging
import sys

from .config import SUPPORTED_CHAINS, load_settings
from .decompile import decompiler_for
from .errors import ConfigError, VerificationError
from .models import VerificationRequest
from .orchestrator import ChainOrchestrator
from .verifier import Verifier


def build_parser():
    parser = argparse.ArgumentParser(
        prog="coverify",
        description="Verify that a git commit compiles to the bytecode deployed on chain",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug logs")
    sub = parser.add_subparsers(dest="command", required=True)

    verify = sub.add_parser("verify", help="Build a commit and compare it against deployed code")
    verify.add_argument("--repo", required=True, help="Git repository URL")
    verify.add_argument("--commit", required=True, help="Full 40 character commit hash")
    verify.add_argument("--contract", required=True, help="Contract as <file>:<name>, e.g. src/Counter.sol:Counter")
    verify.add_argument("--address", required=True, help="Deployed contract address")
    verify.add_argument("--creation-tx", help="Hash of the transaction that deployed the contract")
    verify.add_argument("--profile", default="default", help="Foundry profile to build with")
    verify.add_argument("--build-tool", choices=["forge", "solc"], help="Override COVERIFY_BUILD_TOOL")

    inspect = sub.add_parser("inspect", help="Decompile deployed code without any source")
    inspect.add_argument("address", help="Deployed contract address")

    for p in (verify, inspect):
        p.add_argument("--chain", type=int, choices=sorted(SUPPORTED_CHAINS), help="Only this chain id")
        p.add_argument("--decompiler", choices=["evmdasm", "heimdall"], default="evmdasm")
        p.add_argument("--json", action="store_true", help="Print the full result as JSON")
    return parser


def print_report(result):
    if result.artifact:
        print(f"Built {result.artifact.contract} with solc {result.artifact.compiler_version or 'unknown'}")
    for chain in result.chains:
        name = SUPPORTED_CHAINS.get(chain.chain_id, (str(chain.chain_id),))[0]
        mark = "✅" if chain.runtime.is_match else "❌"
        print(f"{mark} {name} ({chain.chain_id}): runtime {chain.runtime.value}, creation {chain.creation.value}")
        if chain.metadata:
            print(f"    metadata: {chain.metadata}")
        if chain.error:
            print(f"    error: {chain.error}")
        for line in chain.diagnostics:
            print(f"    note: {line}")
        if chain.decompilation:
            names = [entry.get("name") for entry in chain.decompilation.abi]
            print(f"    decompiled with {chain.decompilation.engine}: {len(names)} function(s) {names}")


async def run(args, settings):
    orchestrator = ChainOrchestrator(settings, decompiler=decompiler_for(args.decompiler))
    verifier = Verifier(settings, orchestrator=orchestrator)
    try:
        if args.command == "verify":
            request = VerificationRequest(
                repo_url=args.repo,
                commit=args.commit,
                contract=args.contract,
                address=args.address,
                creation_tx_hash=args.creation_tx,
                profile=args.profile,
                chain_id=args.chain,
            )
            return await verifier.verify(request)
        return await verifier.inspect(args.address, chain_id=args.chain)
    finally:
        verifier.close()


def main(argv=None):
    args = build_parser().parse_args(argv)
    level = logging.WARNING - 10 * min(args.verbose, 2)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = load_settings(chain_ids=[args.chain] if args.chain else None)
        if getattr(args, "build_tool", None):
            settings = dataclasses.replace(settings, build_tool=args.build_tool)
        result = asyncio.run(run(args, settings))
    except (ConfigError, VerificationError) as e:
        print(f"❌ VERIFICATION FAILED: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(result.to_json(indent=2))
    else:
        print_report(result)

    if args.command == "inspect":
        return 0
    return 0 if all(c.runtime.is_match for c in result.chains) else 1


if __name__ == "__main__":
    sys.exit(main())
