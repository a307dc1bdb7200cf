"""
Decompilation fallback for chains where byte-exact verification failed.

Results are best effort: an approximate ABI recovered from the function
dispatcher and a pseudo-source listing. Nothing here is used to decide a
verdict.

License: AGPL-3.0
"""

import json
import logging
import subprocess
import tempfile
from pathlib import Path

from evmdasm import EvmBytecode

from .errors import DecompilationError
from .models import CodeStatus, Decompilation, to_hex
from .normalize import strip_metadata

logger = logging.getLogger(__name__)

# A few selectors common enough to be worth naming without a signature database.
KNOWN_SELECTORS = {
    "01ffc9a7": "supportsInterface(bytes4)",
    "06fdde03": "name()",
    "095ea7b3": "approve(address,uint256)",
    "18160ddd": "totalSupply()",
    "23b872dd": "transferFrom(address,address,uint256)",
    "313ce567": "decimals()",
    "3fb5c1cb": "setNumber(uint256)",
    "42842e0e": "safeTransferFrom(address,address,uint256)",
    "6352211e": "ownerOf(uint256)",
    "70a08231": "balanceOf(address)",
    "715018a6": "renounceOwnership()",
    "8381f58a": "number()",
    "8da5cb5b": "owner()",
    "95d89b41": "symbol()",
    "a9059cbb": "transfer(address,uint256)",
    "d09de08a": "increment()",
    "dd62ed3e": "allowance(address,address)",
    "f2fde38b": "transferOwnership(address)",
}

# Instructions between a PUSH4 selector and the EQ of the dispatcher.
DISPATCH_WINDOW = 3


def should_decompile(code, creation, runtime):
    """Decompile only when code exists and nothing matched."""
    return code.status == CodeStatus.PRESENT and not creation.is_match and not runtime.is_match


class Decompiler:
    name = "abstract"

    def decompile(self, bytecode):
        """Return a Decompilation for runtime bytecode or raise DecompilationError."""
        raise NotImplementedError


def _abi_entry(selector):
    signature = KNOWN_SELECTORS.get(selector)
    if signature is None:
        name, inputs = f"selector_0x{selector}", []
    else:
        name, _, args = signature.partition("(")
        args = args.rstrip(")")
        inputs = [{"name": "", "type": t} for t in args.split(",") if t]
    return {
        "type": "function",
        "name": name,
        "selector": "0x" + selector,
        "inputs": inputs,
        "outputs": [],
        "stateMutability": "nonpayable",
    }


class EvmdasmDecompiler(Decompiler):
    """Recovers dispatcher selectors and a disassembly listing with evmdasm."""

    name = "evmdasm"

    def disassemble(self, bytecode):
        core, _ = strip_metadata(bytecode)
        try:
            instructions = EvmBytecode(bytes(core)).disassemble()
        except Exception as e:
            raise DecompilationError(f"Could not disassemble bytecode: {e}")

        pc = 0
        listing = []
        for op in instructions:
            operand = str(op.operand or "").lower()
            if operand.startswith("0x"):
                operand = operand[2:]
            listing.append((pc, op.name, operand))
            pc += 1 + len(operand) // 2
        return listing

    def find_selectors(self, listing):
        selectors = []
        for i, (_, name, operand) in enumerate(listing):
            if name != "PUSH4" or len(operand) != 8:
                continue
            window = listing[i + 1:i + 1 + DISPATCH_WINDOW]
            if any(n == "EQ" for _, n, _ in window) and operand not in selectors:
                selectors.append(operand)
        return selectors

    def decompile(self, bytecode):
        listing = self.disassemble(bytecode)
        selectors = self.find_selectors(listing)
        abi = tuple(_abi_entry(s) for s in selectors)

        lines = [
            "// Decompiled by coverify with evmdasm. Best effort, not verified source.",
            f"// {len(selectors)} function selector(s) recovered from the dispatcher",
            "contract Decompiled {",
        ]
        for entry in abi:
            args = ", ".join(i["type"] for i in entry["inputs"])
            lines.append(f"    function {entry['name']}({args}) external; // {entry['selector']}")
        lines.append("}")
        lines.append("")
        lines.append("/* disassembly")
        for pc, name, operand in listing:
            lines.append(f"{pc:06x}: {name} {operand}".rstrip())
        lines.append("*/")

        return Decompilation(engine=self.name, abi=abi, pseudo_source="\n".join(lines))


class HeimdallDecompiler(Decompiler):
    """Shells out to ``heimdall decompile`` and reads the ABI and Solidity it writes."""

    name = "heimdall"

    def __init__(self, executable="heimdall", timeout=300):
        self.executable = executable
        self.timeout = timeout

    def decompile(self, bytecode):
        with tempfile.TemporaryDirectory(prefix="coverify-heimdall-") as out:
            cmd = [self.executable, "decompile", to_hex(bytecode), "--include-sol", "--output", out]
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            except (OSError, subprocess.TimeoutExpired) as e:
                raise DecompilationError(f"heimdall could not run: {e}")
            if result.returncode != 0:
                raise DecompilationError(f"heimdall failed: {(result.stderr or result.stdout).strip()}")

            abi_files = sorted(Path(out).rglob("abi.json"))
            sol_files = sorted(Path(out).rglob("*.sol"))
            if not abi_files and not sol_files:
                raise DecompilationError("heimdall produced no output")
            try:
                abi = json.loads(abi_files[0].read_text()) if abi_files else []
            except ValueError as e:
                raise DecompilationError(f"heimdall wrote an unreadable abi.json: {e}")
            source = sol_files[0].read_text() if sol_files else ""

        return Decompilation(engine=self.name, abi=tuple(abi), pseudo_source=source)


def decompiler_for(name):
    if name == "evmdasm":
        return EvmdasmDecompiler()
    if name == "heimdall":
        return HeimdallDecompiler()
    raise ValueError(f"Unknown decompiler {name!r}")
