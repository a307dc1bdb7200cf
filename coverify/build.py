"""
Building a contract from a repository at a pinned commit.

ArtifactBuilder owns the scratch directory of one request: clone, checkout,
compile and artifact extraction all happen inside it and it is removed on
every exit path. The compiler itself sits behind the BuildTool interface so
tests can hand back canned output.

License: AGPL-3.0
"""

import json
import logging
import os
import re
import subprocess
import tempfile
import time
import tomllib
from pathlib import Path

import solcx
from solcx.exceptions import SolcError

from .errors import BuildError, BuildFailure
from .git import GitClient
from .models import BuildArtifact, ImmutableReference, from_hex
from .normalize import strip_metadata

logger = logging.getLogger(__name__)

PRAGMA_RE = re.compile(r"pragma\s+solidity\s+([^;]+);")


class BuildOutput:
    """Compiled contracts keyed by ``<source path>:<contract name>``.

    Entries use the solc standard-JSON output layout (``abi``,
    ``evm.bytecode``, ``evm.deployedBytecode``) plus the source ``ast``.
    """

    def __init__(self, contracts):
        self.contracts = dict(contracts)

    def find(self, contract):
        entry = self.contracts.get(str(contract))
        if entry is not None:
            return entry

        # Artifacts without compilation metadata are only known by file name.
        basename = Path(contract.path).name
        candidates = [
            value for key, value in self.contracts.items()
            if key.rpartition(":")[2] == contract.name
            and Path(key.rpartition(":")[0]).name == basename
        ]
        if len(candidates) == 1:
            return candidates[0]
        return None


# ---------------------------------------------------------------------------
# foundry.toml profiles
# ---------------------------------------------------------------------------

def read_foundry_config(working_dir):
    config_file = Path(working_dir) / "foundry.toml"
    if not config_file.is_file():
        return None
    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise BuildError(BuildFailure.PROFILE, "Unable to parse foundry.toml", str(e))


def resolve_profile(config, profile):
    """Return the settings of a named profile layered over [profile.default]."""
    profiles = (config or {}).get("profile", {})
    if profile != "default" and profile not in profiles:
        known = sorted(set(profiles) | {"default"})
        raise BuildError(
            BuildFailure.PROFILE, f"Unknown build profile {profile!r}, available: {', '.join(known)}"
        )
    merged = dict(profiles.get("default", {}))
    merged.update(profiles.get(profile, {}))
    return merged


def read_remappings(working_dir, profile_settings):
    remappings = list(profile_settings.get("remappings", []))
    remappings_file = Path(working_dir) / "remappings.txt"
    if remappings_file.is_file():
        for line in remappings_file.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#") and line not in remappings:
                remappings.append(line)
    return remappings


# ---------------------------------------------------------------------------
# Build tools
# ---------------------------------------------------------------------------

class BuildTool:
    name = "abstract"

    def compile(self, working_dir, profile, targets=None, timeout=None):
        """Compile the project in working_dir and return a BuildOutput.

        timeout, when given, bounds any compiler subprocess in seconds.
        """
        raise NotImplementedError


class ForgeBuildTool(BuildTool):
    """Runs ``forge build`` with FOUNDRY_PROFILE set and collects the artifacts."""

    name = "forge"

    def __init__(self, executable="forge", timeout=1800):
        self.executable = executable
        self.timeout = timeout

    def compile(self, working_dir, profile, targets=None, timeout=None):
        config = read_foundry_config(working_dir)
        if config is None:
            raise BuildError(BuildFailure.PROFILE, "Not a foundry project: foundry.toml is missing")
        profile_settings = resolve_profile(config, profile)

        env = dict(os.environ, FOUNDRY_PROFILE=profile)
        cmd = [self.executable, "build", "--skip", "test", "script"]
        logger.info("Running %s (FOUNDRY_PROFILE=%s)", " ".join(cmd), profile)
        try:
            result = subprocess.run(
                cmd, cwd=working_dir, env=env, capture_output=True, text=True,
                timeout=self.timeout if timeout is None else min(timeout, self.timeout),
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BuildError(BuildFailure.COMPILE, "forge build could not run", str(e))
        if result.returncode != 0:
            raise BuildError(
                BuildFailure.COMPILE, "forge build failed", (result.stderr or result.stdout).strip()
            )

        out_dir = Path(working_dir) / profile_settings.get("out", "out")
        return BuildOutput(self._collect(out_dir))

    def _collect(self, out_dir):
        contracts = {}
        for path in sorted(out_dir.rglob("*.json")):
            if "build-info" in path.parts:
                continue
            try:
                data = json.loads(path.read_text())
            except ValueError:
                logger.debug("Skipping unreadable artifact %s", path)
                continue
            if not isinstance(data, dict) or "bytecode" not in data:
                continue

            entry = {
                "abi": data.get("abi", []),
                "evm": {
                    "bytecode": {"object": data["bytecode"].get("object", "")},
                    "deployedBytecode": {
                        "object": data.get("deployedBytecode", {}).get("object", ""),
                        "immutableReferences": data.get("deployedBytecode", {}).get("immutableReferences", {}),
                    },
                },
                "metadata": data.get("metadata"),
                "ast": data.get("ast"),
            }
            metadata = data.get("metadata") or {}
            target = metadata.get("settings", {}).get("compilationTarget", {}) if isinstance(metadata, dict) else {}
            if target:
                for source, name in target.items():
                    contracts[f"{source}:{name}"] = entry
            else:
                # out/<File>.sol/<Contract>.json
                contracts[f"{path.parent.name}:{path.stem}"] = entry
        return contracts


class SolcBuildTool(BuildTool):
    """Compiles through solc's standard JSON interface using py-solc-x.

    Compiler settings come from the foundry.toml profile when there is one,
    the compiler version from the profile or the contract's pragma.
    """

    name = "solc"

    def compile(self, working_dir, profile, targets=None, timeout=None):
        # solcx has no timeout; the caller's deadline still stops waiting on it.
        working_dir = Path(working_dir)
        config = read_foundry_config(working_dir)
        if config is None and profile != "default":
            raise BuildError(BuildFailure.PROFILE, f"No foundry.toml to resolve profile {profile!r}")
        profile_settings = resolve_profile(config, profile)

        if targets:
            files = list(targets)
        else:
            src = working_dir / profile_settings.get("src", "src")
            files = sorted(str(p.relative_to(working_dir)) for p in src.rglob("*.sol"))
        if not files:
            raise BuildError(BuildFailure.CONTRACT_NOT_FOUND, "No Solidity sources to compile")
        for name in files:
            if not (working_dir / name).is_file():
                raise BuildError(BuildFailure.CONTRACT_NOT_FOUND, f"Source file {name} does not exist")

        version = self.install_compiler(profile_settings, working_dir / files[0])

        standard_json = {
            "language": "Solidity",
            "sources": {name: {"urls": [name]} for name in files},
            "settings": self.compiler_settings(working_dir, profile_settings),
        }
        try:
            logger.info("Compiling %d source(s) with solc %s", len(files), version)
            output = solcx.compile_standard(
                standard_json,
                base_path=str(working_dir),
                allow_paths=[str(working_dir)],
                solc_version=version,
            )
        except SolcError as e:
            raise BuildError(BuildFailure.COMPILE, "Compilation failed", str(e))

        contracts = {}
        for source, named in output.get("contracts", {}).items():
            ast = output.get("sources", {}).get(source, {}).get("ast")
            for name, entry in named.items():
                contracts[f"{source}:{name}"] = dict(entry, ast=ast)
        return BuildOutput(contracts)

    def install_compiler(self, profile_settings, source_file):
        version = profile_settings.get("solc_version") or profile_settings.get("solc")
        try:
            if version:
                solcx.install_solc(version)
                return version
            match = PRAGMA_RE.search(source_file.read_text())
            if not match:
                raise BuildError(
                    BuildFailure.COMPILE, f"No solc version in profile and no pragma in {source_file.name}"
                )
            return solcx.install_solc_pragma(match.group(1))
        except BuildError:
            raise
        except Exception as e:
            raise BuildError(BuildFailure.COMPILE, f"Failed to install solc {version or ''}".strip(), str(e))

    def compiler_settings(self, working_dir, profile_settings):
        settings = {
            "optimizer": {
                "enabled": bool(profile_settings.get("optimizer", False)),
                "runs": int(profile_settings.get("optimizer_runs", 200)),
            },
            "outputSelection": {
                "*": {
                    "*": [
                        "abi",
                        "metadata",
                        "evm.bytecode.object",
                        "evm.deployedBytecode.object",
                        "evm.deployedBytecode.immutableReferences",
                    ],
                    "": ["ast"],
                }
            },
            "remappings": read_remappings(working_dir, profile_settings),
            "metadata": {"bytecodeHash": profile_settings.get("bytecode_hash", "ipfs")},
        }
        if "cbor_metadata" in profile_settings:
            settings["metadata"]["appendCBOR"] = bool(profile_settings["cbor_metadata"])
        if profile_settings.get("evm_version"):
            settings["evmVersion"] = profile_settings["evm_version"]
        if profile_settings.get("via_ir"):
            settings["viaIR"] = True
        return settings


def build_tool_for(name):
    if name == "forge":
        return ForgeBuildTool()
    if name == "solc":
        return SolcBuildTool()
    raise ValueError(f"Unknown build tool {name!r}")


# ---------------------------------------------------------------------------
# Artifact extraction
# ---------------------------------------------------------------------------

def _immutable_names(ast):
    """Map AST ids of immutable state variables to their names."""
    names = {}
    stack = [ast] if ast else []
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            if node.get("nodeType") == "VariableDeclaration" and node.get("mutability") == "immutable":
                names[str(node.get("id"))] = node.get("name")
            stack.extend(node.values())
        elif isinstance(node, list):
            stack.extend(node)
    return names


def _compiler_version(metadata):
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return None
    if isinstance(metadata, dict):
        return metadata.get("compiler", {}).get("version")
    return None


def parse_contract(contract, entry):
    evm = entry.get("evm", {})
    creation_hex = evm.get("bytecode", {}).get("object", "") or ""
    runtime_hex = evm.get("deployedBytecode", {}).get("object", "") or ""

    if "__" in creation_hex or "__" in runtime_hex:
        raise BuildError(BuildFailure.COMPILE, f"{contract} needs linked libraries, which are not supported")
    creation = from_hex(creation_hex)
    runtime = from_hex(runtime_hex)
    if not creation:
        raise BuildError(
            BuildFailure.CONTRACT_NOT_FOUND, f"{contract} has no bytecode (abstract contract or interface?)"
        )

    names = _immutable_names(entry.get("ast"))
    references = []
    used = set()
    refs = evm.get("deployedBytecode", {}).get("immutableReferences") or {}
    for ast_id in sorted(refs, key=lambda k: int(k) if str(k).isdigit() else str(k)):
        name = names.get(str(ast_id)) or str(ast_id)
        if name in used:
            name = f"{name}#{ast_id}"
        used.add(name)
        ranges = tuple((r["start"], r["length"]) for r in refs[ast_id])
        references.append(ImmutableReference(name=name, ranges=ranges))

    return BuildArtifact(
        contract=contract,
        creation_code=creation,
        runtime_code=runtime,
        abi=tuple(entry.get("abi") or ()),
        immutable_references=tuple(references),
        metadata_length=len(strip_metadata(runtime)[1]),
        compiler_version=_compiler_version(entry.get("metadata")),
    )


class ArtifactBuilder:
    def __init__(self, build_tool, git=None, scratch_root=None):
        self.build_tool = build_tool
        self.git = git or GitClient()
        self.scratch_root = scratch_root

    def build(self, repo_url, commit, contract, profile="default", timeout=None):
        """Clone, check out, compile and return the BuildArtifact of contract.

        With a timeout, each subprocess only gets the time left until the
        build deadline. The scratch directory is removed however this returns.
        """
        expires = None if timeout is None else time.monotonic() + timeout

        def remaining():
            if expires is None:
                return None
            left = expires - time.monotonic()
            if left <= 0:
                raise BuildError(BuildFailure.COMPILE, f"Build did not finish within the {timeout}s deadline")
            return left

        with tempfile.TemporaryDirectory(prefix="coverify-", dir=self.scratch_root) as scratch:
            working_dir = Path(scratch) / "repo"
            self.git.clone(repo_url, working_dir, timeout=remaining())
            self.git.checkout(working_dir, commit, timeout=remaining())

            logger.info("Building %s with profile %r using %s", contract, profile, self.build_tool.name)
            output = self.build_tool.compile(
                working_dir, profile, targets=[contract.path], timeout=remaining()
            )
            entry = output.find(contract)
            if entry is None:
                raise BuildError(
                    BuildFailure.CONTRACT_NOT_FOUND, f"{contract} not found in build output"
                )
            artifact = parse_contract(contract, entry)

        logger.info(
            "Built %s: %d bytes creation code, %d bytes runtime code, %d immutable(s)",
            contract, len(artifact.creation_code), len(artifact.runtime_code),
            len(artifact.immutable_references),
        )
        return artifact
