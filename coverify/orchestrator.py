"""
Concurrent per-chain verification.

One task per chain runs fetch -> match -> (maybe) decompile. A semaphore caps
how many chains talk to their RPC providers at once. Chain errors never leave
their task: they end up on that chain's ChainVerificationResult. Results are
sorted by chain id after gathering, so timing never changes the output.

License: AGPL-3.0
"""

import asyncio
import logging

from .decompile import EvmdasmDecompiler, should_decompile
from .errors import ChainError, DecompilationError, NormalizationError, RequestError
from .matcher import match_creation, match_runtime
from .models import (
    ChainVerificationResult,
    CodeStatus,
    MatchVerdict,
    OnChainCode,
    OnChainData,
)
from .normalize import decode_metadata, strip_metadata
from .rpc import ChainDataFetcher

logger = logging.getLogger(__name__)


def _describe(error):
    return f"{type(error).__name__}: {error}"


def match_chain(onchain, artifact):
    """
    Stage one of the per-chain pipeline: verdicts for creation and runtime code.

    Returns (creation, runtime, diagnostics). Without an artifact there is
    nothing to compare and both verdicts are Absent.
    """
    diagnostics = []
    if artifact is None:
        return MatchVerdict.ABSENT, MatchVerdict.ABSENT, diagnostics

    if onchain.creation_input is None:
        creation = MatchVerdict.ABSENT
    else:
        try:
            creation = match_creation(
                artifact.creation_code, onchain.creation_input, artifact.constructor_inputs
            )
        except NormalizationError as e:
            creation = MatchVerdict.NO_MATCH
            diagnostics.append(f"creation: {e}")

    if onchain.code.status != CodeStatus.PRESENT:
        runtime = MatchVerdict.ABSENT
    else:
        try:
            runtime = match_runtime(artifact.runtime_code, onchain.code.code, artifact.immutable_map)
        except NormalizationError as e:
            runtime = MatchVerdict.NO_MATCH
            diagnostics.append(f"runtime: {e}")

    return creation, runtime, diagnostics


class ChainOrchestrator:
    def __init__(self, settings, decompiler=None, fetcher_factory=None):
        self.settings = settings
        self.decompiler = decompiler or EvmdasmDecompiler()
        self.fetcher_factory = fetcher_factory or (
            lambda endpoint: ChainDataFetcher.from_settings(endpoint, settings)
        )

    def chain_ids(self, chain_id=None):
        """The chains a request targets: one configured chain or all of them."""
        if chain_id is None:
            if not self.settings.chains:
                raise RequestError("No chains are configured")
            return sorted(self.settings.chains)
        if chain_id not in self.settings.chains:
            raise RequestError(f"Chain {chain_id} is not configured")
        return [chain_id]

    async def fetch(self, fetcher, address, creation_tx_hash=None):
        """Collect on-chain data, turning chain errors into recorded states."""
        try:
            code = OnChainCode.present(await fetcher.get_code(address))
        except ChainError as e:
            logger.warning("Chain %s: could not fetch code: %s", fetcher.chain_id, e)
            code = OnChainCode.error(_describe(e))

        creation_input = None
        creation_error = None
        if creation_tx_hash is not None:
            try:
                creation_input = await fetcher.get_creation_input(creation_tx_hash)
            except ChainError as e:
                logger.warning("Chain %s: could not fetch creation input: %s", fetcher.chain_id, e)
                creation_error = _describe(e)

        return OnChainData(
            chain_id=fetcher.chain_id,
            code=code,
            creation_input=creation_input,
            creation_error=creation_error,
        )

    async def decompile(self, code):
        try:
            return await asyncio.to_thread(self.decompiler.decompile, code), None
        except DecompilationError as e:
            logger.warning("Decompilation failed: %s", e)
            return None, _describe(e)

    async def verify_chain(self, chain_id, address, artifact, creation_tx_hash=None):
        endpoint = self.settings.endpoint(chain_id)
        fetcher = self.fetcher_factory(endpoint)
        try:
            onchain = await self.fetch(fetcher, address, creation_tx_hash)
        finally:
            fetcher.close()

        creation, runtime, diagnostics = match_chain(onchain, artifact)
        errors = [e for e in (onchain.code.reason, onchain.creation_error) if e]

        metadata = None
        if onchain.code.status == CodeStatus.PRESENT:
            metadata = decode_metadata(strip_metadata(onchain.code.code)[1])

        decompilation = None
        if should_decompile(onchain.code, creation, runtime):
            decompilation, error = await self.decompile(onchain.code.code)
            if error:
                diagnostics.append(f"decompilation: {error}")

        logger.info("Chain %s: creation=%s runtime=%s", chain_id, creation.value, runtime.value)
        return ChainVerificationResult(
            chain_id=chain_id,
            creation=creation,
            runtime=runtime,
            error="; ".join(errors) or None,
            diagnostics=tuple(diagnostics),
            metadata=metadata,
            decompilation=decompilation,
        )

    async def _guarded(self, semaphore, chain_id, address, artifact, creation_tx_hash):
        async with semaphore:
            return await self.verify_chain(chain_id, address, artifact, creation_tx_hash)

    async def run(self, address, artifact=None, creation_tx_hash=None, chain_id=None, deadline=None):
        """
        Verify address on the targeted chains, one result per chain in chain id order.

        Chains still running when the deadline passes are cancelled and reported
        with Absent verdicts and an error; finished chains keep their results.
        """
        chain_ids = self.chain_ids(chain_id)
        if deadline is None:
            deadline = self.settings.deadline

        semaphore = asyncio.Semaphore(self.settings.max_in_flight)
        tasks = {
            asyncio.ensure_future(
                self._guarded(semaphore, cid, address, artifact, creation_tx_hash)
            ): cid
            for cid in chain_ids
        }
        done, pending = await asyncio.wait(tasks, timeout=deadline)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for task, cid in tasks.items():
            if task in pending:
                logger.warning("Chain %s: cancelled at the request deadline", cid)
                results.append(ChainVerificationResult(
                    chain_id=cid,
                    creation=MatchVerdict.ABSENT,
                    runtime=MatchVerdict.ABSENT,
                    error=f"Cancelled: request deadline of {deadline}s exceeded",
                ))
            elif task.exception() is not None:
                # Anything reaching here escaped the chain pipeline; keep it scoped to the chain.
                error = task.exception()
                logger.error("Chain %s: verification crashed: %s", cid, error, exc_info=error)
                results.append(ChainVerificationResult(
                    chain_id=cid,
                    creation=MatchVerdict.ABSENT,
                    runtime=MatchVerdict.ABSENT,
                    error=_describe(error),
                ))
            else:
                results.append(task.result())

        results.sort(key=lambda r: r.chain_id)
        return results
