"""
Entry point of the verification engine.

    result = await Verifier(load_settings()).verify(request)

A request either yields a VerificationResult with exactly one entry per
targeted chain, or raises a VerificationError (RequestError, BuildError)
before any chain is contacted.

License: AGPL-3.0
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from .build import ArtifactBuilder, build_tool_for
from .config import load_settings
from .errors import BuildError, BuildFailure, RequestError
from .models import ADDRESS_RE, assemble_result
from .orchestrator import ChainOrchestrator

logger = logging.getLogger(__name__)


class Verifier:
    def __init__(self, settings, builder=None, orchestrator=None, build_workers=2):
        self.settings = settings
        self.builder = builder or ArtifactBuilder(build_tool_for(settings.build_tool))
        self.orchestrator = orchestrator or ChainOrchestrator(settings)
        # Clone and compile block for minutes; keep them away from the default pool the RPC calls use.
        self._build_executor = ThreadPoolExecutor(
            max_workers=build_workers, thread_name_prefix="coverify-build"
        )

    def close(self):
        self._build_executor.shutdown(wait=False)

    async def build(self, request, timeout=None):
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._build_executor,
            self.builder.build,
            request.repo_url,
            request.commit,
            request.contract,
            request.profile,
            timeout,
        )
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise BuildError(BuildFailure.COMPILE, f"Build did not finish within the {timeout}s deadline")

    async def verify(self, request):
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = self.settings.deadline

        # Unknown chains are a malformed request: reject before building anything.
        chain_ids = self.orchestrator.chain_ids(request.chain_id)
        logger.info(
            "Verifying %s at %s@%s on chain(s) %s",
            request.address, request.repo_url, request.commit, chain_ids,
        )

        artifact = await self.build(request, timeout=deadline)

        remaining = max(deadline - (loop.time() - started), 0)
        results = await self.orchestrator.run(
            request.address,
            artifact,
            creation_tx_hash=request.creation_tx_hash,
            chain_id=request.chain_id,
            deadline=remaining,
        )
        return assemble_result(request, request.address, chain_ids, results, artifact=artifact)

    async def inspect(self, address, chain_id=None):
        """Fetch and decompile code at address without any source to compare against."""
        if not ADDRESS_RE.match(address or ""):
            raise RequestError(f"Invalid contract address: {address!r}")
        address = address.lower()
        chain_ids = self.orchestrator.chain_ids(chain_id)
        results = await self.orchestrator.run(address, None, chain_id=chain_id)
        return assemble_result(None, address, chain_ids, results)


async def verify(request, settings=None):
    """Verify request with settings loaded from the environment unless given."""
    verifier = Verifier(settings if settings is not None else load_settings())
    try:
        return await verifier.verify(request)
    finally:
        verifier.close()
