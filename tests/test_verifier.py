import time
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from helpers import (
    ADDRESS,
    COMMIT,
    CONTRACT,
    CREATION,
    RUNTIME,
    TRAILER_A,
    TX_HASH,
    FakeDecompiler,
    FakeFetcher,
    make_artifact,
    make_settings,
    word,
)

from coverify.errors import BuildError, BuildFailure, RequestError
from coverify.models import MatchVerdict, VerificationRequest
from coverify.orchestrator import ChainOrchestrator
from coverify.verifier import Verifier, verify


def make_request(**kwargs):
    fields = dict(
        repo_url="https://github.com/example/counter",
        commit=COMMIT,
        contract="src/Counter.sol:Counter",
        address=ADDRESS.upper().replace("0X", "0x"),
        creation_tx_hash=TX_HASH,
    )
    fields.update(kwargs)
    return VerificationRequest(**fields)


class TestVerifier(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.fetched = []
        self.fetchers = {
            1: FakeFetcher(1, code=RUNTIME, creation_input=CREATION + word(7)),
            10: FakeFetcher(10, code=bytes.fromhex("6080604052600180fdfe")),
        }
        self.settings = make_settings(1, 10)
        self.builder = MagicMock()
        self.builder.build.return_value = make_artifact()
        self.decompiler = FakeDecompiler()
        orchestrator = ChainOrchestrator(
            self.settings, decompiler=self.decompiler, fetcher_factory=self.fetcher_for
        )
        self.verifier = Verifier(self.settings, builder=self.builder, orchestrator=orchestrator)

    def tearDown(self):
        self.verifier.close()

    def fetcher_for(self, endpoint):
        self.fetched.append(endpoint.chain_id)
        return self.fetchers[endpoint.chain_id]

    async def test_verify_all_chains(self):
        request = make_request()
        result = await self.verifier.verify(request)

        self.builder.build.assert_called_once_with(
            "https://github.com/example/counter", COMMIT, CONTRACT, "default", self.settings.deadline
        )
        self.assertEqual(result.address, ADDRESS)
        self.assertEqual(result.request, request)
        self.assertEqual([c.chain_id for c in result.chains], [1, 10])
        self.assertEqual(result.chains[0].creation, MatchVerdict.EXACT_MATCH)
        self.assertEqual(result.chains[0].runtime, MatchVerdict.EXACT_MATCH)
        self.assertEqual(result.chains[1].runtime, MatchVerdict.NO_MATCH)
        self.assertIsNotNone(result.chains[1].decompilation)
        self.assertEqual(result.verified_chains, [1])

        self.assertIs(result.artifact, self.builder.build.return_value)
        data = result.to_dict()["artifact"]
        self.assertEqual(data["contract"], str(CONTRACT))
        self.assertEqual(data["compiler_version"], "0.8.0+commit.c7dfd78e")
        self.assertEqual(data["metadata_length"], len(TRAILER_A))
        self.assertEqual(data["abi"], list(self.builder.build.return_value.abi))

    async def test_verify_single_chain(self):
        result = await self.verifier.verify(make_request(chain_id=10))
        self.assertEqual([c.chain_id for c in result.chains], [10])
        self.assertEqual(self.fetched, [10])

    async def test_unknown_chain_is_rejected_before_building(self):
        with self.assertRaises(RequestError):
            await self.verifier.verify(make_request(chain_id=137))
        self.builder.build.assert_not_called()

    async def test_build_error_contacts_no_chain(self):
        self.builder.build.side_effect = BuildError(BuildFailure.CHECKOUT, f"Commit {COMMIT} not found")
        with self.assertRaises(BuildError) as ctx:
            await self.verifier.verify(make_request())
        self.assertEqual(ctx.exception.kind, BuildFailure.CHECKOUT)
        self.assertEqual(self.fetched, [])

    async def test_build_past_deadline(self):
        self.builder.build.side_effect = lambda *args: time.sleep(0.3)
        verifier = Verifier(
            make_settings(1, deadline=0.05), builder=self.builder, orchestrator=self.verifier.orchestrator
        )
        try:
            with self.assertRaises(BuildError) as ctx:
                await verifier.verify(make_request())
        finally:
            verifier.close()
        self.assertIn("deadline", str(ctx.exception))
        self.assertEqual(self.fetched, [])

    async def test_inspect(self):
        result = await self.verifier.inspect(ADDRESS)

        self.builder.build.assert_not_called()
        self.assertIsNone(result.request)
        self.assertIsNone(result.artifact)
        self.assertIsNone(result.to_dict()["artifact"])
        self.assertEqual([c.runtime for c in result.chains], [MatchVerdict.ABSENT, MatchVerdict.ABSENT])
        self.assertEqual(len(self.decompiler.calls), 2)

    async def test_inspect_rejects_bad_address(self):
        with self.assertRaises(RequestError):
            await self.verifier.inspect("0x1234")


class TestVerifyFunction(unittest.IsolatedAsyncioTestCase):
    @patch('coverify.verifier.load_settings')
    @patch('coverify.verifier.Verifier')
    async def test_loads_settings_and_closes(self, mock_verifier, mock_load):
        instance = mock_verifier.return_value
        instance.verify = AsyncMock(return_value="result")
        request = make_request()

        self.assertEqual(await verify(request), "result")

        mock_verifier.assert_called_once_with(mock_load.return_value)
        instance.verify.assert_awaited_once_with(request)
        instance.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
