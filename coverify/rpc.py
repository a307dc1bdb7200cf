"""
Chain data fetching over JSON-RPC.

RpcClient does one blocking HTTP round trip with requests. ChainDataFetcher
runs those calls off the event loop, retries transient failures with
exponential backoff and bounds the whole retry loop of a call by a timeout.

License: AGPL-3.0
"""

import asyncio
import itertools
import logging
import re

import requests

from .errors import RpcError, TxNotFound, TxPending
from .models import from_hex

logger = logging.getLogger(__name__)

# https://github.com/Arachnid/deterministic-deployment-proxy
# calldata: salt (32 bytes) || initcode
DETERMINISTIC_DEPLOYMENT_PROXY = "0x4e59b44847b379578588920ca78fbf26c0b4956c"
# 0age's ImmutableCreate2Factory, safeCreate2(bytes32 salt, bytes initializationCode)
IMMUTABLE_CREATE2_FACTORY = "0x0000000000ffe8b47b3e2130213b802212439497"


# JSON-RPC error codes providers use for rate limiting and overload.
TRANSIENT_ERROR_CODES = {-32005, -32016, -32090, 429}
TRANSIENT_ERROR_RE = re.compile(r"rate.?limit|limit exceeded|too many requests|capacity exceeded", re.I)


def _is_transient_error(error):
    if isinstance(error, dict):
        if error.get("code") in TRANSIENT_ERROR_CODES:
            return True
        error = error.get("message", "")
    return bool(TRANSIENT_ERROR_RE.search(str(error)))


class RpcClient:
    def __init__(self, endpoint, session=None, timeout=10.0):
        self.endpoint = endpoint
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.timeout = timeout
        self._ids = itertools.count(1)

    def close(self):
        """Close the HTTP session unless it was handed in by the caller."""
        if self._owns_session:
            self.session.close()

    def call(self, method, params):
        chain_id = self.endpoint.chain_id
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        try:
            response = self.session.post(self.endpoint.rpc_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise RpcError(chain_id, f"{method} failed: {e}")

        # Rate limiting and server errors are worth another try, other HTTP errors are not.
        if response.status_code == 429 or response.status_code >= 500:
            raise RpcError(chain_id, f"{method} failed: HTTP {response.status_code}")
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise RpcError(chain_id, f"{method} failed: {e}", transient=False)

        try:
            body = response.json()
        except ValueError:
            raise RpcError(chain_id, f"{method} returned a malformed response")
        if not isinstance(body, dict):
            raise RpcError(chain_id, f"{method} returned a malformed response")
        if body.get("error"):
            error = body["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            # Many providers answer HTTP 200 with a JSON-RPC error when rate limiting.
            raise RpcError(chain_id, f"{method} failed: {message}", transient=_is_transient_error(error))
        if "result" not in body:
            raise RpcError(chain_id, f"{method} returned a malformed response")
        return body["result"]


def extract_creation_code(to, data):
    """Recover the creation code from a deployment transaction's input."""
    if to is None:
        return data

    factory = to.lower()
    if factory == DETERMINISTIC_DEPLOYMENT_PROXY:
        return data[32:]

    if factory == IMMUTABLE_CREATE2_FACTORY:
        # selector | salt | offset of initializationCode | ... | length | code
        if len(data) >= 68:
            start = 4 + int.from_bytes(data[36:68], "big")
            if start + 32 <= len(data):
                length = int.from_bytes(data[start:start + 32], "big")
                code = data[start + 32:start + 32 + length]
                if len(code) == length:
                    return code
        logger.warning("Malformed safeCreate2 calldata, comparing the raw input")
        return data

    logger.info("Transaction calls unknown factory %s, comparing the raw input", to)
    return data


class ChainDataFetcher:
    def __init__(self, endpoint, client=None, retries=3, backoff=0.5, timeout=60.0):
        self.endpoint = endpoint
        self.client = client or RpcClient(endpoint)
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout

    @classmethod
    def from_settings(cls, endpoint, settings, session=None):
        return cls(
            endpoint,
            client=RpcClient(endpoint, session=session, timeout=settings.rpc_timeout),
            retries=settings.rpc_retries,
            backoff=settings.rpc_backoff,
            timeout=settings.chain_timeout,
        )

    @property
    def chain_id(self):
        return self.endpoint.chain_id

    def close(self):
        self.client.close()

    async def _with_retries(self, method, params):
        delay = self.backoff
        for attempt in range(self.retries + 1):
            try:
                return await asyncio.to_thread(self.client.call, method, params)
            except RpcError as e:
                if not e.transient or attempt == self.retries:
                    raise
                logger.debug(
                    "%s on chain %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    method, self.chain_id, attempt + 1, self.retries + 1, delay, e,
                )
                await asyncio.sleep(delay)
                delay *= 2

    async def call(self, method, params):
        try:
            return await asyncio.wait_for(self._with_retries(method, params), self.timeout)
        except asyncio.TimeoutError:
            raise RpcError(self.chain_id, f"{method} timed out after {self.timeout}s")

    def _hex(self, value, what):
        if not isinstance(value, str):
            raise RpcError(self.chain_id, f"Malformed {what}: {value!r}")
        try:
            return from_hex(value)
        except ValueError:
            raise RpcError(self.chain_id, f"Malformed {what}: {value[:20]!r}...")

    async def get_code(self, address):
        """Deployed code at address; empty bytes when nothing is deployed."""
        result = await self.call("eth_getCode", [address, "latest"])
        return self._hex(result, "code")

    async def get_transaction(self, tx_hash):
        tx = await self.call("eth_getTransactionByHash", [tx_hash])
        if tx is None:
            raise TxNotFound(self.chain_id, f"Transaction {tx_hash} not found")
        if not isinstance(tx, dict):
            raise RpcError(self.chain_id, f"Malformed transaction: {tx!r}")
        block = tx.get("blockNumber")
        try:
            block = int(block, 16) if block else None
        except (TypeError, ValueError):
            raise RpcError(self.chain_id, f"Malformed block number: {block!r}")
        return {
            "input": self._hex(tx.get("input", "0x"), "transaction input"),
            "block": block,
            "to": tx.get("to"),
        }

    async def get_creation_input(self, tx_hash):
        """Creation code (with constructor arguments) sent by the deployment transaction."""
        tx = await self.get_transaction(tx_hash)
        if tx["block"] is None:
            raise TxPending(self.chain_id, f"Transaction {tx_hash} is not mined yet")
        return extract_creation_code(tx["to"], tx["input"])
