import ssl
import base64
import asyncio
import logging
import itertools

import aiohttp
import certifi
from solana.rpc.commitment import Confirmed, Finalized
from solana.rpc.types import TxOpts
from solders.hash import Hash

from orchestrator_errors import LedgerRpcError, LedgerTransportError

logger = logging.getLogger(__name__)

CONFIRMED_STATUSES = ('confirmed', 'finalized')


class LedgerClient:
    """
    Async JSON-RPC client for the ledger node.

    Every call is a single round trip; retry policy lives in the
    SubmissionRetrier so failures here surface as LedgerRpcError (the node
    answered with an error object) or LedgerTransportError (it did not answer).
    """

    def __init__(self, rpc_url, commitment=Confirmed, timeout=30, tx_opts=None):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.tx_opts = tx_opts or TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=5)
        self._session = None
        self._ids = itertools.count(1)

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_session(self):
        if self._session is None or self._session.closed:
            # Create SSL context using certifi's certificate bundle
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self._session = aiohttp.ClientSession(timeout=self.timeout, connector=connector)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def rpc(self, method, params=None):
        """Make a JSON-RPC request and return its ``result`` member."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        headers = {"Content-Type": "application/json"}
        logger.debug(f"Making RPC request: {method} with params: {params}")

        session = await self._get_session()
        try:
            async with session.post(self.rpc_url, json=payload, headers=headers) as response:
                if response.status != 200:
                    text = await response.text()
                    raise LedgerTransportError(f"RPC request {method} failed with status {response.status}: {text}")
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LedgerTransportError(f"RPC request {method} failed: {e!r}") from e
        except ValueError as e:
            raise LedgerTransportError(f"RPC request {method} returned a non-JSON body: {e}") from e

        if not isinstance(body, dict):
            raise LedgerTransportError(f"RPC request {method} returned an unexpected body: {body!r}")
        if 'error' in body:
            error = body['error'] or {}
            logger.error(f"RPC error: {error}")
            raise LedgerRpcError(error.get('code'), error.get('message', 'Unknown error'), error.get('data'))
        if body.get('result') is None:
            raise LedgerTransportError(f"RPC request {method} returned no result")
        logger.debug(f"RPC response received for {method}")
        return body['result']

    async def rpc_value(self, method, params=None):
        """The ``value`` member of a context-wrapped result."""
        result = await self.rpc(method, params)
        if not isinstance(result, dict) or 'value' not in result:
            raise LedgerTransportError(f"RPC request {method} returned a malformed result: {result!r}")
        return result['value']

    async def get_minimum_balance_for_rent_exemption(self, size):
        return int(await self.rpc("getMinimumBalanceForRentExemption", [size, {"commitment": self.commitment}]))

    async def get_latest_blockhash(self, commitment=Finalized):
        """Return (blockhash, last valid block height)."""
        value = await self.rpc_value("getLatestBlockhash", [{"commitment": commitment}])
        if not value or 'blockhash' not in value:
            raise LedgerTransportError(f"getLatestBlockhash returned no blockhash: {value!r}")
        logger.info(f"Got blockhash with {commitment} commitment: {value['blockhash']}")
        return Hash.from_string(value['blockhash']), value.get('lastValidBlockHeight')

    async def send_transaction(self, raw_transaction):
        tx_options = {
            "encoding": "base64",
            "skipPreflight": self.tx_opts.skip_preflight,
            "preflightCommitment": self.tx_opts.preflight_commitment,
        }
        if self.tx_opts.max_retries is not None:
            tx_options["maxRetries"] = self.tx_opts.max_retries
        serialized = base64.b64encode(bytes(raw_transaction)).decode('ascii')
        try:
            signature = await self.rpc("sendTransaction", [serialized, tx_options])
        except LedgerRpcError as e:
            # Log transaction simulation errors if available
            for log in e.logs:
                logger.error(f"Transaction log: {log}")
            raise
        logger.info(f"Transaction sent: {signature}")
        return signature

    async def get_signature_status(self, signature):
        """Status object for ``signature`` or None when the node has not seen it."""
        statuses = await self.rpc_value(
            "getSignatureStatuses", [[str(signature)], {"searchTransactionHistory": True}]
        ) or [None]
        return statuses[0]

    async def confirm(self, signature):
        """One status check: 'confirmed'/'finalized'/'processed', 'failed' or None."""
        status = await self.get_signature_status(signature)
        if status is None:
            return None
        if status.get('err'):
            return 'failed'
        return status.get('confirmationStatus') or 'processed'

    async def request_airdrop(self, address, lamports):
        signature = await self.rpc("requestAirdrop", [str(address), int(lamports), {"commitment": self.commitment}])
        logger.info(f"Requested airdrop of {lamports} lamports to {address}: {signature}")
        return signature

    async def get_balance(self, address):
        return int(await self.rpc_value("getBalance", [str(address), {"commitment": self.commitment}]))
