"""HTTP clients for the execution (JSON-RPC) and consensus (REST) status APIs.

Each call makes exactly one round trip bounded by the configured timeout.
Nothing here retries; callers decide what a failure means.
"""

from __future__ import annotations

import itertools
import string
from typing import Any

import httpx
import structlog

from ..errors import MalformedResponse, ServiceUnreachable
from ..models import BlockInfo, ConsensusSyncStatus, PeerSnapshot, SyncSnapshot

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


def parse_hex_quantity(value: Any, *, service: str = "execution", field: str = "value") -> int:
    """Decode a ``0x``-prefixed hex quantity into an unsigned int."""
    if not isinstance(value, str):
        raise MalformedResponse(service, f"{field} is not a hex string: {value!r}")
    s = value.strip()
    if not s.lower().startswith("0x") or len(s) == 2:
        raise MalformedResponse(service, f"{field} is not 0x-prefixed hex: {value!r}")
    digits = s[2:]
    # int() would also accept signs and underscores
    if any(c not in string.hexdigits for c in digits):
        raise MalformedResponse(service, f"{field} is not valid hex: {value!r}")
    return int(digits, 16)


def parse_decimal_quantity(value: Any, *, service: str = "consensus", field: str = "value") -> int:
    """Decode a decimal quantity given either as a JSON number or a string."""
    if isinstance(value, bool):
        raise MalformedResponse(service, f"{field} is not a number: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise MalformedResponse(service, f"{field} is negative: {value!r}")
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise MalformedResponse(service, f"{field} is not a decimal quantity: {value!r}")


class _HTTPService:
    service = "service"

    def __init__(self, base_url: str, *, timeout: float = DEFAULT_TIMEOUT_SECONDS, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _send(self, method: str, url: str, **kwargs) -> Any:
        try:
            resp = self.client.request(method, url, **kwargs)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise ServiceUnreachable(self.service, f"timed out calling {url}") from e
        except httpx.HTTPStatusError as e:
            raise ServiceUnreachable(self.service, f"HTTP {e.response.status_code} from {url}") from e
        except httpx.HTTPError as e:
            raise ServiceUnreachable(self.service, f"{type(e).__name__} calling {url}: {e}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponse(self.service, f"non-JSON body from {url}") from e


class ExecutionClient(_HTTPService):
    """JSON-RPC client for the execution service (default port 8545)."""

    service = "execution"

    def __init__(self, base_url: str, *, timeout: float = DEFAULT_TIMEOUT_SECONDS, client: httpx.Client | None = None):
        super().__init__(base_url, timeout=timeout, client=client)
        self._ids = itertools.count(1)

    def call(self, method: str, params: list | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params or [], "id": next(self._ids)}
        logger.debug("rpc_call", service=self.service, method=method)
        body = self._send(
            "POST",
            self.base_url,
            json=payload,
            headers={"Content-Type": "application/json"},
        )
        if not isinstance(body, dict):
            raise MalformedResponse(self.service, f"{method} returned a non-object body")
        if body.get("error") is not None:
            err = body["error"]
            message = err.get("message") if isinstance(err, dict) else err
            raise ServiceUnreachable(self.service, f"{method} error: {message}")
        if "result" not in body:
            raise MalformedResponse(self.service, f"{method} response has no result")
        return body["result"]

    def get_sync_status(self) -> SyncSnapshot:
        """``false`` means synced; an object means syncing with hex progress fields."""
        result = self.call("eth_syncing")
        if result is False:
            current = self.get_block_number()
            return SyncSnapshot(is_syncing=False, current=current)
        if not isinstance(result, dict):
            raise MalformedResponse(self.service, f"eth_syncing returned {result!r}")
        current = parse_hex_quantity(result.get("currentBlock"), field="currentBlock")
        highest = parse_hex_quantity(result.get("highestBlock"), field="highestBlock")
        return SyncSnapshot(is_syncing=True, current=current, target=highest)

    def get_block_number(self) -> int:
        return parse_hex_quantity(self.call("eth_blockNumber"), field="blockNumber")

    def get_latest_block(self) -> BlockInfo:
        block = self.call("eth_getBlockByNumber", ["latest", False])
        if not isinstance(block, dict):
            raise MalformedResponse(self.service, f"eth_getBlockByNumber returned {block!r}")
        return BlockInfo(
            number=parse_hex_quantity(block.get("number"), field="number"),
            timestamp=parse_hex_quantity(block.get("timestamp"), field="timestamp"),
        )

    def get_peer_count(self) -> PeerSnapshot:
        return PeerSnapshot(peer_count=parse_hex_quantity(self.call("net_peerCount"), field="peerCount"))


class ConsensusClient(_HTTPService):
    """Beacon node REST client (default port 5052)."""

    service = "consensus"

    def _data(self, path: str) -> dict:
        logger.debug("rest_call", service=self.service, path=path)
        body = self._send("GET", f"{self.base_url}{path}")
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise MalformedResponse(self.service, f"{path} response has no data object")
        return data

    def get_sync_status(self) -> ConsensusSyncStatus:
        data = self._data("/eth/v1/node/syncing")
        is_syncing = data.get("is_syncing")
        if not isinstance(is_syncing, bool):
            raise MalformedResponse(self.service, f"is_syncing is not a boolean: {is_syncing!r}")
        return ConsensusSyncStatus(
            is_syncing=is_syncing,
            head_slot=parse_decimal_quantity(data.get("head_slot"), field="head_slot"),
            sync_distance=parse_decimal_quantity(data.get("sync_distance"), field="sync_distance"),
        )

    def get_peer_count(self) -> PeerSnapshot:
        data = self._data("/eth/v1/node/peer_count")
        return PeerSnapshot(peer_count=parse_decimal_quantity(data.get("connected"), field="connected"))
