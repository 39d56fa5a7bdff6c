"""
Minimal JSON-RPC client for EVM execution nodes.

One RPCClient wraps one endpoint and one requests.Session. Creating the
client is the "connect" step; closing it releases the session. Every call
raises RPCError on failure so callers can decide what is fatal.
"""

import itertools
import threading
from typing import Any, Optional
from urllib.parse import urlparse

import requests

# ─── Errors ──────────────────────────────────────────────────────────────────


class RPCError(Exception):
    """A JSON-RPC call failed (transport, HTTP, decoding or RPC-level error)."""


class RPCConnectionError(RPCError):
    """No session could be established with the endpoint."""


class RPCQueryError(RPCError):
    """A required query failed after the session was established."""

    def __init__(self, what: str, cause: Exception):
        super().__init__(f"failed to get {what}: {cause}")
        self.what = what
        self.cause = cause


class ProbeCancelled(RPCError):
    """The caller cancelled the run before this call was sent."""


# ─── Helpers ─────────────────────────────────────────────────────────────────

SUPPORTED_SCHEMES = ("http", "https")
TRACE_CONFIG = {"tracer": "callTracer"}


def parse_quantity(value: Any, what: str = "quantity") -> int:
    """Decode a 0x-prefixed hex quantity as returned by eth_* methods."""
    if not isinstance(value, str) or not value.startswith("0x"):
        raise RPCError(f"malformed {what}: {value!r}")
    try:
        return int(value, 16)
    except ValueError:
        raise RPCError(f"malformed {what}: {value!r}") from None


# ─── Client ──────────────────────────────────────────────────────────────────


class RPCClient:
    def __init__(
        self,
        address: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ):
        try:
            parsed = urlparse(address)
        except ValueError as e:
            raise RPCConnectionError(f"failed to connect: invalid endpoint {address!r}: {e}") from e
        if parsed.scheme not in SUPPORTED_SCHEMES or not parsed.netloc:
            raise RPCConnectionError(f"failed to connect: unsupported endpoint {address!r}")
        self.address = address
        self.timeout = timeout
        self.cancel = cancel
        self._ids = itertools.count(1)
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def __enter__(self) -> "RPCClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def call(self, method: str, params: Optional[list] = None) -> Any:
        """POST one JSON-RPC request and return its ``result`` member."""
        if self.cancel is not None and self.cancel.is_set():
            raise ProbeCancelled(f"{method}: probe cancelled")

        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": next(self._ids),
        }
        try:
            resp = self.session.post(self.address, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise RPCError(f"{method}: {e}") from e

        if resp.status_code != 200:
            raise RPCError(f"{method}: HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError:
            raise RPCError(f"{method}: response is not JSON: {resp.text[:200]}") from None
        if not isinstance(body, dict):
            raise RPCError(f"{method}: unexpected response: {str(body)[:200]}")
        if body.get("error") is not None:
            raise RPCError(f"{method}: RPC error: {body['error']}")
        return body.get("result")

    # ─── eth_* / debug_* wrappers ────────────────────────────────────────────

    def chain_id(self) -> int:
        return parse_quantity(self.call("eth_chainId"), "chain id")

    def block_number(self) -> int:
        return parse_quantity(self.call("eth_blockNumber"), "block number")

    def block_hash(self, number: int) -> Optional[str]:
        """Hash of block ``number``, or None when the node does not have it."""
        header = self.call("eth_getBlockByNumber", [hex(number), False])
        if header is None:
            return None
        if not isinstance(header, dict):
            raise RPCError(f"malformed block header for block {number}")
        block_hash = header.get("hash")
        if not isinstance(block_hash, str) or not block_hash.startswith("0x"):
            raise RPCError(f"malformed block hash for block {number}: {block_hash!r}")
        return block_hash.lower()

    def trace_block(self, number: int) -> Any:
        return self.call("debug_traceBlockByNumber", [hex(number), TRACE_CONFIG])
