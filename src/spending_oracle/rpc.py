"""
JSON-RPC adapters for an EVM node.

``RpcClient`` wraps ``httpx`` and maps every transport failure and error
response to ``RpcError``. The adapters on top of it implement the event
source, reference store, valuation source and publish sink against the
module contract.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Any, Callable, Optional

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address

from . import abi
from .allowance import AllowanceLimits
from .errors import MalformedEventError, PublishError, RpcError, UpstreamUnavailableError
from .events import Event, normalize_address, parse_events
from .publish import BatchUpdate, PublishedState
from .sources import Valuation

logger = logging.getLogger(__name__)


class RpcClient:
    """Minimal synchronous JSON-RPC client with a block timestamp cache."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self._http = httpx.Client(timeout=timeout, transport=transport)
        self._ids = itertools.count(1)
        self._timestamps: dict[int, int] = {}
        self._timestamps_lock = threading.Lock()

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def request(self, method: str, params: Optional[list] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            response = self._http.post(self.url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise RpcError(method, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RpcError(method, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise RpcError(method, f"Invalid JSON response: {e}") from e

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            raise RpcError(method, error.get("message", str(error)), code=error.get("code"))
        if not isinstance(body, dict) or "result" not in body:
            raise RpcError(method, "Response has no result")
        return body["result"]

    def block_number(self) -> int:
        return int(self.request("eth_blockNumber"), 16)

    def chain_id(self) -> int:
        return int(self.request("eth_chainId"), 16)

    def gas_price(self) -> int:
        return int(self.request("eth_gasPrice"), 16)

    def transaction_count(self, address: str, block: str = "pending") -> int:
        return int(self.request("eth_getTransactionCount", [address, block]), 16)

    def get_logs(self, log_filter: dict) -> list[dict]:
        return self.request("eth_getLogs", [log_filter]) or []

    def call(self, to: str, data: str, block: str = "latest") -> str:
        return self.request("eth_call", [{"to": to, "data": data}, block])

    def send_raw_transaction(self, raw_tx: str) -> str:
        return self.request("eth_sendRawTransaction", [raw_tx])

    def transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return self.request("eth_getTransactionReceipt", [tx_hash])

    def timestamp_of(self, block_number: int) -> int:
        with self._timestamps_lock:
            cached = self._timestamps.get(block_number)
        if cached is not None:
            return cached
        block = self.request("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise RpcError("eth_getBlockByNumber", f"Block {block_number} not found")
        timestamp = int(block["timestamp"], 16)
        with self._timestamps_lock:
            self._timestamps[block_number] = timestamp
        return timestamp


class _ModuleAdapter:
    def __init__(self, client: RpcClient, module_address: str):
        self.client = client
        self.module_address = normalize_address(module_address)

    def _call(self, name: str, *args: Any) -> tuple:
        data = abi.encode_call(name, *args)
        result = self.client.call(self.module_address, data)
        try:
            return abi.decode_result(name, result)
        except Exception as e:
            raise RpcError("eth_call", f"Cannot decode {name} result: {e}") from e

    def _logs(
        self,
        topic: str,
        from_block: int,
        to_block: int,
        account: Optional[str] = None,
        chunk_size: int = 5000,
    ) -> list[dict]:
        topics: list[Optional[str]] = [topic]
        if account is not None:
            topics.append(abi.address_topic(account))

        logs: list[dict] = []
        start = from_block
        while start <= to_block:
            end = min(to_block, start + chunk_size - 1)
            logs.extend(
                self.client.get_logs(
                    {
                        "address": self.module_address,
                        "fromBlock": hex(start),
                        "toBlock": hex(end),
                        "topics": topics,
                    }
                )
            )
            start = end + 1
        return logs


class RpcEventSource(_ModuleAdapter):
    """Reads ProtocolExecution and TransferExecuted logs from the module."""

    def __init__(
        self,
        client: RpcClient,
        module_address: str,
        on_skip: Optional[Callable[[MalformedEventError], None]] = None,
    ):
        super().__init__(client, module_address)
        self.on_skip = on_skip

    def head_block(self) -> int:
        return self.client.block_number()

    def _events(self, from_block: int, to_block: int, account: Optional[str]) -> list[Event]:
        if from_block > to_block:
            return []
        logs = self._logs(abi.PROTOCOL_EXECUTION_TOPIC, from_block, to_block, account)
        logs += self._logs(abi.TRANSFER_EXECUTED_TOPIC, from_block, to_block, account)

        raws = []
        for log in logs:
            if log.get("removed"):
                continue
            try:
                raws.append(abi.decode_log(log))
            except MalformedEventError as exc:
                logger.warning("Skipping undecodable log %s: %s", log.get("transactionHash"), exc)
                if self.on_skip is not None:
                    self.on_skip(exc)

        logger.debug("Fetched %d logs in blocks %d-%d", len(raws), from_block, to_block)
        return parse_events(raws, resolve_timestamp=self.client.timestamp_of, on_skip=self.on_skip)

    def fetch_events(self, account: str, from_block: int, to_block: int) -> list[Event]:
        return self._events(from_block, to_block, normalize_address(account))

    def fetch_all_events(self, from_block: int, to_block: int) -> list[Event]:
        return self._events(from_block, to_block, None)


class RpcReferenceStore(_ModuleAdapter):
    """Reads published allowance, acquired balances and limits from the module.

    Tokens with a published acquired balance are discovered from
    AcquiredBalanceUpdated logs so stale balances can be cleared.
    """

    def __init__(self, client: RpcClient, module_address: str, blocks_to_look_back: int = 7200):
        super().__init__(client, module_address)
        self.blocks_to_look_back = blocks_to_look_back

    def get_limits(self, account: str) -> AllowanceLimits:
        max_spending_bps, window_duration = self._call("getSubAccountLimits", account)
        try:
            return AllowanceLimits(max_spending_bps=max_spending_bps, window_duration=window_duration)
        except ValueError as e:
            raise UpstreamUnavailableError(
                f"getSubAccountLimits returned invalid limits for {account}: {e}"
            ) from e

    def _published_tokens(self, account: str) -> set[str]:
        head = self.client.block_number()
        from_block = max(0, head - 2 * self.blocks_to_look_back)
        logs = self._logs(abi.ACQUIRED_BALANCE_UPDATED_TOPIC, from_block, head, account)
        return {abi.decode_acquired_token(log) for log in logs if not log.get("removed")}

    def get_published_state(self, account: str) -> PublishedState:
        account = normalize_address(account)
        (allowance,) = self._call("getSpendingAllowance", account)
        balances = {}
        for token in sorted(self._published_tokens(account)):
            (balance,) = self._call("getAcquiredBalance", account, token)
            if balance > 0:
                balances[token] = balance
        return PublishedState(allowance=allowance, balances=balances)

    def active_accounts(self) -> list[str]:
        (accounts,) = self._call("getSubaccountsByRole", abi.DEFI_EXECUTE_ROLE)
        return [a.lower() for a in accounts]


class RpcValuationSource(_ModuleAdapter):
    """Reads the vault's portfolio value from ``getSafeValue``."""

    def portfolio_value(self) -> Valuation:
        total_value, last_updated, _ = self._call("getSafeValue")
        return Valuation(value=total_value, updated_at=last_updated or None)


class RpcPublishSink(_ModuleAdapter):
    """Signs and sends ``batchUpdate`` transactions from the oracle key.

    Publishes are serialized so nonces stay sequential across sweep workers.
    With ``wait_for_receipt`` a publish only returns once the transaction is
    mined, and a reverted transaction raises ``PublishError``.
    """

    def __init__(
        self,
        client: RpcClient,
        module_address: str,
        account: LocalAccount,
        chain_id: Optional[int] = None,
        gas_limit: int = 500_000,
        wait_for_receipt: bool = False,
        receipt_timeout: float = 120.0,
    ):
        super().__init__(client, module_address)
        self.account = account
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.wait_for_receipt = wait_for_receipt
        self.receipt_timeout = receipt_timeout
        self._nonce: Optional[int] = None
        self._lock = threading.Lock()

    @classmethod
    def from_private_key(
        cls,
        client: RpcClient,
        module_address: str,
        private_key: str,
        **kwargs,
    ) -> "RpcPublishSink":
        return cls(client, module_address, Account.from_key(private_key), **kwargs)

    @property
    def address(self) -> str:
        return self.account.address

    def start_batch(self) -> None:
        """Drop the cached nonce so the next publish re-reads the pending count."""
        with self._lock:
            self._nonce = None

    def _build_transaction(self, update: BatchUpdate, nonce: int) -> dict:
        if self.chain_id is None:
            self.chain_id = self.client.chain_id()
        return {
            "to": to_checksum_address(self.module_address),
            "data": abi.batch_update_call(
                update.account, update.new_allowance, update.tokens, update.amounts
            ),
            "value": 0,
            "gas": self.gas_limit,
            "gasPrice": self.client.gas_price(),
            "nonce": nonce,
            "chainId": self.chain_id,
        }

    def publish(self, update: BatchUpdate) -> str:
        with self._lock:
            try:
                if self._nonce is None:
                    self._nonce = self.client.transaction_count(self.account.address)
                tx = self._build_transaction(update, self._nonce)
                signed = self.account.sign_transaction(tx)
                tx_hash = self.client.send_raw_transaction("0x" + bytes(signed.raw_transaction).hex())
            except RpcError as e:
                # Re-read the nonce from the node next time.
                self._nonce = None
                raise PublishError(f"batchUpdate for {update.account} failed: {e}") from e
            self._nonce += 1

        logger.info(
            "Sent batchUpdate for %s: allowance=%d, %d tokens, tx=%s",
            update.account, update.new_allowance, len(update.balances), tx_hash,
        )
        if self.wait_for_receipt:
            self._await_receipt(tx_hash)
        return tx_hash

    def _await_receipt(self, tx_hash: str, poll_interval: float = 2.0) -> dict:
        deadline = time.monotonic() + self.receipt_timeout
        while time.monotonic() < deadline:
            receipt = self.client.transaction_receipt(tx_hash)
            if receipt:
                if int(receipt.get("status", "0x1"), 16) == 0:
                    raise PublishError(f"Transaction {tx_hash} reverted")
                logger.debug("Confirmed %s in block %s", tx_hash, receipt.get("blockNumber"))
                return receipt
            time.sleep(poll_interval)
        raise PublishError(f"Timed out waiting for receipt of {tx_hash}")
