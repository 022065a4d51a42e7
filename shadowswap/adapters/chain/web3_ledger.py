"""
web3.py-backed ledger client for the router and the audit registry.

Signs locally with eth-account and talks to a plain JSON-RPC HTTP endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.logs import DISCARD

from .abi import REGISTRY_ABI, ROUTER_ABI
from .ledger import ExecuteMatchCall, LedgerError, SimulationError, SubmissionError, TxReceipt


logger = logging.getLogger(__name__)


def namehash(name: str) -> bytes:
    """EIP-137 namehash (labels are used as given, without normalisation)."""
    node = b"\x00" * 32
    if name:
        for label in reversed(name.split(".")):
            node = Web3.keccak(node + Web3.keccak(text=label))
    return node


def _reason(err: BaseException) -> str:
    # ContractLogicError carries the decoded revert string in .message on recent web3
    msg = getattr(err, "message", None) or str(err) or err.__class__.__name__
    return str(msg)


class Web3Ledger:
    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        router_address: str,
        registry_address: str = "",
        chain_id: Optional[int] = None,
        timeout_s: float = 30.0,
        receipt_timeout_s: float = 120.0,
        poll_interval_s: float = 2.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        if not router_address:
            raise ValueError("router address is required for the web3 ledger")
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout_s)}))
        self.account = Account.from_key(private_key)
        self.solver_address: str = self.account.address
        self.chain_id = chain_id
        self.receipt_timeout_s = receipt_timeout_s
        self.poll_interval_s = poll_interval_s
        self.router = self.w3.eth.contract(address=Web3.to_checksum_address(router_address), abi=ROUTER_ABI)
        self.registry = (
            self.w3.eth.contract(address=Web3.to_checksum_address(registry_address), abi=REGISTRY_ABI)
            if registry_address
            else None
        )

    def _match_fn(self, call: ExecuteMatchCall):
        pk = call.pool_key
        return self.router.functions.executeMatch(
            Web3.to_checksum_address(call.user),
            (
                Web3.to_checksum_address(pk.currency0),
                Web3.to_checksum_address(pk.currency1),
                int(pk.fee),
                int(pk.tick_spacing),
                Web3.to_checksum_address(pk.hooks),
            ),
            bool(call.zero_for_one),
            int(call.amount_in),
        )

    async def _chain_id(self) -> int:
        if self.chain_id is None:
            self.chain_id = int(await self.w3.eth.chain_id)
        return self.chain_id

    async def _sign_and_send(self, fn, value: int = 0) -> str:
        try:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            tx = await fn.build_transaction(
                {
                    "from": self.account.address,
                    "value": int(value),
                    "nonce": nonce,
                    "chainId": await self._chain_id(),
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise SimulationError(_reason(e)) from e
        except Exception as e:
            raise SubmissionError(_reason(e)) from e
        return Web3.to_hex(tx_hash)

    async def simulate_execute_match(self, call: ExecuteMatchCall) -> Optional[int]:
        try:
            out = await self._match_fn(call).call({"from": self.account.address, "value": int(call.value)})
        except ContractLogicError as e:
            raise SimulationError(_reason(e)) from e
        return int(out) if out is not None else None

    async def send_execute_match(self, call: ExecuteMatchCall) -> str:
        return await self._sign_and_send(self._match_fn(call), value=call.value)

    async def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> TxReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout_s, poll_latency=self.poll_interval_s
            )
        except TimeExhausted as e:
            raise LedgerError(f"timed out waiting for {tx_hash}") from e
        block_number = int(receipt["blockNumber"])
        # receipt inclusion is the first confirmation
        while confirmations > 1:
            head = int(await self.w3.eth.block_number)
            if head - block_number + 1 >= confirmations:
                break
            await asyncio.sleep(self.poll_interval_s)
        success = int(receipt["status"]) == 1
        amount_out: Optional[int] = None
        if success:
            for ev in self.router.events.MatchExecuted().process_receipt(receipt, errors=DISCARD):
                amount_out = int(ev["args"]["amountOut"])
        return TxReceipt(
            tx_hash=tx_hash,
            success=success,
            block_number=block_number,
            gas_used=int(receipt.get("gasUsed", 0)),
            amount_out=amount_out,
        )

    async def read_solver(self) -> str:
        return str(await self.router.functions.solver().call())

    async def get_balance(self, address: Optional[str] = None) -> int:
        addr = Web3.to_checksum_address(address or self.account.address)
        return int(await self.w3.eth.get_balance(addr))

    async def set_text(self, node: str, key: str, value: str) -> str:
        if self.registry is None:
            raise LedgerError("no registry address configured")
        fn = self.registry.functions.setText(namehash(node), key, value)
        try:
            await fn.call({"from": self.account.address})
        except ContractLogicError as e:
            raise SimulationError(_reason(e)) from e
        return await self._sign_and_send(fn)
