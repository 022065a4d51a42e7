from __future__ import annotations

import asyncio
import logging
from http.server import ThreadingHTTPServer
from typing import Any, Dict, Optional

from shadowswap.adapters.chain.ledger import LedgerClient, PoolKey, build_ledger
from shadowswap.config import Config
from shadowswap.core.pricing import PriceRule
from shadowswap.core.ratelimit import AsyncSleeper, FixedDelayPacer
from shadowswap.events.broadcaster import EventBroadcaster
from shadowswap.matching.orderbook import OrderBook
from shadowswap.settlement.engine import SettlementEngine

from .app import SwapService
from .http_server import start_http_server, stop_http_server


logger = logging.getLogger(__name__)


def ledger_kwargs_from_config(cfg: Config) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "max_retries": cfg.chain_max_retries,
        "retry_sleep_ms": cfg.chain_retry_sleep_ms,
    }
    if cfg.chain_ledger.lower() == "web3":
        kwargs.update(
            rpc_url=cfg.chain_rpc_url,
            private_key=cfg.chain_private_key,
            router_address=cfg.contracts_router,
            registry_address=cfg.contracts_registry,
            chain_id=cfg.chain_id,
            timeout_s=cfg.chain_timeout_s,
        )
    else:
        kwargs["price_ratio"] = cfg.matching_price_ratio
    return kwargs


def pool_key_from_config(cfg: Config) -> PoolKey:
    # currency0 must sort below currency1; the native zero address always does
    a, b = cfg.contracts_native_token, cfg.contracts_secondary_token
    c0, c1 = (a, b) if int(a, 16) <= int(b or "0x0", 16) else (b, a)
    return PoolKey(
        currency0=c0,
        currency1=c1,
        fee=cfg.contracts_pool_fee,
        tick_spacing=cfg.contracts_pool_tick_spacing,
        hooks=cfg.contracts_hook,
    )


class ServiceRunner:
    """Builds the solver components from config and owns their lifetime."""

    def __init__(self, cfg: Config, ledger: Optional[LedgerClient] = None, sleeper: Optional[AsyncSleeper] = None):
        self.cfg = cfg
        self.ledger = ledger or build_ledger(cfg.chain_ledger, **ledger_kwargs_from_config(cfg))
        self.events = EventBroadcaster(
            max_events_per_intent=cfg.events_max_per_intent,
            event_ttl_ms=cfg.events_ttl_ms,
            stream_queue_size=cfg.events_stream_queue_size,
        )
        self.engine = SettlementEngine(
            self.ledger,
            pool_key_from_config(cfg),
            native_token=cfg.contracts_native_token,
            events=self.events,
            pacer=FixedDelayPacer(cfg.settlement_inter_settlement_delay_ms, sleeper=sleeper),
            confirmations=cfg.chain_confirmations,
            audit_enabled=cfg.settlement_audit_enabled,
            audit_node=cfg.settlement_audit_node,
            audit_key=cfg.settlement_audit_key,
        )
        self.book = OrderBook(
            self.engine,
            PriceRule(
                native_token=cfg.contracts_native_token,
                price_ratio=cfg.matching_price_ratio,
                tolerance_bps=cfg.matching_tolerance_bps,
            ),
            events=self.events,
        )
        allowed = None
        if cfg.contracts_secondary_token:
            allowed = [cfg.contracts_native_token, cfg.contracts_secondary_token]
        self.service = SwapService(self.book, self.events, self.engine, allowed_tokens=allowed)
        self.solver_authorized: Optional[bool] = None
        self.server: Optional[ThreadingHTTPServer] = None
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def port(self) -> Optional[int]:
        return self.server.server_address[1] if self.server is not None else None

    async def start(self, serve_http: bool = True) -> None:
        cfg = self.cfg
        logger.info(
            "starting solver on chain %d router=%s",
            cfg.chain_id,
            cfg.contracts_router or "-",
            extra={"solver": self.engine.solver_address},
        )
        logger.info("settlement engine %s", self.engine.describe())
        self.solver_authorized = await self.engine.verify_authorization()
        self.service.solver_authorized = self.solver_authorized
        if not self.solver_authorized:
            logger.error("settlements will revert until the router authorizes this solver")
        try:
            balance = await self.engine.get_balance()
        except Exception as e:  # noqa: BLE001
            logger.warning("could not read solver balance: %s", e)
        else:
            if balance < cfg.settlement_low_balance_wei:
                logger.warning(
                    "solver balance low: %d wei (threshold %d)",
                    balance,
                    cfg.settlement_low_balance_wei,
                    extra={"solver": self.engine.solver_address},
                )
        self._sweeper = asyncio.create_task(self.events.run_sweeper(cfg.events_sweep_interval_ms))
        if serve_http:
            self.server, _ = start_http_server(
                self.service, asyncio.get_running_loop(), host=cfg.server_host, port=cfg.server_port
            )
            logger.info("http server listening on %s:%d", cfg.server_host, self.port)

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        # wake SSE handler threads before the server waits on them
        self.events.close_streams()
        if self.server is not None:
            server, self.server = self.server, None
            await asyncio.to_thread(stop_http_server, server)
        logger.info("solver stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
