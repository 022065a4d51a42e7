from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
import tomllib

from shadowswap.core.models import NATIVE_TOKEN


DEFAULT_RPC_URL = "https://eth-sepolia.g.alchemy.com/v2/demo"


@dataclass
class Config:
    chain_rpc_url: str
    chain_id: int
    chain_private_key: str
    chain_ledger: str
    chain_confirmations: int
    chain_timeout_s: float
    chain_max_retries: int
    chain_retry_sleep_ms: int
    contracts_router: str
    contracts_hook: str
    contracts_secondary_token: str
    contracts_registry: str
    contracts_native_token: str
    contracts_pool_fee: int
    contracts_pool_tick_spacing: int
    matching_price_ratio: int
    matching_tolerance_bps: int
    settlement_inter_settlement_delay_ms: int
    settlement_audit_enabled: bool
    settlement_audit_node: str
    settlement_audit_key: str
    settlement_low_balance_wei: int
    events_max_per_intent: int
    events_ttl_ms: int
    events_sweep_interval_ms: int
    events_stream_queue_size: int
    server_host: str
    server_port: int
    logging_level: str
    logging_json: bool

    def redacted(self) -> Dict[str, Any]:
        out = asdict(self)
        if out.get("chain_private_key"):
            out["chain_private_key"] = "***"
        return out


def _from_dict(data: Mapping[str, Any]) -> Config:
    chain = data.get("chain", {}) or {}
    con = data.get("contracts", {}) or {}
    mat = data.get("matching", {}) or {}
    stl = data.get("settlement", {}) or {}
    ev = data.get("events", {}) or {}
    srv = data.get("server", {}) or {}
    log = data.get("logging", {}) or {}
    return Config(
        chain_rpc_url=str(chain.get("rpc_url", DEFAULT_RPC_URL)),
        chain_id=int(chain.get("chain_id", 11155111)),
        chain_private_key=str(chain.get("private_key", "")),
        chain_ledger=str(chain.get("ledger", "web3")),
        chain_confirmations=int(chain.get("confirmations", 1)),
        chain_timeout_s=float(chain.get("timeout_s", 30.0)),
        chain_max_retries=int(chain.get("max_retries", 2)),
        chain_retry_sleep_ms=int(chain.get("retry_sleep_ms", 1000)),
        contracts_router=str(con.get("router", "")),
        contracts_hook=str(con.get("hook", NATIVE_TOKEN)),
        contracts_secondary_token=str(con.get("secondary_token", "")),
        contracts_registry=str(con.get("registry", "")),
        contracts_native_token=str(con.get("native_token", NATIVE_TOKEN)),
        contracts_pool_fee=int(con.get("pool_fee", 3000)),
        contracts_pool_tick_spacing=int(con.get("pool_tick_spacing", 60)),
        matching_price_ratio=int(mat.get("price_ratio", 1000)),
        matching_tolerance_bps=int(mat.get("tolerance_bps", 500)),
        settlement_inter_settlement_delay_ms=int(stl.get("inter_settlement_delay_ms", 5000)),
        settlement_audit_enabled=bool(stl.get("audit_enabled", True)),
        settlement_audit_node=str(stl.get("audit_node", "shadowswap.eth")),
        settlement_audit_key=str(stl.get("audit_key", "latest_settlement")),
        settlement_low_balance_wei=int(stl.get("low_balance_wei", 10**16)),
        events_max_per_intent=int(ev.get("max_per_intent", 50)),
        events_ttl_ms=int(ev.get("ttl_ms", 300_000)),
        events_sweep_interval_ms=int(ev.get("sweep_interval_ms", 60_000)),
        events_stream_queue_size=int(ev.get("stream_queue_size", 256)),
        server_host=str(srv.get("host", "127.0.0.1")),
        server_port=int(srv.get("port", 3000)),
        logging_level=str(log.get("level", "INFO")),
        logging_json=bool(log.get("json", True)),
    )


def _deep_merge(a: dict, b: dict) -> dict:
    out = dict(a)
    for k, v in b.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env(data: dict, env: Mapping[str, str]) -> dict:
    chain = dict(data.get("chain", {}) or {})
    if env.get("PRIVATE_KEY"):
        chain["private_key"] = env["PRIVATE_KEY"]
    if env.get("ALCHEMY_RPC_URL"):
        chain["rpc_url"] = env["ALCHEMY_RPC_URL"]
    out = dict(data)
    out["chain"] = chain
    if env.get("SHADOWSWAP_PORT"):
        srv = dict(out.get("server", {}) or {})
        srv["port"] = int(env["SHADOWSWAP_PORT"])
        out["server"] = srv
    return out


def load_config(path: str | Path, env: Optional[Mapping[str, str]] = None) -> Config:
    """Load a TOML config, then the sibling secrets.local.toml, then env overrides."""
    p = Path(path)
    with p.open("rb") as f:
        data = tomllib.load(f)
    # secrets overlay only touches [chain]
    secrets_path = p.parent / "secrets.local.toml"
    if secrets_path.exists():
        with secrets_path.open("rb") as f:
            secrets = tomllib.load(f)
        chain_overlay = secrets.get("chain", {}) or {}
        if chain_overlay:
            data["chain"] = _deep_merge(data.get("chain", {}) or {}, chain_overlay)
    return _from_dict(_apply_env(data, os.environ if env is None else env))


def load_config_stack(paths: List[str | Path], env: Optional[Mapping[str, str]] = None) -> Config:
    merged: dict = {}
    for p in paths:
        pth = Path(p)
        if not pth.exists():
            continue
        with pth.open("rb") as f:
            data = tomllib.load(f)
        merged = _deep_merge(merged, data)
    return _from_dict(_apply_env(merged, os.environ if env is None else env))


def is_valid_private_key(pk: str) -> bool:
    if not isinstance(pk, str) or not pk.startswith("0x"):
        return False
    hexpart = pk[2:]
    if len(hexpart) != 64:
        return False
    try:
        int(hexpart, 16)
        return True
    except ValueError:
        return False


def is_valid_address(addr: str) -> bool:
    if not isinstance(addr, str) or len(addr) != 42 or not addr.startswith("0x"):
        return False
    try:
        int(addr[2:], 16)
        return True
    except ValueError:
        return False


def validate_config(cfg: Config) -> List[str]:
    """Return human-readable problems; an empty list means the config is usable."""
    issues: List[str] = []
    if cfg.chain_ledger.lower() not in ("web3", "fake"):
        issues.append(f"chain.ledger must be 'web3' or 'fake', got {cfg.chain_ledger!r}")
    if cfg.chain_ledger.lower() == "web3":
        if not is_valid_private_key(cfg.chain_private_key):
            issues.append("chain.private_key is invalid (expect 0x-prefixed 32-byte hex)")
        if not cfg.chain_rpc_url:
            issues.append("chain.rpc_url is empty")
        if not is_valid_address(cfg.contracts_router):
            issues.append("contracts.router is not a valid address")
        if cfg.settlement_audit_enabled and not is_valid_address(cfg.contracts_registry):
            issues.append("contracts.registry is not a valid address (or disable settlement.audit_enabled)")
    if cfg.chain_id <= 0:
        issues.append("chain.chain_id must be > 0")
    if not is_valid_address(cfg.contracts_secondary_token):
        issues.append("contracts.secondary_token is not a valid address")
    if not is_valid_address(cfg.contracts_native_token):
        issues.append("contracts.native_token is not a valid address")
    if cfg.matching_price_ratio <= 0:
        issues.append("matching.price_ratio must be > 0")
    if not 0 <= cfg.matching_tolerance_bps <= 10_000:
        issues.append("matching.tolerance_bps must be within [0, 10000]")
    if cfg.settlement_inter_settlement_delay_ms < 0:
        issues.append("settlement.inter_settlement_delay_ms must be >= 0")
    if cfg.events_max_per_intent <= 0:
        issues.append("events.max_per_intent must be > 0")
    return issues
