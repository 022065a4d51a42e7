from __future__ import annotations

import asyncio
import json as _json
from decimal import Decimal
from typing import Optional

from shadowswap.adapters.chain.ledger import LedgerClient, build_ledger
from shadowswap.config import load_config, validate_config
from shadowswap.observability.logging import setup_logging
from shadowswap.observability.metrics import list_counters, list_counters_labelled, list_gauges
from shadowswap.observability.prometheus import export_text as prometheus_export_text
from shadowswap.service.runner import ServiceRunner, ledger_kwargs_from_config


WEI_PER_ETHER = Decimal(10) ** 18


def _ledger_for(config_path: str) -> LedgerClient:
    cfg = load_config(config_path)
    return build_ledger(cfg.chain_ledger, **ledger_kwargs_from_config(cfg))


def cmd_preflight(config_path: str, as_json: bool = False) -> str:
    """Validate a solver config TOML before running against a live chain.

    Checks:
    - TOML parse success
    - private key format, chain id, contract addresses (web3 ledger)
    - matching and settlement parameters in range
    Returns a multi-line string summary and prints it.
    """
    try:
        cfg = load_config(config_path)
    except Exception as e:  # noqa: BLE001
        out = f"INVALID: failed to parse config: {e}"
        print(out)
        return out
    issues = validate_config(cfg)
    if issues:
        if as_json:
            out = _json.dumps({"ok": False, "issues": issues})
            print(out)
            return out
        header = "INVALID: preflight checks failed"
        lines = [header] + [f" - {i}" for i in issues]
        out = "\n".join(lines)
        print(out)
        return out
    if as_json:
        out = _json.dumps({"ok": True})
        print(out)
        return out
    out = "OK: preflight passed"
    print(out)
    return out


def cmd_config_dump(config_path: str) -> str:
    """Load a solver TOML and print normalized JSON (with secrets redacted)."""
    try:
        cfg = load_config(config_path)
    except Exception as e:  # noqa: BLE001
        out = f"INVALID: failed to parse config: {e}"
        print(out)
        return out
    text = _json.dumps(cfg.redacted(), sort_keys=True)
    print(text)
    return text


def cmd_verify_auth(config_path: str, ledger: Optional[LedgerClient] = None) -> str:
    """Compare the router's authorized solver with our signing address."""
    led = ledger or _ledger_for(config_path)
    try:
        authorized = asyncio.run(led.read_solver())
    except Exception as e:  # noqa: BLE001
        out = f"ERROR: could not read router solver: {e}"
        print(out)
        return out
    ours = led.solver_address
    if authorized.lower() == ours.lower():
        out = f"OK: solver {ours} is authorized"
    else:
        out = f"UNAUTHORIZED: router solver is {authorized}, signer is {ours}"
    print(out)
    return out


def cmd_balance(config_path: str, ledger: Optional[LedgerClient] = None) -> str:
    led = ledger or _ledger_for(config_path)
    try:
        wei = asyncio.run(led.get_balance(led.solver_address))
    except Exception as e:  # noqa: BLE001
        out = f"ERROR: could not read balance: {e}"
        print(out)
        return out
    ether = Decimal(wei) / WEI_PER_ETHER
    out = f"{led.solver_address} {wei} wei ({ether.normalize():f} ETH)"
    print(out)
    return out


def cmd_metrics() -> str:
    parts = ["counters:"]
    for name, val in list_counters():
        parts.append(f"{name} {val}")
    parts.append("labelled:")
    for name, labels, val in list_counters_labelled():
        label_str = ",".join([f"{k}={v}" for k, v in labels])
        parts.append(f"{name}{{{label_str}}} {val}")
    parts.append("gauges:")
    for name, val in list_gauges():
        parts.append(f"{name} {val}")
    out = "\n".join(parts)
    print(out)
    return out


def cmd_metrics_export() -> str:
    """Return Prometheus text exposition format for in-process metrics."""
    text = prometheus_export_text()
    print(text, end="")
    return text


async def cmd_run_async(config_path: str) -> None:
    cfg = load_config(config_path)
    setup_logging(cfg.logging_level, json_output=cfg.logging_json)
    runner = ServiceRunner(cfg)
    await runner.run_forever()
