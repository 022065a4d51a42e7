from __future__ import annotations

import argparse

from .commands import (
    cmd_balance,
    cmd_config_dump,
    cmd_metrics,
    cmd_metrics_export,
    cmd_preflight,
    cmd_run_async,
    cmd_verify_auth,
)


def main() -> None:
    parser = argparse.ArgumentParser(prog="shadowswap")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the solver HTTP service until interrupted")
    p_run.add_argument("--config", required=True)

    p_pf = sub.add_parser("preflight", help="Validate a solver config TOML before running live")
    p_pf.add_argument("--config", required=True)
    p_pf.add_argument("--json", action="store_true")

    p_auth = sub.add_parser("verify-auth", help="Check the router authorizes our solver address")
    p_auth.add_argument("--config", required=True)

    p_bal = sub.add_parser("balance", help="Print the solver's native balance")
    p_bal.add_argument("--config", required=True)

    p_dump = sub.add_parser("config-dump", help="Print effective config as JSON (secrets redacted)")
    p_dump.add_argument("--config", required=True)

    sub.add_parser("metrics", help="Print in-process metrics counters")
    sub.add_parser("metrics-export", help="Print Prometheus text exposition of metrics")

    args = parser.parse_args()
    if args.cmd == "run":
        import asyncio

        try:
            asyncio.run(cmd_run_async(args.config))
        except KeyboardInterrupt:
            pass
    elif args.cmd == "preflight":
        out = cmd_preflight(args.config, as_json=args.json)
        if out.startswith("INVALID") or '"ok": false' in out:
            raise SystemExit(1)
    elif args.cmd == "verify-auth":
        out = cmd_verify_auth(args.config)
        if not out.startswith("OK"):
            raise SystemExit(1)
    elif args.cmd == "balance":
        cmd_balance(args.config)
    elif args.cmd == "config-dump":
        cmd_config_dump(args.config)
    elif args.cmd == "metrics":
        cmd_metrics()
    elif args.cmd == "metrics-export":
        cmd_metrics_export()


if __name__ == "__main__":
    main()
