from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .errors import AutomationError
from .logging_config import configure_logging
from .orchestrator import AutomationOrchestrator


logger = logging.getLogger("fiat_portal_automation")


def _add_common_job_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    p.add_argument("--order-id", required=True, help="Opaque order id used to correlate webhook events")
    p.add_argument("--details", required=True, help="Memo (glosa) token, e.g. ORD-1-ABC")
    p.add_argument(
        "--deadline-ms",
        type=int,
        default=None,
        help="Stop waiting after this many milliseconds (the job still finishes and notifies). Default: wait.",
    )
    p.add_argument(
        "--step-up-code",
        default="",
        help="Step-up (token/SMS) code to use if the portal asks for one during login.",
    )
    p.add_argument("--headful", action="store_true", help="Run browser headful (debug)")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="fiat_portal_automation")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    gen = sub.add_parser("generate-qr", help="Log into the portal and generate a payment QR")
    _add_common_job_args(gen)
    gen.add_argument("--amount", required=True, help="Positive amount, e.g. 150.75")
    gen.add_argument(
        "--out",
        default="",
        help="Optional path to also write the downloaded QR PNG to.",
    )

    verify = sub.add_parser("verify-payment", help="Check whether the latest movement carries the expected memo")
    _add_common_job_args(verify)

    check = sub.add_parser("check-config", help="Validate configuration without launching a browser")
    check.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    return p


def _deadline_seconds(deadline_ms: Optional[int]) -> Optional[float]:
    if deadline_ms is None:
        return None
    return max(0, deadline_ms) / 1000.0


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _load(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)
    if getattr(args, "headful", False):
        cfg.portal.headless = False
    return cfg


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "check-config":
        cfg = _load(args)
        try:
            cfg.portal.require_credentials()
        except ValueError as e:
            logger.error("%s", e)
            return 2
        if not cfg.notifier.base_url:
            logger.warning("Notifier base URL is not configured; webhook events will be skipped.")
        _print_json(
            {
                "portal_index_url": cfg.portal.index_url,
                "portal_generate_qr_url": cfg.portal.generate_qr_url,
                "notifier_configured": bool(cfg.notifier.base_url),
                "dedup_window_hours": cfg.queue.dedup_window_hours,
            }
        )
        logger.info("Config OK")
        return 0

    cfg = _load(args)
    orchestrator = AutomationOrchestrator.from_config(cfg)
    try:
        if args.step_up_code:
            orchestrator.set_step_up_code(args.step_up_code)

        deadline = _deadline_seconds(args.deadline_ms)

        if args.cmd == "generate-qr":
            qr = orchestrator.generate_qr(args.order_id, args.amount, args.details, deadline)
            if qr is None:
                _print_json({"status": "timeout", "order_id": args.order_id})
                return 0
            if args.out:
                out = Path(args.out)
                out.parent.mkdir(parents=True, exist_ok=True)
                out.write_bytes(qr.data)
            _print_json(
                {
                    "status": "generated",
                    "order_id": args.order_id,
                    "bytes": len(qr.data),
                    "saved_path": qr.saved_path or args.out or None,
                }
            )
            return 0

        if args.cmd == "verify-payment":
            ok = orchestrator.verify_payment(args.order_id, args.details, deadline)
            if ok is None:
                _print_json({"status": "timeout", "order_id": args.order_id})
                return 0
            _print_json({"status": "verified" if ok else "not_found", "order_id": args.order_id, "success": ok})
            return 0
    except AutomationError as e:
        logger.error("%s failed [%s]: %s", args.cmd, e.kind.value, e)
        _print_json({"status": "error", "kind": e.kind.value, "message": str(e), "order_id": args.order_id})
        return 1
    except ValueError as e:
        logger.error("Invalid input: %s", e)
        return 2
    except KeyboardInterrupt:
        logger.warning("Interrupted.")
        return 130
    finally:
        orchestrator.close()

    raise SystemExit(f"Unknown command: {args.cmd}")
