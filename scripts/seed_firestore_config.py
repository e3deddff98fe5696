#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from google.cloud import firestore

from agent_trader.storage import StorageSettings
from agent_trader.storage.firestore_ops import FirestoreStorageOps
from agent_trader.trading.types import TradeConfig


def parse_args(defaults: TradeConfig, storage_settings: StorageSettings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the runtime trade config document in Firestore.",
    )
    parser.add_argument(
        "--project-id",
        default=storage_settings.firestore_project_id or "",
        help="GCP project id. Defaults to FIRESTORE_PROJECT_ID from env.",
    )
    parser.add_argument(
        "--config-doc",
        default=storage_settings.firestore_config_doc,
        help="Firestore target path. If odd segments are given, a doc id is auto-appended.",
    )
    parser.add_argument(
        "--leaf-doc-id",
        default=storage_settings.firestore_config_leaf_doc_id,
        help="Doc id to append when --config-doc is a collection path.",
    )
    parser.add_argument(
        "--credentials",
        default=os.getenv("FIREBASE_CREDENTIALS", ""),
        help="Service account json path. Defaults to FIREBASE_CREDENTIALS from env.",
    )
    parser.add_argument("--replace", action="store_true", help="Replace the full document (merge=false).")
    parser.add_argument(
        "--print-only",
        action="store_true",
        help="Print resolved doc path and payload without writing to Firestore.",
    )

    parser.add_argument("--max-slippage-bps", type=int, default=defaults.max_slippage_bps)
    parser.add_argument("--max-price-impact", type=float, default=defaults.max_price_impact)
    parser.add_argument("--min-liquidity", type=float, default=defaults.min_liquidity)
    parser.add_argument("--retry-attempts", type=int, default=defaults.retry_attempts)
    parser.add_argument("--use-priority-bundling", action="store_true", default=defaults.use_priority_bundling)
    parser.add_argument("--quote-ttl-seconds", type=float, default=defaults.quote_ttl_seconds)
    parser.add_argument("--retry-backoff-seconds", type=float, default=defaults.retry_backoff_seconds)
    parser.add_argument("--priority-fee-micro-lamports", type=int, default=defaults.priority_fee_micro_lamports)
    parser.add_argument("--priority-tip-lamports", type=int, default=defaults.priority_tip_lamports)
    parser.add_argument(
        "--trading-enabled",
        action="store_true",
        help="Set trading_enabled=true. Omit to keep strategy fires paused.",
    )
    return parser.parse_args()


def build_payload(args: argparse.Namespace, defaults: TradeConfig) -> dict[str, Any]:
    config = TradeConfig.from_dict(
        {
            "max_slippage_bps": args.max_slippage_bps,
            "max_price_impact": args.max_price_impact,
            "min_liquidity": args.min_liquidity,
            "retry_attempts": args.retry_attempts,
            "use_priority_bundling": args.use_priority_bundling,
            "quote_ttl_seconds": args.quote_ttl_seconds,
            "retry_backoff_seconds": args.retry_backoff_seconds,
            "priority_fee_micro_lamports": args.priority_fee_micro_lamports,
            "priority_tip_lamports": args.priority_tip_lamports,
        },
        defaults,
    )
    payload = config.to_dict()
    payload["trading_enabled"] = bool(args.trading_enabled)
    return payload


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    defaults = TradeConfig.from_env_defaults()
    args = parse_args(defaults, StorageSettings.from_env())

    target_doc_path, path_auto_fixed = FirestoreStorageOps._normalize_doc_path(args.config_doc, args.leaf_doc_id)
    payload = build_payload(args, defaults)

    if path_auto_fixed:
        print(
            f"[info] --config-doc '{args.config_doc}' is a collection path. "
            f"Using document path '{target_doc_path}'."
        )

    if args.credentials.strip():
        os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = args.credentials.strip()

    project_id = args.project_id.strip()
    if not project_id:
        raise ValueError("FIRESTORE_PROJECT_ID is required (set env or --project-id).")

    print(f"[info] project_id={project_id}")
    print(f"[info] target_doc={target_doc_path}")
    print(f"[info] merge={not args.replace}")
    print("[info] payload=")
    print(json.dumps(payload, ensure_ascii=False, indent=2))

    if args.print_only:
        print("[info] print-only mode: skipped Firestore write")
        return

    client = firestore.Client(project=project_id)
    client.document(target_doc_path).set(payload, merge=not args.replace)
    print("[ok] Firestore config seeded successfully")


if __name__ == "__main__":
    main()
