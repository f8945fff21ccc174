#!/usr/bin/env python3
"""
provision.py: Operator CLI for merchants and apps.

  provision.py create-merchant --name "Shop" --origin https://shop.example
  provision.py rotate-key mch_1a2b3c4d
  provision.py create-app mch_1a2b3c4d --name checkout --rule webauthn:0 --rule email_otp:5000
  provision.py set-origins mch_1a2b3c4d --origin https://shop.example [--app app_...]

The raw merchant key is printed exactly once; only its hash is stored.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List

from stepup.config import load_settings
from stepup.errors import StepUpError
from stepup.merchants import MerchantDirectory
from stepup.models import AppRule, Method
from stepup.storage import DocumentStore, MongoConnection


def parse_rule(value: str) -> AppRule:
    """`method[:min_amount_cents][:required]`, e.g. `email_otp:5000:required`."""
    parts = value.split(":")
    try:
        method = Method(parts[0])
        threshold = int(parts[1]) if len(parts) > 1 and parts[1] else 0
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid rule {value!r}: {e}") from e
    required = len(parts) > 2 and parts[2] == "required"
    if threshold < 0:
        raise argparse.ArgumentTypeError(f"invalid rule {value!r}: threshold must be >= 0")
    return AppRule(method=method, min_amount_cents=threshold, required=required)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Provision step-up merchants and apps.")
    sub = p.add_subparsers(dest="command", required=True)

    cm = sub.add_parser("create-merchant", help="Create a merchant and print its API key")
    cm.add_argument("--name", default="")
    cm.add_argument("--origin", action="append", default=[], help="Allowed redirect origin (repeatable)")

    rk = sub.add_parser("rotate-key", help="Issue a new API key; the old one stops working")
    rk.add_argument("merchant_id")

    ca = sub.add_parser("create-app", help="Create an app with an ordered rule list")
    ca.add_argument("merchant_id")
    ca.add_argument("--name", required=True)
    ca.add_argument("--rule", action="append", type=parse_rule, default=[], help="method[:min_cents][:required]")
    ca.add_argument("--origin", action="append", default=[])

    so = sub.add_parser("set-origins", help="Replace a merchant's (or app's) redirect allow-list")
    so.add_argument("merchant_id")
    so.add_argument("--app", default=None)
    so.add_argument("--origin", action="append", default=[])

    return p


async def run(args: argparse.Namespace) -> dict:
    settings = load_settings()
    connection = MongoConnection(settings.MONGODB_URI, settings.MONGODB_DB)
    store = DocumentStore(await connection.connect())
    directory = MerchantDirectory(
        store,
        key_env=settings.MERCHANT_KEY_ENV,
        hash_rounds=settings.MERCHANT_KEY_HASH_ROUNDS,
        default_allowed_origins=settings.DEFAULT_ALLOWED_ORIGINS,
    )
    try:
        await store.ensure_indexes()
        if args.command == "create-merchant":
            merchant, raw = await directory.provision(args.name, args.origin)
            return {**merchant.public_view(), "apiKey": raw}
        if args.command == "rotate-key":
            merchant, raw = await directory.rotate_key(args.merchant_id)
            return {**merchant.public_view(), "apiKey": raw}
        if args.command == "create-app":
            app = await directory.create_app(args.merchant_id, args.name, args.rule, args.origin)
            return app.model_dump(mode="json")
        if args.app:
            app = await directory.update_app(args.merchant_id, args.app, allowed_origins=args.origin)
            return app.model_dump(mode="json")
        merchant = await directory.set_allowed_origins(args.merchant_id, args.origin)
        return merchant.public_view()
    finally:
        connection.close()


def main(argv: List[str] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        out = asyncio.run(run(args))
    except StepUpError as e:
        print(f"FAIL: {e.code}: {e.message}", file=sys.stderr)
        return 1
    print(json.dumps(out, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
