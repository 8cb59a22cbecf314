"""
Operational commands for repairing payment state.

    python -m grochain_payments.cli verify <reference>
    python -m grochain_payments.cli sync <order_id>
    python -m grochain_payments.cli sync-all [--limit N]
"""
import argparse
import json
import logging
import os
import sys

from grochain_payments import paystack_service, reconciliation
from grochain_payments.database import Base, engine, session_scope

logger = logging.getLogger("grochain_payments.cli")


def cmd_verify(args):
    with session_scope() as db:
        tx, outcome = reconciliation.verify_reference(db, args.reference, source="cli")
        return {"reference": tx.reference, "status": tx.status, "outcome": outcome}


def cmd_sync(args):
    with session_scope() as db:
        order, changed = reconciliation.sync_order(db, args.order_id)
        return {"order_id": order.id, "status": order.status, "changed": changed}


def cmd_sync_all(args):
    with session_scope() as db:
        return reconciliation.bulk_sync(db, limit=args.limit)


def build_parser():
    parser = argparse.ArgumentParser(prog="grochain-payments")
    sub = parser.add_subparsers(dest="command", required=True)

    verify = sub.add_parser("verify", help="verify a payment reference with Paystack and reconcile")
    verify.add_argument("reference")
    verify.set_defaults(func=cmd_verify)

    sync = sub.add_parser("sync", help="mark an order paid if a completed payment exists")
    sync.add_argument("order_id")
    sync.set_defaults(func=cmd_sync)

    sync_all = sub.add_parser("sync-all", help="sync pending orders in bulk")
    sync_all.add_argument("--limit", type=int, default=100)
    sync_all.set_defaults(func=cmd_sync_all)
    return parser


def main(argv=None):
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    args = build_parser().parse_args(argv)
    Base.metadata.create_all(bind=engine)

    try:
        result = args.func(args)
    except (reconciliation.ReconciliationError, paystack_service.PaystackError) as exc:
        logger.error("%s failed: %s: %s", args.command, type(exc).__name__, exc)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
