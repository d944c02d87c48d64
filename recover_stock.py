"""Rebuild product stock from the transaction history.

Dry run by default; pass --apply to write the recalculated stock.

    python recover_stock.py                 # report discrepancies only
    python recover_stock.py --apply         # write them
    DATABASE_URL=sqlite:///local.db python recover_stock.py
"""

import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from services.stock_service.config import get_settings
from services.stock_service.exceptions import ConcurrentUpdateError, StoreUnavailableError
from services.stock_service.recalculator import RecoveryRecalculator
from shared.database import make_engine, make_session_factory
from shared.logging_config import setup_logging

logger = logging.getLogger("recover_stock")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Recalculate product stock from transactions")
    parser.add_argument("--apply", action="store_true", help="write the recalculated stock")
    parser.add_argument("--page-size", type=int, default=None, help="products/transactions read per page")
    return parser.parse_args(argv)


def print_report(report) -> None:
    data = report.to_dict()
    print(f"✅ Scanned {data['productsScanned']} products and {data['transactionsScanned']} transactions\n")

    if not data["discrepancies"]:
        print("Stock matches the transaction history. Nothing to fix.")
    else:
        print(f"⚠️  {len(data['discrepancies'])} products differ from the transaction history:")
        for d in data["discrepancies"]:
            print(
                f"  {d['productId']:<20} {d['name'][:30]:<30} "
                f"current={d['currentStock']:<6} calculated={d['calculatedStock']:<6} "
                f"difference={d['difference']:+d}"
            )

    if data["invalidProductIds"]:
        print(f"\n❌ Transactions reference {len(data['invalidProductIds'])} unknown product ids:")
        for ref in data["danglingReferences"]:
            print(f"  {ref['transactionId']} -> {ref['productId']}")

    if data["transactionsWithoutItems"]:
        print(f"\n❌ {data['transactionsWithoutItems']} transactions have no items")

    if data["malformedItems"]:
        print(f"\n❌ {data['malformedItems']} transaction items were unusable and skipped")

    print("-" * 50)
    if data["applied"]:
        print(f"Updated {data['updated']} products")
    else:
        print("Dry run, nothing written. Re-run with --apply to fix stock.")


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging("stock-recovery", level=settings.log_level)

    engine = make_engine(settings.sqlalchemy_url)
    db = make_session_factory(engine)()
    try:
        recalculator = RecoveryRecalculator(db, page_size=args.page_size or settings.recalculation_page_size)
        report = recalculator.recalculate(apply=args.apply)
    except ConcurrentUpdateError as e:
        print(f"❌ Stock changed while recalculating, nothing written: {e}")
        return 2
    except (StoreUnavailableError, SQLAlchemyError) as e:
        print(f"❌ Failed to read or write the database: {e}")
        return 1
    finally:
        db.close()

    print_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
