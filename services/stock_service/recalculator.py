"""
Recovery Recalculator

Rebuilds every product's stock from the transaction log:

    calculated_stock = max(0, reference_stock - sold[product_id])

where reference_stock is the first defined of original_stock, base_stock and
the current stock, and sold[] sums item quantities across every transaction.
It ignores the incremental decrements entirely, so lost or duplicated
decrement attempts are corrected by one run.

Products and transactions are read in keyset-paginated pages. Item ids are
resolved to a product or a DanglingReference; dangling ids and transactions
without items are reported for an operator, never corrected here.

Only products whose stock changed are written, each guarded by the version
read during analysis, in a single commit. If any product changed in between
the whole batch is rolled back.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import ConcurrentUpdateError, StoreUnavailableError
from .repository import InventoryRepository

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


@dataclass(frozen=True)
class ProductSnapshot:
    """Product fields needed for recalculation, read once per run."""

    id: str
    name: str
    stock: int
    reference_stock: int
    version: int


@dataclass(frozen=True)
class DanglingReference:
    """Transaction item whose product id matches no product."""

    product_id: str
    transaction_id: str


def resolve_item(
    products: Dict[str, ProductSnapshot], product_id: str, transaction_id: str
) -> Union[ProductSnapshot, DanglingReference]:
    """Look up the product a transaction item points at."""
    product = products.get(product_id)
    if product is None:
        return DanglingReference(product_id=product_id, transaction_id=transaction_id)
    return product


def parse_quantity(value) -> Optional[int]:
    """Positive integer quantity of an item, or None if unusable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and not value.is_integer():
        return None
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return None
    return quantity if quantity > 0 else None


@dataclass
class Discrepancy:
    product_id: str
    name: str
    current_stock: int
    calculated_stock: int
    reference_stock: int
    version: int

    @property
    def difference(self) -> int:
        return self.calculated_stock - self.current_stock

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "currentStock": self.current_stock,
            "calculatedStock": self.calculated_stock,
            "difference": self.difference,
        }


@dataclass
class RecalculationReport:
    """Outcome of one analysis or recalculation run."""

    run_id: str = field(default_factory=lambda: uuid4().hex)
    discrepancies: List[Discrepancy] = field(default_factory=list)
    transactions_without_items: int = 0
    transaction_ids_without_items: List[str] = field(default_factory=list)
    invalid_product_ids: Set[str] = field(default_factory=set)
    dangling_references: List[DanglingReference] = field(default_factory=list)
    malformed_items: int = 0
    sold_quantities: Dict[str, int] = field(default_factory=dict)
    products_scanned: int = 0
    transactions_scanned: int = 0
    applied: bool = False
    updated: int = 0

    @property
    def transaction_ids_with_dangling_items(self) -> List[str]:
        seen = []
        for ref in self.dangling_references:
            if ref.transaction_id not in seen:
                seen.append(ref.transaction_id)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "transactionsWithoutItems": self.transactions_without_items,
            "transactionIdsWithoutItems": list(self.transaction_ids_without_items),
            "invalidProductIds": sorted(self.invalid_product_ids),
            "danglingReferences": [
                {"transactionId": ref.transaction_id, "productId": ref.product_id}
                for ref in self.dangling_references
            ],
            "malformedItems": self.malformed_items,
            "productsScanned": self.products_scanned,
            "transactionsScanned": self.transactions_scanned,
            "applied": self.applied,
            "updated": self.updated,
        }


class RecoveryRecalculator:
    """Rebuilds product stock from the full transaction history."""

    def __init__(self, db: Session, notifier=None, page_size: int = DEFAULT_PAGE_SIZE):
        self.db = db
        self.repo = InventoryRepository(db)
        self.notifier = notifier
        self.page_size = page_size

    def analyze(self) -> RecalculationReport:
        """Compute discrepancies without writing anything."""
        report = RecalculationReport()
        try:
            products = self._load_products(report)
            self._accumulate_sales(products, report)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Recalculation read failed: {e}")
            raise StoreUnavailableError(f"Could not read products or transactions: {e}") from e

        for product in products.values():
            sold = report.sold_quantities.get(product.id, 0)
            calculated = max(0, product.reference_stock - sold)
            if calculated != product.stock:
                report.discrepancies.append(
                    Discrepancy(
                        product_id=product.id,
                        name=product.name,
                        current_stock=product.stock,
                        calculated_stock=calculated,
                        reference_stock=product.reference_stock,
                        version=product.version,
                    )
                )

        logger.info(
            f"Recalculation {report.run_id}: {report.products_scanned} products, "
            f"{report.transactions_scanned} transactions, {len(report.discrepancies)} discrepancies, "
            f"{len(report.invalid_product_ids)} invalid product ids, "
            f"{report.transactions_without_items} transactions without items"
        )
        return report

    def recalculate(self, apply: bool = True) -> RecalculationReport:
        """
        Analyze, then write every discrepancy in one commit when apply is True.
        Raises ConcurrentUpdateError if a product changed after it was read,
        StoreUnavailableError if the batch could not be written.
        """
        report = self.analyze()
        if not apply:
            return report

        if not report.discrepancies:
            report.applied = True
            return report

        try:
            for discrepancy in report.discrepancies:
                written = self.repo.write_recalculated_stock(
                    discrepancy.product_id,
                    discrepancy.version,
                    discrepancy.calculated_stock,
                    discrepancy.reference_stock,
                )
                if not written:
                    raise ConcurrentUpdateError(
                        f"Product {discrepancy.product_id} changed during recalculation {report.run_id}"
                    )
            self.db.commit()
        except ConcurrentUpdateError:
            self.db.rollback()
            logger.warning(f"Recalculation {report.run_id} rolled back after a concurrent update")
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Recalculation {report.run_id} write failed, rolled back: {e}")
            raise StoreUnavailableError(f"Could not write recalculated stock: {e}") from e

        report.applied = True
        report.updated = len(report.discrepancies)
        logger.info(f"Recalculation {report.run_id} updated {report.updated} products")

        if self.notifier is not None:
            self.notifier.stock_recalculated(report)
        return report

    def _load_products(self, report: RecalculationReport) -> Dict[str, ProductSnapshot]:
        products = {}
        for page in self.repo.iter_products(self.page_size):
            for product in page:
                products[product.id] = ProductSnapshot(
                    id=product.id,
                    name=product.name or "",
                    stock=product.stock or 0,
                    reference_stock=product.reference_stock,
                    version=product.version,
                )
        report.products_scanned = len(products)
        return products

    def _accumulate_sales(self, products: Dict[str, ProductSnapshot], report: RecalculationReport) -> None:
        sold = report.sold_quantities
        for page in self.repo.iter_transactions(self.page_size):
            for transaction in page:
                report.transactions_scanned += 1
                items = transaction.items

                if not isinstance(items, list) or not items:
                    report.transactions_without_items += 1
                    report.transaction_ids_without_items.append(transaction.id)
                    continue

                for item in items:
                    product_id = item.get("id") if isinstance(item, dict) else None
                    quantity = parse_quantity(item.get("quantity")) if isinstance(item, dict) else None
                    if not product_id or quantity is None:
                        report.malformed_items += 1
                        continue

                    resolved = resolve_item(products, str(product_id), transaction.id)
                    if isinstance(resolved, DanglingReference):
                        report.invalid_product_ids.add(resolved.product_id)
                        report.dangling_references.append(resolved)
                        continue

                    sold[resolved.id] = sold.get(resolved.id, 0) + quantity
