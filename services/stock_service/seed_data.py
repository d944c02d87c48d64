import logging
import random

from sqlalchemy.orm import Session

from .repository import InventoryRepository

logger = logging.getLogger(__name__)

# (id, name, category, price)
SAMPLE_PRODUCTS = [
    ("PROD-0001", "Ankara Print Dress", "Dresses", 45.00),
    ("PROD-0002", "Linen Shirt", "Shirts", 29.50),
    ("PROD-0003", "Kente Scarf", "Accessories", 18.00),
    ("PROD-0004", "Leather Sandals", "Footwear", 39.99),
    ("PROD-0005", "Beaded Necklace", "Accessories", 22.00),
    ("PROD-0006", "Wax Print Tote Bag", "Bags", 27.50),
    ("PROD-0007", "Cotton Kaftan", "Dresses", 55.00),
    ("PROD-0008", "Woven Straw Hat", "Accessories", 19.99),
    ("PROD-0009", "Denim Jacket", "Outerwear", 64.00),
    ("PROD-0010", "Printed Headwrap", "Accessories", 12.50),
]


def seed_products(db: Session) -> int:
    """Seed database with sample products; returns how many were created."""
    logger.info("Seeding products...")
    repo = InventoryRepository(db)

    created = 0
    for product_id, name, category, price in SAMPLE_PRODUCTS:
        if repo.get_product(product_id):
            logger.info(f"Product {product_id} already exists, skipping")
            continue

        # Random stock between 10 and 100
        stock = random.randint(10, 100)
        repo.create_product(name, stock, price=price, category=category, product_id=product_id)
        created += 1

    db.commit()
    logger.info(f"Seeded {created} products")
    return created
