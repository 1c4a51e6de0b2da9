"""Seed inventory records for catalog products.

Reads a JSON catalog (a list of ``{"id": ..., "sizes": [...]}`` objects, the
shape exported by the storefront's product table) and creates one inventory
record per product size that does not have one yet, using the default stock
table in ``repo.DEFAULT_STOCK_LEVELS``.

Usage::

    python -m services.inventory.seed catalog.json
    python -m services.inventory.seed --product AJ1-CHICAGO --sizes 7 8 9 10
"""

import argparse
import json
import logging
import sys

from .repo import InventoryRepo, init_db

logger = logging.getLogger("inventory.seed")


def load_catalog(path: str) -> list[dict]:
    with open(path, "r", encoding="utf-8") as handle:
        products = json.load(handle)
    if isinstance(products, dict):
        products = products.get("products", [])
    return products


def seed_catalog(products: list[dict], repo: InventoryRepo | None = None) -> int:
    """Create the missing inventory records for every product.

    Products whose ``sizes`` is missing, empty or not a list (a JSON-encoded
    string is accepted) are skipped with a warning.

    Returns:
        int: Number of records created.
    """
    repo = repo or InventoryRepo()
    created = 0
    for product in products:
        sizes = product.get("sizes")
        if isinstance(sizes, str):
            try:
                sizes = json.loads(sizes)
            except ValueError:
                logger.warning("could not parse sizes", extra={"product_id": product.get("id")})
                continue
        if not isinstance(sizes, list) or not sizes:
            logger.warning("no sizes found", extra={"product_id": product.get("id")})
            continue
        created += repo.seed(str(product["id"]), sizes)
    return created


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create inventory records for catalog products.")
    parser.add_argument("catalog", nargs="?", help="JSON file with a list of products")
    parser.add_argument("--product", help="seed a single product id")
    parser.add_argument("--sizes", nargs="+", default=[], help="sizes for --product")
    args = parser.parse_args(argv)

    if args.product:
        products = [{"id": args.product, "sizes": args.sizes}]
    elif args.catalog:
        products = load_catalog(args.catalog)
    else:
        parser.error("either a catalog file or --product is required")

    logging.basicConfig(level=logging.INFO)
    init_db()
    created = seed_catalog(products)
    print(f"processed {len(products)} products, created {created} inventory records")
    return 0


if __name__ == "__main__":
    sys.exit(main())
