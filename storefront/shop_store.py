"""Catalog and order repository backed by a single JSON document.

Products and orders live in one file so that an order commit (order insert plus
stock decrement) is a single atomic replace on disk. Request handlers receive a
ShopStore instance; nothing here is module-level state.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from .models import Order, OrderDraft, Product
from .utils import cap_discount, discounted_price, mask_contact_value, normalize_text

logger = logging.getLogger("storefront.store")

SEED_CATALOG_PATH = Path(__file__).resolve().parent / "data" / "seed_catalog.json"


class StoreError(Exception):
    """Base error for catalog/order repository failures."""


class ProductNotFoundError(StoreError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class OutOfStockError(StoreError):
    def __init__(self, product: Product, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for {product.id}: requested {requested}, available {product.stock}"
        )
        self.product = product
        self.requested = requested


class InvalidOrderError(StoreError):
    """Raised when an order draft is missing required customer details."""


def load_seed_products(path: Path = SEED_CATALOG_PATH) -> List[Product]:
    """Purpose: Read the bundled starter catalog.
    Inputs/Outputs: Input is a JSON path; output is a list of Product.
    Failure Modes: Missing or malformed file yields an empty list.
    """
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except json.JSONDecodeError:
        logger.warning("seed catalog unreadable path=%s", path)
        return []
    items = data.get("products", []) if isinstance(data, dict) else data
    return [Product.model_validate(item) for item in items if isinstance(item, dict)]


class ShopStore:
    """Repository for products and orders with an atomic order commit."""

    def __init__(self, path: Optional[Path] = None, seed_products: Optional[List[Product]] = None) -> None:
        """Purpose: Initialize the store and hydrate it from disk if available.
        Inputs/Outputs: Inputs are an optional file path and an optional seed catalog.
        Side Effects / State: Loads products/orders into memory; writes the seed
            catalog to disk when the file does not exist yet.
        Failure Modes: A corrupt file is logged and leaves the store empty
            (reads surface as empty results).
        If Removed: The API has no catalog and no order book.
        Testing Notes: Use a tmp_path file and verify seeding and reload.
        """
        # Seed only when no document exists yet.
        self._path = path
        self._lock = threading.Lock()
        self._products: List[Product] = []
        self._orders: List[Order] = []
        loaded = self._load()
        if not loaded and seed_products:
            self._products = [product.model_copy() for product in seed_products]
            self._persist()

    def _load(self) -> bool:
        # Returns True when a store document existed on disk.
        if not self._path or not self._path.exists():
            return False
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception("store load failed path=%s", self._path)
            return True
        try:
            self._products = [Product.model_validate(item) for item in data.get("products", [])]
            self._orders = [Order.model_validate(item) for item in data.get("orders", [])]
        except ValidationError:
            logger.exception("store records invalid path=%s", self._path)
            self._products, self._orders = [], []
        return True

    def _persist(self) -> None:
        """Write products and orders in one atomic file replace."""
        if not self._path:
            return
        payload = {
            "products": [product.to_wire() for product in self._products],
            "orders": [order.to_wire() for order in self._orders],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".store-", suffix=".json", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False, indent=2))
            os.replace(tmp_name, self._path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def list_products(self) -> List[Product]:
        """Return the catalog in its stored order; the tracker relies on this order."""
        return [product.model_copy() for product in self._products]

    def get_product(self, product_id: str) -> Optional[Product]:
        """Purpose: Look up one product by id.
        Inputs/Outputs: Input is product_id; output is a copy of the Product or None.
        Side Effects / State: None; callers cannot mutate stored stock through it.
        Dependencies: Used by the product route and the inventory tool.
        Failure Modes: Unknown ids return None.
        If Removed: Single-product reads and stock checks have no source.
        Testing Notes: Mutate the returned copy and re-read to confirm isolation.
        """
        for product in self._products:
            if product.id == product_id:
                return product.model_copy()
        return None

    def search_products(self, query: str, limit: int = 5) -> List[Product]:
        """Case-insensitive substring search over name, description, and category."""
        needle = normalize_text(query)
        if not needle:
            return self.list_products()[:limit]
        matches = [
            product
            for product in self._products
            if needle in normalize_text(product.name)
            or needle in normalize_text(product.description)
            or needle in normalize_text(product.category)
        ]
        return [product.model_copy() for product in matches[:limit]]

    def list_orders(self) -> List[Order]:
        """Purpose: Return every order, newest first.
        Inputs/Outputs: No inputs; returns copies of the stored Orders.
        Side Effects / State: None.
        Failure Modes: None; an empty store returns an empty list.
        If Removed: The orders route has nothing to show the shop owner.
        """
        # created_at is ISO-8601 UTC, so string order is time order.
        return sorted((order.model_copy() for order in self._orders), key=lambda o: o.created_at, reverse=True)

    def get_order(self, order_id: str) -> Optional[Order]:
        for order in self._orders:
            if order.id == order_id:
                return order.model_copy()
        return None

    def commit_order(self, draft: OrderDraft) -> Order:
        """Purpose: Create an order and decrement stock as one all-or-nothing step.
        Inputs/Outputs: Input is an OrderDraft; output is the persisted Order.
        Side Effects / State: Mutates product stock and the order list, then
            writes both in a single atomic replace.
        Dependencies: cap_discount/discounted_price for amounts; _persist for the write.
        Failure Modes: ProductNotFoundError, OutOfStockError, InvalidOrderError;
            an IO failure restores the in-memory state and raises StoreError.
        If Removed: Neither the fallback nor the invoice tool can place orders.
        Testing Notes: Out-of-stock drafts must leave stock and orders untouched.
        """
        # Validate, check stock under the lock, then swap state and persist once.
        customer = draft.customer
        if not (customer.name.strip() and customer.phone.strip() and customer.address.strip()):
            raise InvalidOrderError("Customer name, phone, and address are required")

        with self._lock:
            index = self._product_index(draft.product_id)
            if index is None:
                raise ProductNotFoundError(draft.product_id)
            product = self._products[index]
            if draft.quantity > product.stock:
                raise OutOfStockError(product, draft.quantity)

            discount = cap_discount(draft.discount_percent, product.max_discount_percent)
            total_amount = product.price * draft.quantity
            discount_amount = total_amount - discounted_price(total_amount, discount)
            order = Order(
                id=self._next_order_id(),
                product_id=product.id,
                product_name=product.name,
                quantity=draft.quantity,
                original_price=product.price,
                discount_percent=discount,
                final_price=discounted_price(product.price, discount),
                total_amount=total_amount,
                discount_amount=discount_amount,
                final_amount=total_amount - discount_amount,
                customer=customer,
                payment_method=draft.payment_method or "cod",
                session_id=draft.session_id,
                created_at=datetime.now(timezone.utc).isoformat(),
            )

            previous_products = list(self._products)
            previous_orders = list(self._orders)
            self._products[index] = product.model_copy(update={"stock": product.stock - draft.quantity})
            self._orders.append(order)
            try:
                self._persist()
            except OSError as exc:
                self._products = previous_products
                self._orders = previous_orders
                logger.exception("order commit failed product=%s", product.id)
                raise StoreError("Failed to persist order") from exc

        logger.info(
            "order committed id=%s product=%s qty=%s discount=%s final=%s phone=%s",
            order.id,
            order.product_id,
            order.quantity,
            order.discount_percent,
            order.final_amount,
            mask_contact_value(customer.phone),
        )
        return order.model_copy()

    def _product_index(self, product_id: str) -> Optional[int]:
        for index, product in enumerate(self._products):
            if product.id == product_id:
                return index
        return None

    def _next_order_id(self) -> str:
        # ORD-<epoch ms>; bump on collision within the same millisecond.
        existing: Dict[str, bool] = {order.id: True for order in self._orders}
        stamp = int(time.time() * 1000)
        while f"ORD-{stamp}" in existing:
            stamp += 1
        return f"ORD-{stamp}"
