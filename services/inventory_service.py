"""Stock reservation for order creation and cancellation"""

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Product, ProductStatus
from utils.exception_handler import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class InventoryService:
    """Conditional stock updates executed at the storage layer"""

    @staticmethod
    def load_purchasable_product(session: Session, product_id: int, quantity: int) -> Product:
        """
        Fetch a product and run the friendly pre-checks.

        The authoritative check is the conditional UPDATE in reserve_stock;
        this one only produces a precise error for the common cases.
        """
        product = session.get(Product, product_id)
        if product is None:
            raise NotFoundError("product", product_id)
        if not product.is_active:
            raise ValidationError(f"Product {product.name} is not available", field="items")
        if product.stock < quantity:
            raise ValidationError(
                f"Insufficient stock for {product.name}. Available: {product.stock}",
                field="items",
            )
        return product

    @staticmethod
    def reserve_stock(session: Session, product: Product, quantity: int) -> None:
        """UPDATE products SET stock = stock - q WHERE id = ? AND stock >= q AND status = 'active'"""
        result = session.execute(
            update(Product)
            .where(
                Product.id == product.id,
                Product.stock >= quantity,
                Product.status == ProductStatus.ACTIVE.value,
            )
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"STOCK_RESERVE_REJECTED: product={product.id} quantity={quantity}")
            raise ValidationError(f"Insufficient stock for {product.name}", field="items")

        session.expire(product, ["stock"])
        logger.debug(f"STOCK_RESERVED: product={product.id} quantity={quantity}")

    @staticmethod
    def restore_stock(session: Session, product_id: int, quantity: int) -> None:
        session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        product = session.get(Product, product_id)
        if product is not None:
            session.expire(product, ["stock"])
        logger.debug(f"STOCK_RESTORED: product={product_id} quantity={quantity}")
