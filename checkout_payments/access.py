import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from checkout_payments.models import Checkout, Member, Order, Product, ProductContent
from checkout_payments.repository import persisting, upsert_access_grant

logger = structlog.get_logger(__name__)


class AccessGrantEngine:
    """Turns a paid order into access grants. Safe to run any number of times."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_user_id(self, order: Order) -> str | None:
        if order.customer_user_id:
            return order.customer_user_id
        member = self.db.scalars(
            select(Member).where(func.lower(Member.email) == order.customer_email.strip().lower())
        ).first()
        return member.id if member else None

    def resolve_product_ids(self, order: Order) -> list[str]:
        items = order.items or []
        checkout = self.db.get(Checkout, order.checkout_id) if order.checkout_id else None

        if checkout is None:
            # No checkout to anchor on: trust the product ids carried by the line items
            return _unique([item["product_id"] for item in items if item.get("product_id")])

        product_ids = [checkout.product_id]
        bump_items = [item for item in items if item.get("type") == "bump"]
        if not bump_items or not checkout.order_bump_ids:
            return product_ids

        bump_ids_on_items = {item["product_id"] for item in bump_items if item.get("product_id")}
        bump_names_on_items = {item.get("name") for item in bump_items if not item.get("product_id")}

        bump_products = self.db.scalars(
            select(Product).where(Product.id.in_(checkout.order_bump_ids))
        ).all()
        for product in bump_products:
            # Line items without a product id fall back to a name match
            if product.id in bump_ids_on_items or product.name in bump_names_on_items:
                product_ids.append(product.id)

        return _unique(product_ids)

    def grant_access(self, order: Order) -> int:
        """Upsert grants for the order; returns how many rows were written."""
        user_id = self.resolve_user_id(order)
        if not user_id:
            logger.info("access_grant_skipped_no_user", order_id=order.id)
            return 0

        product_ids = self.resolve_product_ids(order)
        if not product_ids:
            logger.warning("access_grant_no_products", order_id=order.id)
            return 0

        content_rows = self.db.execute(
            select(ProductContent.product_id, ProductContent.content_id)
            .where(ProductContent.product_id.in_(product_ids))
        ).all()

        written = 0
        with persisting(self.db, "grant access", order_id=order.id):
            for product_id in product_ids:
                upsert_access_grant(self.db, user_id, product_id=product_id)
                written += 1
            for product_id, content_id in content_rows:
                upsert_access_grant(
                    self.db, user_id, content_id=content_id, source_product_id=product_id
                )
                written += 1

        logger.info(
            "access_granted",
            order_id=order.id,
            user_id=user_id,
            products=len(product_ids),
            contents=len(content_rows),
        )
        return written


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))
