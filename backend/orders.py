from datetime import datetime
from typing import Dict, List, Optional

from pymongo import ReturnDocument

from .errors import ConcurrentUpdate, InvalidPayload, InvalidTransition, NotFound, UpstreamFailure
from .responses import isoformat, parse_object_id, stringify_id

ORDER_STATUS_CREATED = "CREATED"
ORDER_STATUS_PENDING = "PAYMENT_PENDING"
ORDER_STATUS_COMPLETE = "PAYMENT_COMPLETE"
ORDER_STATUS_FAILED = "PAYMENT_FAILED"

ORDER_STATUSES = (
    ORDER_STATUS_CREATED,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_COMPLETE,
    ORDER_STATUS_FAILED,
)

# Orders only move forward; the two payment outcomes are terminal.
ALLOWED_TRANSITIONS = {
    ORDER_STATUS_CREATED: (
        ORDER_STATUS_PENDING,
        ORDER_STATUS_COMPLETE,
        ORDER_STATUS_FAILED,
    ),
    ORDER_STATUS_PENDING: (ORDER_STATUS_COMPLETE, ORDER_STATUS_FAILED),
    ORDER_STATUS_COMPLETE: (),
    ORDER_STATUS_FAILED: (),
}

ORDER_SORTS = {"newest": -1, "oldest": 1}


def normalize_status(value) -> str:
    normalized = str(value or "").strip().upper().replace(" ", "_")
    if normalized not in ORDER_STATUSES:
        raise InvalidPayload(
            f"Status must be one of: {', '.join(ORDER_STATUSES)}"
        )
    return normalized


def serialize_order(order_document):
    if not order_document:
        return None

    items = []
    for item in order_document.get("items") or []:
        items.append(
            {
                "productId": stringify_id(item.get("product_id")),
                "name": item.get("name", ""),
                "price": item.get("price", 0),
            }
        )

    return {
        "id": str(order_document.get("_id")),
        "userId": stringify_id(order_document.get("user_id")),
        "products": [str(product_id) for product_id in order_document.get("products") or []],
        "items": items,
        "amount": order_document.get("amount", 0),
        "status": order_document.get("status"),
        "version": order_document.get("version", 0),
        "paymentReference": order_document.get("payment_reference"),
        "createdAt": isoformat(order_document.get("created_at")),
        "updatedAt": isoformat(order_document.get("updated_at")),
    }


class OrderEngine:
    def __init__(self, db, logger, payment_gateway=None):
        self.db = db
        self.logger = logger
        self.payment_gateway = payment_gateway

    def create_order(self, user_id, product_ids) -> Dict:
        user_object_id = parse_object_id(user_id, "userId")
        if not self.db.users.find_one({"_id": user_object_id}):
            raise NotFound("User not found")

        if not isinstance(product_ids, (list, tuple)) or not product_ids:
            raise InvalidPayload("Please add at least one product to the order")

        product_object_ids = [
            parse_object_id(product_id, "product id") for product_id in product_ids
        ]
        products_by_id = {
            document["_id"]: document
            for document in self.db.products.find(
                {"_id": {"$in": list(set(product_object_ids))}}
            )
        }

        items: List[Dict] = []
        for product_object_id in product_object_ids:
            product_document = products_by_id.get(product_object_id)
            if not product_document:
                raise NotFound(f"Product {product_object_id} not found")
            if product_document.get("available", True) is False:
                raise InvalidPayload(
                    f"{product_document.get('name') or 'This product'} is not available for purchase"
                )
            items.append(
                {
                    "product_id": product_object_id,
                    "name": product_document.get("name", ""),
                    "price": round(float(product_document.get("price", 0) or 0), 2),
                }
            )

        timestamp = datetime.utcnow()
        order_document = {
            "user_id": user_object_id,
            "products": product_object_ids,
            "items": items,
            "amount": round(sum(item["price"] for item in items), 2),
            "status": ORDER_STATUS_CREATED,
            "version": 0,
            "payment_reference": None,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        result = self.db.orders.insert_one(order_document)
        order_document["_id"] = result.inserted_id
        self.logger.info(
            "Created order %s for user %s (amount %s)",
            result.inserted_id,
            user_object_id,
            order_document["amount"],
        )
        return order_document

    def fetch_order(self, order_id) -> Dict:
        order_object_id = parse_object_id(order_id, "order id")
        order_document = self.db.orders.find_one({"_id": order_object_id})
        if not order_document:
            raise NotFound("Order not found")
        return order_document

    def update_order_payment_status(
        self, order_id, new_status, payment_reference: Optional[str] = None
    ) -> Dict:
        order_object_id = parse_object_id(order_id, "order id")
        target_status = normalize_status(new_status)

        order_document = self.db.orders.find_one({"_id": order_object_id})
        if not order_document:
            raise NotFound("Order not found")

        current_status = order_document.get("status")
        if current_status == target_status:
            return order_document

        if target_status not in ALLOWED_TRANSITIONS.get(current_status, ()):
            self.logger.warning(
                "Rejected status change for order %s: %s -> %s",
                order_object_id,
                current_status,
                target_status,
            )
            raise InvalidTransition(
                f"Cannot move order from {current_status} to {target_status}"
            )

        updates: Dict[str, object] = {
            "status": target_status,
            "updated_at": datetime.utcnow(),
        }
        if payment_reference:
            updates["payment_reference"] = payment_reference

        updated_document = self.db.orders.find_one_and_update(
            {
                "_id": order_object_id,
                "status": current_status,
                "version": order_document.get("version"),
            },
            {"$set": updates, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated_document:
            raise ConcurrentUpdate()

        self.logger.info(
            "Order %s moved from %s to %s",
            order_object_id,
            current_status,
            target_status,
        )
        return updated_document

    def sync_checkout_status(self, order_id, checkout_reference) -> Dict:
        reference = str(checkout_reference or "").strip()
        if not reference:
            raise InvalidPayload("A checkout reference is required")
        if self.payment_gateway is None:
            raise UpstreamFailure("Payment gateway is not configured.")

        self.fetch_order(order_id)
        gateway_status = self.payment_gateway.checkout_status(reference)
        return self.update_order_payment_status(
            order_id, gateway_status, payment_reference=reference
        )

    def list_orders_for_user(self, user_id, sort: Optional[str] = None) -> List[Dict]:
        user_object_id = parse_object_id(user_id, "userId")
        cursor = self.db.orders.find({"user_id": user_object_id})
        if sort:
            direction = ORDER_SORTS.get(str(sort).strip().lower())
            if direction is None:
                raise InvalidPayload("Sort must be 'newest' or 'oldest'")
            cursor = cursor.sort([("created_at", direction), ("_id", direction)])
        return list(cursor)
