"""Read-only admin reports built on MongoDB aggregation pipelines.

Only orders whose status is the completed-payment label count towards
revenue, customers and product rankings. An empty collection is a valid
zero-valued report.
"""
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from pymongo.errors import ExecutionTimeout

from .errors import InvalidPayload, NotFound, Timeout
from .orders import ORDER_STATUS_COMPLETE, serialize_order
from .responses import isoformat, parse_object_id, stringify_id

DEFAULT_RANKING_LIMIT = 3
MAX_RANKING_LIMIT = 50
SALES_REPORT_PERIODS = ("daily", "weekly", "monthly", "yearly")


def parse_limit(value, default: int = DEFAULT_RANKING_LIMIT) -> int:
    if value in (None, ""):
        return default
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise InvalidPayload("Limit must be a whole number.")
    if limit < 1 or limit > MAX_RANKING_LIMIT:
        raise InvalidPayload(f"Limit must be between 1 and {MAX_RANKING_LIMIT}.")
    return limit


def period_start(period: str, now: datetime) -> datetime:
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return start_of_day
    if period == "weekly":
        return start_of_day - timedelta(days=start_of_day.weekday())
    if period == "monthly":
        return start_of_day.replace(day=1)
    if period == "yearly":
        return start_of_day.replace(month=1, day=1)
    raise InvalidPayload(f"Period must be one of: {', '.join(SALES_REPORT_PERIODS)}")


def serialize_customer(user_document, extra: Optional[Dict] = None):
    if not user_document:
        return None
    created_at = user_document.get("createdAt") or user_document.get("created_at")
    customer = {
        "id": str(user_document.get("_id")),
        "firstName": user_document.get("firstName", ""),
        "lastName": user_document.get("lastName", ""),
        "email": user_document.get("email", ""),
        "image": user_document.get("image"),
        "phoneNumber": user_document.get("phoneNumber"),
        "createdAt": isoformat(created_at) if isinstance(created_at, datetime) else created_at,
    }
    if extra:
        customer.update(extra)
    return customer


def serialize_ranked_product(group_document):
    product = group_document.get("product") or {}
    media = product.get("media") or {}
    return {
        "productId": stringify_id(group_document.get("_id")),
        "name": product.get("name"),
        "price": product.get("price"),
        "tags": list(product.get("tags") or []),
        "media": {"url": media.get("url"), "type": media.get("type")},
        "count": group_document.get("count", 0),
    }


class ReportService:
    def __init__(
        self,
        db,
        logger,
        timeout_ms: int = 5000,
        legacy_completed_statuses: Iterable[str] = (),
    ):
        self.db = db
        self.logger = logger
        self.timeout_ms = timeout_ms
        self.completed_statuses: List[str] = [ORDER_STATUS_COMPLETE]
        for status in legacy_completed_statuses:
            if status and status not in self.completed_statuses:
                self.completed_statuses.append(status)

    def completed_match(self) -> Dict:
        return {"$match": {"status": {"$in": self.completed_statuses}}}

    def aggregate(self, collection, pipeline: List[Dict]) -> List[Dict]:
        try:
            return list(collection.aggregate(pipeline, maxTimeMS=self.timeout_ms))
        except ExecutionTimeout as exc:
            self.logger.error(
                "Aggregation on %s exceeded %sms: %s", collection.name, self.timeout_ms, exc
            )
            raise Timeout() from exc

    def count(self, collection) -> int:
        result = self.aggregate(collection, [{"$count": "total"}])
        return result[0]["total"] if result else 0

    def completed_totals(self) -> Dict:
        result = self.aggregate(
            self.db.orders,
            [
                self.completed_match(),
                {
                    "$group": {
                        "_id": None,
                        "revenue": {"$sum": "$amount"},
                        "orders": {"$sum": 1},
                        "customers": {"$addToSet": "$user_id"},
                    }
                },
            ],
        )
        if not result:
            return {"revenue": 0, "orders": 0, "customers": 0}
        totals = result[0]
        return {
            "revenue": round(totals.get("revenue") or 0, 2),
            "orders": totals.get("orders", 0),
            "customers": len(totals.get("customers") or []),
        }

    def revenue_generated(self) -> Dict:
        return {"revenue_generated": self.completed_totals()["revenue"]}

    def dashboard_summary(self) -> Dict:
        totals = self.completed_totals()
        return {
            "products_count": self.count(self.db.products),
            "users_count": self.count(self.db.users),
            "orders_count": totals["orders"],
            "customers_count": totals["customers"],
            "total_revenue": totals["revenue"],
        }

    def rank_products(self, limit: int, direction: int) -> List[Dict]:
        result = self.aggregate(
            self.db.orders,
            [
                self.completed_match(),
                {"$unwind": "$products"},
                {"$group": {"_id": "$products", "count": {"$sum": 1}}},
                {"$sort": {"count": direction, "_id": 1}},
                {"$limit": limit},
                {
                    "$lookup": {
                        "from": "products",
                        "localField": "_id",
                        "foreignField": "_id",
                        "as": "product",
                    }
                },
                {"$unwind": {"path": "$product", "preserveNullAndEmptyArrays": True}},
            ],
        )
        return [serialize_ranked_product(document) for document in result]

    def top_products(self, limit: int = DEFAULT_RANKING_LIMIT) -> List[Dict]:
        return self.rank_products(limit, -1)

    def worst_products(self, limit: int = DEFAULT_RANKING_LIMIT) -> List[Dict]:
        return self.rank_products(limit, 1)

    def customers(self) -> List[Dict]:
        result = self.aggregate(
            self.db.orders,
            [
                self.completed_match(),
                {
                    "$group": {
                        "_id": "$user_id",
                        "orders": {"$sum": 1},
                        "spent": {"$sum": "$amount"},
                    }
                },
                {
                    "$lookup": {
                        "from": "users",
                        "localField": "_id",
                        "foreignField": "_id",
                        "as": "user",
                    }
                },
                {"$unwind": "$user"},
                {"$sort": {"_id": 1}},
            ],
        )
        return [
            serialize_customer(
                document["user"],
                {
                    "ordersCount": document.get("orders", 0),
                    "totalSpent": round(document.get("spent") or 0, 2),
                },
            )
            for document in result
        ]

    def customer_detail(self, user_id) -> Dict:
        user_object_id = parse_object_id(user_id, "userId")
        user_document = self.db.users.find_one({"_id": user_object_id})
        if not user_document:
            raise NotFound("User not found")

        orders = self.aggregate(
            self.db.orders,
            [
                {"$match": {"user_id": user_object_id}},
                {"$sort": {"created_at": -1, "_id": -1}},
            ],
        )
        return {
            "customer": serialize_customer(user_document),
            "orders": [serialize_order(order) for order in orders],
        }

    def sales_report(self, period, now: Optional[datetime] = None) -> Dict:
        normalized_period = str(period or "").strip().lower()
        now = now or datetime.utcnow()
        start = period_start(normalized_period, now)

        result = self.aggregate(
            self.db.orders,
            [
                self.completed_match(),
                {"$match": {"created_at": {"$gte": start, "$lte": now}}},
                {
                    "$group": {
                        "_id": None,
                        "revenue": {"$sum": "$amount"},
                        "orders": {"$sum": 1},
                    }
                },
            ],
        )
        totals = result[0] if result else {}
        return {
            "period": normalized_period,
            "from": isoformat(start),
            "to": isoformat(now),
            "orders_count": totals.get("orders", 0),
            "revenue": round(totals.get("revenue") or 0, 2),
        }
