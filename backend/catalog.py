"""Product catalog and the product media upload pipeline.

Creating a product is a two step process. The product document is written
first, carrying the raw upload as an inline base64 placeholder and a null
``media.url``. The bytes are then pushed to the configured media store; once
that succeeds a ``product_metadata`` row is written and only then is
``media.url`` filled in, so a product never advertises a URL without its
metadata row. A failure anywhere in that step is logged and leaves
``media_status`` at ``failed`` until :meth:`ProductCatalog.reconcile_media` re-runs it.
"""
import base64
import json
import math
import time
from concurrent.futures import Executor, Future
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from werkzeug.utils import secure_filename

from .errors import InvalidPayload, NotFound, TooManyFiles, UnsupportedMediaType
from .responses import isoformat, parse_object_id, stringify_id
from .storage import MediaStore

IMAGE_MIME_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/bmp",
    "image/tiff",
    "image/webp",
)
VIDEO_MIME_TYPES = (
    "video/mp4",
    "video/webm",
    "video/ogg",
    "video/x-msvideo",
    "video/quicktime",
    "video/mpeg",
)

MEDIA_PENDING = "pending"
MEDIA_STORED = "stored"
MEDIA_FAILED = "failed"

UPLOAD_MODE_SYNC = "sync"
UPLOAD_MODE_BACKGROUND = "background"

UPDATABLE_PRODUCT_FIELDS = ("name", "tags", "price", "description", "available")


def classify_media(mimetype: Optional[str]) -> str:
    normalized = str(mimetype or "").split(";")[0].strip().lower()
    if normalized in IMAGE_MIME_TYPES:
        return "image"
    if normalized in VIDEO_MIME_TYPES:
        return "video"
    raise UnsupportedMediaType("Please enter a valid file")


def select_single_file(files):
    """Return the only uploaded file in a werkzeug ``MultiDict`` of files."""
    uploaded = []
    if files:
        for key in files.keys():
            for storage in files.getlist(key):
                if storage is not None and getattr(storage, "filename", ""):
                    uploaded.append(storage)

    if not uploaded:
        raise InvalidPayload("Please upload a file to continue")
    if len(uploaded) > 1:
        raise TooManyFiles()
    return uploaded[0]


def normalize_tags(value) -> List[str]:
    if isinstance(value, (list, tuple)):
        if len(value) == 1:
            return normalize_tags(value[0])
        candidates = list(value)
    else:
        text = str(value or "").strip()
        if not text:
            return []
        candidates = None
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                candidates = parsed
        if candidates is None:
            candidates = text.split(",")

    tags: List[str] = []
    for candidate in candidates:
        tag = str(candidate or "").strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def parse_price(value) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise InvalidPayload("Price must be a valid number.")
    if not math.isfinite(price) or price <= 0:
        raise InvalidPayload("Price must be greater than zero.")
    return round(price, 2)


def parse_available(value) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value or "").strip().lower()
    if normalized in ("true", "1", "yes", "on"):
        return True
    if normalized in ("false", "0", "no", "off"):
        return False
    raise InvalidPayload("Availability must be true or false.")


def build_media_key(filename: Optional[str]) -> str:
    safe_name = secure_filename(filename or "") or "upload"
    return f"{int(time.time() * 1000)}_{safe_name}"


def serialize_product(product_document, include_data: bool = True):
    if not product_document:
        return None

    media = product_document.get("media") or {}
    return {
        "id": str(product_document.get("_id")),
        "ownerId": stringify_id(product_document.get("user_id")),
        "name": product_document.get("name", ""),
        "tags": list(product_document.get("tags") or []),
        "price": product_document.get("price", 0),
        "description": product_document.get("description", ""),
        "available": product_document.get("available", True),
        "media": {
            "data": media.get("data") if include_data else None,
            "url": media.get("url"),
            "type": media.get("type"),
        },
        "mediaStatus": product_document.get("media_status"),
        "createdAt": isoformat(product_document.get("created_at")),
        "updatedAt": isoformat(product_document.get("updated_at")),
    }


def serialize_media_metadata(metadata_document):
    if not metadata_document:
        return None
    return {
        "id": str(metadata_document.get("_id")),
        "productId": stringify_id(metadata_document.get("product_id")),
        "url": metadata_document.get("url"),
        "key": metadata_document.get("key"),
        "contentType": metadata_document.get("content_type"),
        "createdAt": isoformat(metadata_document.get("created_at")),
    }


class ProductCatalog:
    def __init__(
        self,
        db,
        media_store: MediaStore,
        logger,
        upload_mode: str = UPLOAD_MODE_SYNC,
        executor: Optional[Executor] = None,
    ):
        if upload_mode not in (UPLOAD_MODE_SYNC, UPLOAD_MODE_BACKGROUND):
            raise ValueError(f"Unknown media upload mode: {upload_mode}")
        if upload_mode == UPLOAD_MODE_BACKGROUND and executor is None:
            raise ValueError("Background media uploads need an executor.")

        self.db = db
        self.media_store = media_store
        self.logger = logger
        self.upload_mode = upload_mode
        self.executor = executor

    # --- Reads ---

    def fetch_product(self, product_id):
        object_id = parse_object_id(product_id, "product id")
        product_document = self.db.products.find_one({"_id": object_id})
        if not product_document:
            raise NotFound("Product not found")
        return product_document

    def list_products(self):
        return list(self.db.products.find().sort([("created_at", -1), ("_id", -1)]))

    def get_media_metadata(self, product_id):
        product_document = self.fetch_product(product_id)
        metadata_document = self.db.product_metadata.find_one(
            {"product_id": product_document["_id"]}
        )
        if not metadata_document:
            raise NotFound("Media for this product has not been stored yet")
        return metadata_document

    # --- Media upload pipeline ---

    def upload_product_media(
        self, owner_id, name, tags, price, description, file
    ) -> Tuple[Dict, Optional[Dict], Optional[Future]]:
        """Create a product from an uploaded file.

        Returns ``(product, metadata, pending)``. In sync mode the media store
        write has already finished, ``pending`` is ``None`` and ``metadata`` is
        set when the upload succeeded. In background mode ``metadata`` is
        ``None`` and ``pending`` is the future running the upload.
        """
        media_type = classify_media(getattr(file, "mimetype", None))

        normalized_name = str(name or "").strip()
        normalized_description = str(description or "").strip()
        normalized_tags = normalize_tags(tags)
        if (
            not owner_id
            or not normalized_name
            or not normalized_tags
            or not normalized_description
            or price in (None, "")
        ):
            raise InvalidPayload("Invalid payload")

        owner_object_id = parse_object_id(owner_id, "userId")
        price_value = parse_price(price)

        data = file.read()
        if not data:
            raise InvalidPayload("The uploaded file is empty")

        filename = getattr(file, "filename", "") or ""
        content_type = str(file.mimetype).split(";")[0].strip().lower()
        timestamp = datetime.utcnow()
        product_document = {
            "user_id": owner_object_id,
            "name": normalized_name,
            "tags": normalized_tags,
            "price": price_value,
            "description": normalized_description,
            "available": True,
            "media": {
                "data": base64.b64encode(data).decode("ascii"),
                "url": None,
                "type": media_type,
                "filename": filename,
                "content_type": content_type,
            },
            "media_status": MEDIA_PENDING,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        result = self.db.products.insert_one(product_document)
        product_id = result.inserted_id
        self.logger.info("Created product %s (%s media)", product_id, media_type)

        if self.upload_mode == UPLOAD_MODE_BACKGROUND:
            pending = self.executor.submit(
                self.store_media, product_id, filename, data, content_type
            )
            pending.add_done_callback(self.log_background_failure)
            return self.db.products.find_one({"_id": product_id}), None, pending

        metadata_document = self.store_media(product_id, filename, data, content_type)
        return self.db.products.find_one({"_id": product_id}), metadata_document, None

    def store_media(self, product_id, filename, data: bytes, content_type: str):
        key = build_media_key(filename)
        try:
            url = self.media_store.upload(key, data, content_type)
            self.db.product_metadata.update_one(
                {"product_id": product_id},
                {
                    "$set": {
                        "url": url,
                        "key": key,
                        "content_type": content_type,
                        "updated_at": datetime.utcnow(),
                    },
                    "$setOnInsert": {
                        "product_id": product_id,
                        "created_at": datetime.utcnow(),
                    },
                },
                upsert=True,
            )
            linked = self.db.products.update_one(
                {"_id": product_id},
                {
                    "$set": {
                        "media.url": url,
                        "media_status": MEDIA_STORED,
                        "updated_at": datetime.utcnow(),
                    },
                    "$unset": {"media_error": ""},
                },
            )
            if not linked.matched_count:
                # Product was deleted while the upload was in flight.
                self.db.product_metadata.delete_one({"product_id": product_id})
                self.logger.warning(
                    "Discarded media %s for deleted product %s", key, product_id
                )
                return None
        except Exception as exc:
            # The product stays without a durable URL until reconciliation.
            self.logger.error("Media upload failed for product %s: %s", product_id, exc)
            self.mark_media_failed(product_id, exc)
            return None

        self.logger.info("Stored media for product %s at %s", product_id, url)
        return self.db.product_metadata.find_one({"product_id": product_id})

    def mark_media_failed(self, product_id, error: Exception):
        self.db.products.update_one(
            {"_id": product_id, "media.url": None},
            {
                "$set": {
                    "media_status": MEDIA_FAILED,
                    "media_error": str(error)[:200],
                    "updated_at": datetime.utcnow(),
                }
            },
        )

    def log_background_failure(self, pending: Future):
        error = pending.exception()
        if error is not None:
            self.logger.error(
                "Background media upload crashed: %s", error, exc_info=error
            )

    def reconcile_media(self, include_pending: bool = False) -> Dict[str, int]:
        """Retry the media store write for products whose media never landed."""
        statuses = [MEDIA_FAILED]
        if include_pending:
            statuses.append(MEDIA_PENDING)

        summary = {"attempted": 0, "stored": 0, "failed": 0}
        cursor = self.db.products.find(
            {"media_status": {"$in": statuses}, "media.url": None}
        )
        for product_document in cursor:
            media = product_document.get("media") or {}
            encoded = media.get("data")
            if not encoded:
                self.logger.warning(
                    "Product %s has no inline media to re-upload",
                    product_document["_id"],
                )
                continue

            summary["attempted"] += 1
            metadata_document = self.store_media(
                product_document["_id"],
                media.get("filename") or "",
                base64.b64decode(encoded),
                media.get("content_type") or "application/octet-stream",
            )
            if metadata_document:
                summary["stored"] += 1
            else:
                summary["failed"] += 1

        self.logger.info(
            "Media reconciliation finished: %s attempted, %s stored, %s failed",
            summary["attempted"],
            summary["stored"],
            summary["failed"],
        )
        return summary

    # --- Mutations ---

    def update_product(self, product_id, changes: Optional[Dict]):
        product_document = self.fetch_product(product_id)
        changes = changes if isinstance(changes, dict) else {}

        updates: Dict[str, object] = {}
        for field in UPDATABLE_PRODUCT_FIELDS:
            if field not in changes:
                continue
            value = changes.get(field)
            if field == "price":
                updates["price"] = parse_price(value)
            elif field == "tags":
                tags = normalize_tags(value)
                if not tags:
                    raise InvalidPayload("At least one tag is required.")
                updates["tags"] = tags
            elif field == "available":
                updates["available"] = parse_available(value)
            else:
                text = str(value or "").strip()
                if not text:
                    raise InvalidPayload(f"The {field} cannot be empty.")
                updates[field] = text

        if not updates:
            raise InvalidPayload("Nothing to update")

        updates["updated_at"] = datetime.utcnow()
        self.db.products.update_one({"_id": product_document["_id"]}, {"$set": updates})
        return self.db.products.find_one({"_id": product_document["_id"]})

    def delete_product(self, product_id):
        product_document = self.fetch_product(product_id)
        self.db.products.delete_one({"_id": product_document["_id"]})
        self.db.product_metadata.delete_many({"product_id": product_document["_id"]})
        self.logger.info("Deleted product %s", product_document["_id"])
        return product_document
