import atexit
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Dict, Optional

import click
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity, jwt_required
from flask_pymongo import PyMongo
from werkzeug.exceptions import HTTPException

from .catalog import (
    UPLOAD_MODE_BACKGROUND,
    UPLOAD_MODE_SYNC,
    ProductCatalog,
    select_single_file,
    serialize_media_metadata,
    serialize_product,
)
from .errors import ApiError, Forbidden, InvalidPayload, Unauthorized
from .orders import (
    ORDER_STATUS_COMPLETE,
    OrderEngine,
    normalize_status,
    serialize_order,
)
from .payments import SumUpGateway
from .reports import ReportService, parse_limit
from .responses import failure, success
from .storage import LocalMediaStore, S3BucketStore

load_dotenv()

DEFAULT_CORS_ORIGINS = [
    "https://www.karwaanfilms.com",
    "https://karwaan-admin-pannel.vercel.app",
    "https://karwaan-admin-panel.vercel.app",
]


def split_csv(value: Optional[str]):
    return [item.strip() for item in str(value or "").split(",") if item.strip()]


def env(name: str, default: str = "") -> str:
    """Read an environment variable, treating an empty value as unset."""
    return os.getenv(name) or default


def create_app(
    test_config: Optional[Dict] = None,
    db=None,
    media_store=None,
    payment_gateway=None,
) -> Flask:
    """Create and configure the Flask application.

    ``db``, ``media_store`` and ``payment_gateway`` replace the collaborators
    that would otherwise be built from configuration.
    """
    app = Flask(__name__)
    default_upload_folder = os.path.join(app.root_path, "uploads")

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = env("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=int(env("JWT_ACCESS_TOKEN_EXPIRES_HOURS", "1"))
    )
    app.config["MONGO_URI"] = env("MONGO_URI", "mongodb://localhost:27017/karwaan")
    max_upload_mb = int(env("MAX_UPLOAD_SIZE_MB", "50"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["CORS_ALLOWED_ORIGINS"] = DEFAULT_CORS_ORIGINS + split_csv(
        env("CORS_ALLOWED_ORIGINS")
    )

    app.config["MEDIA_STORE"] = env("MEDIA_STORE", "local").strip().lower()
    app.config["MEDIA_UPLOAD_FOLDER"] = env(
        "MEDIA_UPLOAD_FOLDER", default_upload_folder
    )
    app.config["MEDIA_PUBLIC_BASE_URL"] = env(
        "MEDIA_PUBLIC_BASE_URL", "http://localhost:5000/"
    )
    app.config["MEDIA_BUCKET_NAME"] = env("MEDIA_BUCKET_NAME", "karwaan-bucket")
    app.config["MEDIA_BUCKET_ENDPOINT"] = env("MEDIA_BUCKET_ENDPOINT")
    app.config["MEDIA_BUCKET_REGION"] = env("MEDIA_BUCKET_REGION")
    app.config["MEDIA_BUCKET_ACCESS_KEY_ID"] = env("MEDIA_BUCKET_ACCESS_KEY_ID")
    app.config["MEDIA_BUCKET_SECRET_ACCESS_KEY"] = env(
        "MEDIA_BUCKET_SECRET_ACCESS_KEY"
    )
    app.config["MEDIA_BUCKET_PUBLIC_URL"] = env("MEDIA_BUCKET_PUBLIC_URL")
    app.config["MEDIA_UPLOAD_MODE"] = (
        env("MEDIA_UPLOAD_MODE", UPLOAD_MODE_SYNC).strip().lower()
    )
    app.config["MEDIA_UPLOAD_WORKERS"] = int(env("MEDIA_UPLOAD_WORKERS", "4"))

    app.config["REPORT_TIMEOUT_MS"] = int(env("REPORT_TIMEOUT_MS", "5000"))
    app.config["LEGACY_COMPLETED_STATUSES"] = split_csv(
        env("LEGACY_COMPLETED_STATUSES")
    )

    app.config["SUMUP_CLIENT_ID"] = env("SUMUP_CLIENT_ID")
    app.config["SUMUP_CLIENT_SECRET"] = env("SUMUP_CLIENT_SECRET")
    app.config["SUMUP_BASE_URL"] = env("SUMUP_BASE_URL", "https://api.sumup.com")
    app.config["UPSTREAM_TIMEOUT_SECONDS"] = float(
        env("UPSTREAM_TIMEOUT_SECONDS", "15")
    )

    if test_config:
        app.config.update(test_config)
    if not app.config.get("MEDIA_UPLOAD_FOLDER"):
        app.config["MEDIA_UPLOAD_FOLDER"] = default_upload_folder

    # --- Initialize extensions ---
    CORS(
        app,
        supports_credentials=True,
        origins=app.config["CORS_ALLOWED_ORIGINS"] or "*",
        methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    jwt = JWTManager(app)
    if db is None:
        mongo = PyMongo(app)
        db = mongo.db

    for collection, keys, options in (
        (db.product_metadata, "product_id", {"unique": True}),
        (db.orders, "user_id", {}),
        (db.orders, "status", {}),
    ):
        try:
            collection.create_index(keys, **options)
        except Exception as exc:
            app.logger.warning(
                "Unable to ensure index %s on %s: %s", keys, collection.name, exc
            )

    if media_store is None:
        if app.config["MEDIA_STORE"] == "s3":
            media_store = S3BucketStore(
                app.config["MEDIA_BUCKET_NAME"],
                endpoint_url=app.config["MEDIA_BUCKET_ENDPOINT"],
                region_name=app.config["MEDIA_BUCKET_REGION"],
                access_key_id=app.config["MEDIA_BUCKET_ACCESS_KEY_ID"],
                secret_access_key=app.config["MEDIA_BUCKET_SECRET_ACCESS_KEY"],
                public_base_url=app.config["MEDIA_BUCKET_PUBLIC_URL"],
            )
        else:
            media_store = LocalMediaStore(
                app.config["MEDIA_UPLOAD_FOLDER"], app.config["MEDIA_PUBLIC_BASE_URL"]
            )

    if payment_gateway is None and app.config["SUMUP_CLIENT_ID"]:
        payment_gateway = SumUpGateway(
            app.config["SUMUP_CLIENT_ID"],
            app.config["SUMUP_CLIENT_SECRET"],
            app.logger,
            base_url=app.config["SUMUP_BASE_URL"],
            timeout=app.config["UPSTREAM_TIMEOUT_SECONDS"],
        )

    media_executor = None
    if app.config["MEDIA_UPLOAD_MODE"] == UPLOAD_MODE_BACKGROUND:
        media_executor = ThreadPoolExecutor(
            max_workers=app.config["MEDIA_UPLOAD_WORKERS"],
            thread_name_prefix="media-upload",
        )
        # Let in-flight uploads finish before the interpreter exits.
        atexit.register(media_executor.shutdown, wait=True)

    catalog = ProductCatalog(
        db,
        media_store,
        app.logger,
        upload_mode=app.config["MEDIA_UPLOAD_MODE"],
        executor=media_executor,
    )
    orders = OrderEngine(db, app.logger, payment_gateway=payment_gateway)
    reports = ReportService(
        db,
        app.logger,
        timeout_ms=app.config["REPORT_TIMEOUT_MS"],
        legacy_completed_statuses=app.config["LEGACY_COMPLETED_STATUSES"],
    )

    app.extensions["db"] = db
    app.extensions["catalog"] = catalog
    app.extensions["orders"] = orders
    app.extensions["reports"] = reports
    app.extensions["media_executor"] = media_executor

    # --- Error envelopes ---

    @jwt.unauthorized_loader
    def missing_token(reason: str):
        return failure(reason or Unauthorized.default_message, 401)

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        return failure(reason or "Invalid token", 401)

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return failure("Your session has expired. Please sign in again.", 401)

    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return failure(error.message, error.status_code, error.data)

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return failure(error.description or error.name, error.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception("Unhandled error while serving %s: %s", request.path, error)
        return failure(ApiError.default_message, 500)

    # --- Helpers ---

    def current_user():
        identity = get_jwt_identity()
        try:
            user_id = ObjectId(str(identity or ""))
        except (InvalidId, TypeError):
            raise Unauthorized("Invalid token identity")

        user_document = db.users.find_one({"_id": user_id})
        if not user_document:
            raise Unauthorized("User no longer exists")
        return user_document

    def is_admin(user_document) -> bool:
        return str(user_document.get("role") or "").strip().lower() == "admin"

    def require_admin_user():
        user_document = current_user()
        if not is_admin(user_document):
            raise Forbidden()
        return user_document

    def require_self_or_admin(user_id):
        user_document = current_user()
        if str(user_document["_id"]) == str(user_id or "").strip():
            return user_document
        if not is_admin(user_document):
            raise Forbidden("You can only access your own orders.")
        return user_document

    def requested_status(payload: Dict, user_document) -> str:
        if not payload.get("status"):
            raise InvalidPayload("A payment status is required")
        status = normalize_status(payload.get("status"))
        if status == ORDER_STATUS_COMPLETE and not is_admin(user_document):
            raise Forbidden(
                "Only the payment gateway or an admin can mark an order as paid."
            )
        return status

    def json_payload() -> Dict:
        payload = request.get_json(silent=True)
        if payload is None:
            payload = request.form.to_dict() if request.form else {}
        if not isinstance(payload, dict):
            raise InvalidPayload("Request body must be a JSON object")
        return payload

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return success({"status": "ok"})

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["MEDIA_UPLOAD_FOLDER"], filename)

    # Products

    @app.route("/products", methods=["GET"])
    def list_products():
        products = [
            serialize_product(document, include_data=False)
            for document in catalog.list_products()
        ]
        return success(products)

    @app.route("/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        return success(serialize_product(catalog.fetch_product(product_id)))

    @app.route("/products/<product_id>/media", methods=["GET"])
    def get_product_media(product_id: str):
        return success(serialize_media_metadata(catalog.get_media_metadata(product_id)))

    @app.route("/products", methods=["POST"])
    @app.route("/admin/create-product", methods=["POST"])
    @jwt_required()
    def create_product():
        require_admin_user()

        uploaded_file = select_single_file(request.files)
        form = request.form
        tags = form.getlist("tags") if form else []
        product_document, metadata_document, pending = catalog.upload_product_media(
            form.get("userId"),
            form.get("name"),
            tags,
            form.get("price"),
            form.get("description"),
            uploaded_file,
        )

        if metadata_document:
            message = "Product added successfully"
        elif pending is not None:
            message = "Product added successfully. Media upload is in progress."
        else:
            message = "Product added, but its media could not be stored yet."

        return success(
            {
                "product_data": serialize_product(product_document),
                "product_metadata": serialize_media_metadata(metadata_document),
            },
            message,
            201,
        )

    @app.route("/products/<product_id>", methods=["PUT"])
    @app.route("/admin/update-product/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        require_admin_user()
        product_document = catalog.update_product(product_id, json_payload())
        return success(
            serialize_product(product_document), "Product updated successfully"
        )

    @app.route("/products/<product_id>", methods=["DELETE"])
    @app.route("/admin/delete-product/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        require_admin_user()
        product_document = catalog.delete_product(product_id)
        return success(
            {"id": str(product_document["_id"])}, "Product removed successfully"
        )

    # Orders

    @app.route("/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        payload = json_payload()
        user_id = payload.get("userId") or get_jwt_identity()
        require_self_or_admin(user_id)

        product_ids = payload.get("products")
        if product_ids is None:
            product_ids = payload.get("productIds")
        order_document = orders.create_order(user_id, product_ids)
        return success(serialize_order(order_document), "Order created successfully", 201)

    @app.route("/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def update_order_payment_status(order_id: str):
        payload = json_payload()
        order_document = orders.fetch_order(order_id)
        user_document = require_self_or_admin(order_document.get("user_id"))

        status = requested_status(payload, user_document)
        updated = orders.update_order_payment_status(
            order_id, status, payload.get("paymentReference")
        )
        return success(serialize_order(updated), "Order updated successfully")

    @app.route("/orders/checkout/<order_id>", methods=["PUT"])
    @jwt_required()
    def checkout_order(order_id: str):
        payload = json_payload()
        order_document = orders.fetch_order(order_id)
        user_document = require_self_or_admin(order_document.get("user_id"))

        checkout_reference = payload.get("checkoutId") or payload.get("checkout_id")
        if checkout_reference:
            updated = orders.sync_checkout_status(order_id, checkout_reference)
        elif payload.get("status"):
            status = requested_status(payload, user_document)
            updated = orders.update_order_payment_status(
                order_id, status, payload.get("paymentReference")
            )
        else:
            raise InvalidPayload("A checkoutId or payment status is required")
        return success(serialize_order(updated), "Order updated successfully")

    # The id in this path is the user id.
    @app.route("/orders/all-orders/<user_id>", methods=["GET"])
    @jwt_required()
    def list_orders(user_id: str):
        require_self_or_admin(user_id)
        order_documents = orders.list_orders_for_user(user_id, request.args.get("sort"))
        return success([serialize_order(document) for document in order_documents])

    # --- Admin Routes ---

    @app.route("/admin/revenue-generated", methods=["GET"])
    @jwt_required()
    def revenue_generated():
        require_admin_user()
        return success(reports.revenue_generated())

    @app.route("/admin/get-dashboard-data", methods=["GET"])
    @jwt_required()
    def dashboard_data():
        require_admin_user()
        return success(reports.dashboard_summary())

    @app.route("/admin/top-products", methods=["GET"])
    @jwt_required()
    def top_products():
        require_admin_user()
        return success(reports.top_products(parse_limit(request.args.get("limit"))))

    @app.route("/admin/worst-products", methods=["GET"])
    @jwt_required()
    def worst_products():
        require_admin_user()
        return success(reports.worst_products(parse_limit(request.args.get("limit"))))

    @app.route("/admin/customer_details", methods=["GET"])
    @jwt_required()
    def customer_details():
        require_admin_user()
        return success(reports.customers())

    @app.route("/admin/customer_detail/<user_id>", methods=["GET"])
    @jwt_required()
    def customer_detail(user_id: str):
        require_admin_user()
        return success(reports.customer_detail(user_id))

    @app.route("/admin/sales-report", methods=["GET"])
    @jwt_required()
    def sales_report():
        require_admin_user()
        return success(reports.sales_report(request.args.get("period", "daily")))

    # --- CLI ---

    @app.cli.command("reconcile-media")
    @click.option(
        "--include-pending",
        is_flag=True,
        help="Also retry uploads that never reported back.",
    )
    def reconcile_media_command(include_pending: bool):
        """Re-upload product media that failed to reach the media store."""
        summary = catalog.reconcile_media(include_pending=include_pending)
        click.echo(
            f"Attempted {summary['attempted']}, stored {summary['stored']}, "
            f"failed {summary['failed']}."
        )

    return app
