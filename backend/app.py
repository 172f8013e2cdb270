import json
import os
import secrets
from functools import wraps
from typing import Dict, List, Optional, Tuple

import stripe
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_pymongo import PyMongo
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

import payments
from errors import (
    ApiError,
    AuthenticationRequired,
    Forbidden,
    NotFound,
    StorageUnavailable,
    UpstreamServiceError,
    ValidationError,
)
from image_storage import CloudinaryImageStorage, LocalImageStorage, allowed_image
from product_store import (
    JsonFileProductStore,
    MemoryProductStore,
    MongoProductStore,
    run_with_retry,
)
from shipping import ShippoClient
from static_visibility import (
    JsonFileVisibilityStore,
    MemoryVisibilityStore,
    MongoVisibilityStore,
)
from translation import MYMEMORY_API_URL, translate_text

load_dotenv()

PUBLISH_FLAGS = (
    "published",
    "isPublished",
    "active",
    "isActive",
    "visible",
    "isVisible",
)


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def resolve_storage_backend(config) -> str:
    explicit = str(config.get("STORAGE_BACKEND") or "").strip().lower()
    if explicit:
        return explicit
    if config.get("MONGO_URI"):
        return "mongo"
    if config.get("VERCEL"):
        return "memory"
    return "file"


def build_stores(app: Flask):
    """Build the product and static visibility stores for the configured backend."""
    backend = resolve_storage_backend(app.config)
    app.logger.info("Using %s storage for products", backend)

    if backend == "mongo":
        if not app.config["MONGO_URI"]:
            raise RuntimeError("STORAGE_BACKEND is mongo but MONGODB_URI is not set.")

        mongo = PyMongo(
            app,
            uri=app.config["MONGO_URI"],
            serverSelectionTimeoutMS=app.config["MONGO_SERVER_SELECTION_TIMEOUT_MS"],
        )
        db = mongo.db if mongo.db is not None else mongo.cx[app.config["MONGO_DB_NAME"]]
        retry_options = {
            "retry_attempts": app.config["MONGO_RETRY_ATTEMPTS"],
            "retry_delay": app.config["MONGO_RETRY_DELAY"],
        }
        try:
            run_with_retry(
                lambda: db.command("ping"),
                attempts=app.config["MONGO_RETRY_ATTEMPTS"],
                delay=app.config["MONGO_RETRY_DELAY"],
                description="MongoDB connection",
            )
            app.logger.info("Connected to MongoDB database %s", db.name)
        except StorageUnavailable as exc:
            app.logger.warning(
                "Failed to connect to MongoDB on startup: %s. "
                "Database operations will fail until it is reachable.",
                exc.message,
            )
        return (
            MongoProductStore(db, **retry_options),
            MongoVisibilityStore(db, **retry_options),
        )

    if backend == "memory":
        return MemoryProductStore(), MemoryVisibilityStore()

    if backend == "file":
        data_dir = app.config["DATA_DIR"]
        return (
            JsonFileProductStore(os.path.join(data_dir, "products.json")),
            JsonFileVisibilityStore(os.path.join(data_dir, "static_products.json")),
        )

    raise RuntimeError(f"Unknown STORAGE_BACKEND {backend!r}.")


def build_image_storage(app: Flask):
    cloud_name = app.config["CLOUDINARY_CLOUD_NAME"]
    api_key = app.config["CLOUDINARY_API_KEY"]
    api_secret = app.config["CLOUDINARY_API_SECRET"]
    if cloud_name and api_key and api_secret:
        app.logger.info("Storing product images on Cloudinary")
        return CloudinaryImageStorage(
            cloud_name, api_key, api_secret, folder=app.config["CLOUDINARY_FOLDER"]
        )

    app.logger.info(
        "Cloudinary is not configured; storing product images in %s",
        app.config["PRODUCT_UPLOAD_FOLDER"],
    )
    return LocalImageStorage(app.config["PRODUCT_UPLOAD_FOLDER"])


def create_app(
    config: Optional[Dict] = None,
    product_store=None,
    visibility_store=None,
    image_storage=None,
) -> Flask:
    """Create and configure the Flask application.

    Stores and image storage are built from configuration unless they are
    passed in explicitly.
    """
    app = Flask(__name__)

    # Honor proxy headers so redirects and absolute URLs keep the public origin.
    trusted_proxy_hops = max(0, env_int("TRUSTED_PROXY_HOPS", 1))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["ADMIN_PASSWORD"] = os.getenv("ADMIN_PASSWORD", "change-me")
    app.config["ADMIN_TOKEN"] = os.getenv("ADMIN_TOKEN", "change-me-in-production")

    app.config["MONGO_URI"] = (
        os.getenv("MONGODB_URI") or os.getenv("MONGO_URI") or ""
    ).strip()
    app.config["MONGO_DB_NAME"] = os.getenv("MONGO_DB_NAME", "epolux")
    app.config["MONGO_SERVER_SELECTION_TIMEOUT_MS"] = env_int(
        "MONGO_SERVER_SELECTION_TIMEOUT_MS", 5000
    )
    app.config["MONGO_RETRY_ATTEMPTS"] = env_int("MONGO_RETRY_ATTEMPTS", 3)
    app.config["MONGO_RETRY_DELAY"] = env_float("MONGO_RETRY_DELAY", 0.5)
    app.config["STORAGE_BACKEND"] = os.getenv("STORAGE_BACKEND", "")
    app.config["VERCEL"] = os.getenv("VERCEL") == "1"
    app.config["DATA_DIR"] = os.getenv("DATA_DIR") or os.path.join(
        app.root_path, "data"
    )

    app.config["PRODUCT_UPLOAD_FOLDER"] = os.getenv(
        "PRODUCT_UPLOAD_FOLDER"
    ) or os.path.join(app.root_path, "uploads")
    app.config["CLOUDINARY_CLOUD_NAME"] = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    app.config["CLOUDINARY_API_KEY"] = os.getenv("CLOUDINARY_API_KEY", "")
    app.config["CLOUDINARY_API_SECRET"] = os.getenv("CLOUDINARY_API_SECRET", "")
    app.config["CLOUDINARY_FOLDER"] = os.getenv("CLOUDINARY_FOLDER", "epolux/products")
    app.config["MAX_IMAGE_SIZE_MB"] = env_int("MAX_IMAGE_SIZE_MB", 10)
    app.config["MAX_IMAGES_PER_REQUEST"] = env_int("MAX_IMAGES_PER_REQUEST", 20)

    app.config["STRIPE_SECRET_KEY"] = os.getenv("STRIPE_SECRET_KEY", "")
    app.config["SUCCESS_URL"] = os.getenv("SUCCESS_URL", "")
    app.config["CANCEL_URL"] = os.getenv("CANCEL_URL", "")
    app.config["CHECKOUT_CURRENCY"] = os.getenv("CHECKOUT_CURRENCY", "eur")
    app.config["CHECKOUT_ALLOWED_COUNTRIES"] = [
        country.strip().upper()
        for country in os.getenv("CHECKOUT_ALLOWED_COUNTRIES", "SI,HR,AT,DE,IT").split(",")
        if country.strip()
    ]

    app.config["SHIPPO_API_KEY"] = os.getenv("SHIPPO_API_KEY", "")
    try:
        app.config["SHIPPO_FROM_ADDRESS"] = json.loads(
            os.getenv("SHIPPO_FROM_ADDRESS") or "{}"
        )
    except ValueError as exc:
        app.logger.warning("Ignoring malformed SHIPPO_FROM_ADDRESS: %s", exc)
        app.config["SHIPPO_FROM_ADDRESS"] = {}

    app.config["TRANSLATION_API_URL"] = os.getenv(
        "TRANSLATION_API_URL", MYMEMORY_API_URL
    )
    app.config["TRANSLATION_SOURCE_LANG"] = os.getenv("TRANSLATION_SOURCE_LANG", "en")
    app.config["TRANSLATION_TIMEOUT"] = env_float("TRANSLATION_TIMEOUT", 10)

    app.config["STATIC_PRODUCT_PREFIX"] = os.getenv("STATIC_PRODUCT_PREFIX", "")
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO")

    if config:
        app.config.update(config)

    if not app.config.get("MAX_CONTENT_LENGTH"):
        max_image_bytes = app.config["MAX_IMAGE_SIZE_MB"] * 1024 * 1024
        app.config["MAX_CONTENT_LENGTH"] = (
            max_image_bytes * app.config["MAX_IMAGES_PER_REQUEST"] + 1024 * 1024
        )

    app.logger.setLevel(str(app.config["LOG_LEVEL"]).upper())

    # --- Initialize extensions ---
    allowed_origins = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]
    CORS(app, origins=allowed_origins or "*")

    stripe.api_key = app.config["STRIPE_SECRET_KEY"] or None

    if product_store is None or visibility_store is None:
        built_products, built_visibility = build_stores(app)
        if product_store is None:
            product_store = built_products
        if visibility_store is None:
            visibility_store = built_visibility
    if image_storage is None:
        image_storage = build_image_storage(app)

    shippo_client = None
    if app.config["SHIPPO_API_KEY"]:
        shippo_client = ShippoClient(
            app.config["SHIPPO_API_KEY"], app.config["SHIPPO_FROM_ADDRESS"]
        )

    app.extensions["product_store"] = product_store
    app.extensions["visibility_store"] = visibility_store
    app.extensions["image_storage"] = image_storage

    # --- Helpers ---

    def require_admin(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            scheme, _, token = request.headers.get("Authorization", "").partition(" ")
            token = token.strip() if scheme.lower() == "bearer" else ""
            if not token:
                raise AuthenticationRequired("Authentication required")

            expected = str(app.config["ADMIN_TOKEN"])
            if not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
                raise Forbidden("Invalid token")
            return view(*args, **kwargs)

        return wrapper

    def parse_json_field(name: str, default, expected_type):
        raw_value = request.form.get(name)
        if raw_value is None or not raw_value.strip():
            return default
        try:
            parsed = json.loads(raw_value)
        except ValueError as exc:
            raise ValidationError(f"Invalid JSON data in {name}: {exc}")
        if not isinstance(parsed, expected_type):
            raise ValidationError(
                f"{name} must be a JSON {'array' if expected_type is list else 'object'}."
            )
        return parsed

    def parse_flag(value) -> bool:
        return value is True or str(value).strip().lower() == "true"

    def read_publish_flags(form, include_defaults: bool) -> Dict[str, object]:
        flags: Dict[str, object] = {}
        for name in PUBLISH_FLAGS:
            if include_defaults or name in form:
                flags[name] = parse_flag(form.get(name))
        if "status" in form:
            flags["status"] = str(form.get("status") or "").strip() or "published"
        elif include_defaults:
            flags["status"] = "published"
        return flags

    def read_image_uploads() -> List[Tuple[str, bytes]]:
        image_files = [
            image_file
            for image_file in request.files.getlist("images")
            if image_file and image_file.filename
        ]
        max_images = app.config["MAX_IMAGES_PER_REQUEST"]
        if len(image_files) > max_images:
            raise ValidationError(f"You can upload up to {max_images} images at once.")

        max_bytes = app.config["MAX_IMAGE_SIZE_MB"] * 1024 * 1024
        uploads: List[Tuple[str, bytes]] = []
        for image_file in image_files:
            if not allowed_image(image_file.filename, image_file.mimetype):
                raise ValidationError(
                    "Only image files are allowed (jpeg, jpg, png, webp)"
                )
            data = image_file.read()
            if len(data) > max_bytes:
                raise ValidationError(
                    f"{image_file.filename} is larger than "
                    f"{app.config['MAX_IMAGE_SIZE_MB']} MB."
                )
            uploads.append((image_file.filename, data))
        return uploads

    def discard_images(urls: List[str]) -> None:
        for url in urls:
            try:
                image_storage.delete(url)
            except UpstreamServiceError as exc:
                app.logger.warning("Error deleting image %s: %s", url, exc.message)

    def upload_images(uploads: List[Tuple[str, bytes]]) -> List[str]:
        image_urls: List[str] = []
        for filename, data in uploads:
            try:
                image_urls.append(image_storage.upload(data, filename))
            except UpstreamServiceError:
                discard_images(image_urls)
                raise
        if image_urls:
            app.logger.info("Uploaded %s image(s)", len(image_urls))
        return image_urls

    def retained_images(existing_images: List[str]) -> List[str]:
        if "existingImages" not in request.form:
            return list(existing_images)

        retained: List[str] = []
        for url in parse_json_field("existingImages", [], list):
            url = str(url or "").strip()
            if url in existing_images and url not in retained:
                retained.append(url)
        return retained

    def require_shipping() -> ShippoClient:
        if shippo_client is None:
            raise UpstreamServiceError("Shipping provider is not configured.", 503)
        return shippo_client

    # --- Error handling ---

    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        if error.status_code >= 500:
            app.logger.error("%s: %s", error.category, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        category = (error.name or "http_error").lower().replace(" ", "_")
        return jsonify({"error": category, "message": error.description}), error.code

    # --- ROUTES ---

    @app.route("/")
    def index():
        return "Backend is running"

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["PRODUCT_UPLOAD_FOLDER"], filename)

    @app.route("/api/admin/login", methods=["POST"])
    def admin_login():
        payload = request.get_json(silent=True) or {}
        password = str(payload.get("password") or "")
        expected = str(app.config["ADMIN_PASSWORD"])
        if password and secrets.compare_digest(
            password.encode("utf-8"), expected.encode("utf-8")
        ):
            return jsonify({"token": app.config["ADMIN_TOKEN"], "message": "Login successful"})

        app.logger.warning("Rejected admin login from %s", request.remote_addr)
        raise AuthenticationRequired("Invalid password")

    @app.route("/api/translate", methods=["POST"])
    def translate():
        payload = request.get_json(silent=True) or {}
        translated = translate_text(
            payload.get("text"),
            payload.get("targetLang"),
            source_lang=app.config["TRANSLATION_SOURCE_LANG"],
            api_url=app.config["TRANSLATION_API_URL"],
            timeout=app.config["TRANSLATION_TIMEOUT"],
        )
        return jsonify({"translatedText": translated})

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        return jsonify(product_store.list_products())

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product = product_store.get_by_id(product_id)
        if product is None:
            raise NotFound("Product not found")
        return jsonify(product)

    @app.route("/api/products", methods=["POST"])
    @require_admin
    def create_product():
        uploads = read_image_uploads()
        if not uploads:
            raise ValidationError("At least one image is required")

        specs = parse_json_field("specs", [], list)
        translations = parse_json_field("translations", {}, dict)
        publish_flags = read_publish_flags(request.form, include_defaults=True)

        app.logger.info("Creating product with %s image(s)", len(uploads))
        image_urls = upload_images(uploads)
        product_data = {
            "images": image_urls,
            "specs": specs,
            "translations": translations,
            **publish_flags,
        }
        try:
            product = product_store.create(product_data)
        except StorageUnavailable:
            discard_images(image_urls)
            raise

        app.logger.info("Product created successfully: %s", product["id"])
        return (
            jsonify({"product": product, "message": "Product created successfully"}),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @require_admin
    def update_product(product_id: str):
        existing_product = product_store.get_by_id(product_id)
        if existing_product is None:
            raise NotFound("Product not found")

        existing_images = [str(url) for url in existing_product.get("images") or []]
        kept_images = retained_images(existing_images)
        uploads = read_image_uploads()
        if not kept_images and not uploads:
            raise ValidationError("At least one image is required")

        updates: Dict[str, object] = {}
        if "specs" in request.form:
            updates["specs"] = parse_json_field("specs", [], list)
        if "translations" in request.form:
            updates["translations"] = parse_json_field("translations", {}, dict)
        updates.update(read_publish_flags(request.form, include_defaults=False))

        new_images = upload_images(uploads)
        updates["images"] = kept_images + new_images
        try:
            updated_product = product_store.update(product_id, updates)
        except StorageUnavailable:
            discard_images(new_images)
            raise
        if updated_product is None:
            discard_images(new_images)
            raise NotFound("Product not found")

        discard_images([url for url in existing_images if url not in updates["images"]])

        app.logger.info("Product updated successfully: %s", updated_product["id"])
        return jsonify(
            {"product": updated_product, "message": "Product updated successfully"}
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @require_admin
    def delete_product(product_id: str):
        product = product_store.get_by_id(product_id)
        if product is None:
            raise NotFound("Product not found")

        discard_images(product.get("images") or [])

        if not product_store.remove(product_id):
            raise NotFound("Product not found")

        app.logger.info("Product deleted successfully: %s", product["id"])
        return jsonify({"message": "Product deleted successfully"})

    # Static products
    @app.route("/api/static-products", methods=["GET"])
    def get_static_products():
        return jsonify(visibility_store.get())

    @app.route("/api/static-products/toggle", methods=["POST"])
    @require_admin
    def toggle_static_product():
        payload = request.get_json(silent=True) or {}
        raw_id = payload.get("productId")
        product_id = str(raw_id).strip() if raw_id is not None else ""
        if not product_id:
            raise ValidationError("Product ID is required")

        prefix = app.config["STATIC_PRODUCT_PREFIX"]
        if prefix and not product_id.startswith(prefix):
            raise ValidationError("Invalid product ID")

        state = visibility_store.toggle(product_id)
        return jsonify({"hidden": state["hidden"], "message": "Product visibility updated"})

    # Checkout and shipping
    @app.route("/create-checkout-session", methods=["POST"])
    def checkout_session():
        payload = request.get_json(silent=True) or {}
        url = payments.create_checkout_session(
            payload.get("cart"),
            success_url=app.config["SUCCESS_URL"],
            cancel_url=app.config["CANCEL_URL"],
            currency=app.config["CHECKOUT_CURRENCY"],
            allowed_countries=app.config["CHECKOUT_ALLOWED_COUNTRIES"],
        )
        return jsonify({"url": url})

    @app.route("/shipping/rates", methods=["POST"])
    def shipping_rates():
        payload = request.get_json(silent=True) or {}
        rates = require_shipping().get_rates(payload.get("toAddress"), payload.get("weight"))
        return jsonify(rates)

    @app.route("/shipping/label", methods=["POST"])
    @require_admin
    def shipping_label():
        payload = request.get_json(silent=True) or {}
        label = require_shipping().create_label(str(payload.get("rateId") or "").strip())
        return jsonify(label)

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
