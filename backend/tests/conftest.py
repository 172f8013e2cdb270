import io
import itertools
import threading

import mongomock
import pytest

from app import create_app
from product_store import MemoryProductStore
from static_visibility import MemoryVisibilityStore

ADMIN_TOKEN = "test-admin-token"
ADMIN_PASSWORD = "test-password"


class FakeImageStorage:
    def __init__(self):
        self._counter = itertools.count(1)
        self.uploaded = []
        self.deleted = []

    def upload(self, data, filename):
        url = f"https://res.cloudinary.com/demo/image/upload/v1/epolux/products/{next(self._counter)}-{filename}"
        self.uploaded.append(url)
        return url

    def delete(self, url):
        self.deleted.append(url)


class SerializedCollection:
    """Runs each collection command under one lock, as a server would."""

    def __init__(self, collection, lock):
        self._collection = collection
        self._lock = lock

    def __getattr__(self, name):
        attribute = getattr(self._collection, name)
        if not callable(attribute):
            return attribute

        def command(*args, **kwargs):
            with self._lock:
                result = attribute(*args, **kwargs)
                # Cursors are drained while the lock is held.
                return list(result) if name == "find" else result

        return command


class SerializedDatabase:
    def __init__(self, db):
        self._db = db
        self._lock = threading.RLock()

    def __getattr__(self, name):
        return SerializedCollection(getattr(self._db, name), self._lock)


def ticking_clock():
    ticks = itertools.count()

    def clock():
        tick = next(ticks)
        return f"2026-01-01T00:{tick // 60:02d}:{tick % 60:02d}.000000Z"

    return clock


def image_file(name="photo.png", mimetype="image/png", data=b"\x89PNG fake image"):
    return (io.BytesIO(data), name, mimetype)


@pytest.fixture
def image_storage():
    return FakeImageStorage()


@pytest.fixture
def product_store():
    return MemoryProductStore(clock=ticking_clock())


@pytest.fixture
def visibility_store():
    return MemoryVisibilityStore()


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient().epolux


@pytest.fixture
def app(product_store, visibility_store, image_storage):
    return create_app(
        config={
            "TESTING": True,
            "ADMIN_TOKEN": ADMIN_TOKEN,
            "ADMIN_PASSWORD": ADMIN_PASSWORD,
            "STRIPE_SECRET_KEY": "sk_test_123",
            "SUCCESS_URL": "https://shop.test/success",
            "CANCEL_URL": "https://shop.test/cancel",
            "SHIPPO_API_KEY": "",
            "STATIC_PRODUCT_PREFIX": "",
        },
        product_store=product_store,
        visibility_store=visibility_store,
        image_storage=image_storage,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
