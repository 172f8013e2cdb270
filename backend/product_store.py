import copy
import json
import logging
import os
import re
import threading
import time
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from errors import StorageUnavailable

logger = logging.getLogger(__name__)

PRODUCT_SEQUENCE_ID = "product_id"
IMMUTABLE_FIELDS = ("id", "_id", "createdAt", "updatedAt")

INTEGER_ID_PATTERN = re.compile(r"-?[0-9]+")
BSON_INT64_MIN = -(2 ** 63)
BSON_INT64_MAX = 2 ** 63 - 1
OBJECT_ID_PATTERN = re.compile(r"[0-9a-fA-F]{24}")

_MISSING = object()


def utc_timestamp() -> str:
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="microseconds")
        .replace("+00:00", "Z")
    )


def storable_integer(text: str) -> Optional[int]:
    """Parse ``text`` as an ASCII integer that fits a BSON 64-bit int."""
    if not INTEGER_ID_PATTERN.fullmatch(text):
        return None
    value = int(text)
    if not BSON_INT64_MIN <= value <= BSON_INT64_MAX:
        return None
    return value


def resolve_identifier(product_id) -> List[Dict[str, object]]:
    """Return the lookups for ``product_id`` in precedence order.

    Products written by older revisions carry ``id`` as an integer, as a
    string, or not at all (only the MongoDB ``_id``). The lookups are tried
    in order and the first match wins:

    1. integer ``id`` when the text is an integer literal within 64 bits;
    2. exact text match on ``id``;
    3. ``_id`` when the text is a 24 character hexadecimal ObjectId.
    """
    candidate = "" if product_id is None else str(product_id).strip()
    if not candidate:
        return []

    lookups: List[Dict[str, object]] = []
    integer_id = storable_integer(candidate)
    if integer_id is not None:
        lookups.append({"id": integer_id})
    lookups.append({"id": candidate})
    if OBJECT_ID_PATTERN.fullmatch(candidate):
        lookups.append({"_id": ObjectId(candidate)})
    return lookups


def numeric_id(value) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        return value if BSON_INT64_MIN <= value <= BSON_INT64_MAX else 0
    if isinstance(value, str):
        return storable_integer(value.strip()) or 0
    return 0


def max_product_id(documents: Iterable[Dict]) -> int:
    return max([0] + [numeric_id(document.get("id")) for document in documents])


def serialize_product(document: Dict) -> Dict:
    product = {key: value for key, value in document.items() if key != "_id"}
    identifier = document.get("id")
    if identifier is None or identifier == "":
        identifier = document.get("_id")
    product["id"] = str(identifier)
    return product


def writable_fields(data: Optional[Dict]) -> Dict:
    return {
        key: value
        for key, value in (data or {}).items()
        if key not in IMMUTABLE_FIELDS
    }


def run_with_retry(
    operation: Callable,
    attempts: int = 3,
    delay: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "Database operation",
):
    """Run ``operation``, retrying connection failures with a linear backoff."""
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConnectionFailure as exc:
            if attempt == attempts:
                logger.error(
                    "%s failed after %s attempt(s): %s", description, attempts, exc
                )
                raise StorageUnavailable(f"Database is unreachable: {exc}") from exc
            wait = delay * attempt
            logger.warning(
                "%s failed (attempt %s/%s): %s; retrying in %.1fs",
                description,
                attempt,
                attempts,
                exc,
                wait,
            )
            sleep(wait)
        except PyMongoError as exc:
            logger.error("%s failed: %s", description, exc)
            raise StorageUnavailable(f"Database operation failed: {exc}") from exc


class ProductStore:
    """CRUD for product records with mixed-representation id resolution.

    ``get_by_id`` and ``update`` return ``None`` and ``remove`` returns
    ``False`` when no record resolves. Backend failures raise
    :class:`errors.StorageUnavailable`.
    """

    def __init__(self, clock: Callable[[], str] = utc_timestamp):
        self.clock = clock

    def list_products(self) -> List[Dict]:
        raise NotImplementedError

    def get_by_id(self, product_id: str) -> Optional[Dict]:
        raise NotImplementedError

    def create(self, data: Dict) -> Dict:
        raise NotImplementedError

    def update(self, product_id: str, patch: Dict) -> Optional[Dict]:
        raise NotImplementedError

    def remove(self, product_id: str) -> bool:
        raise NotImplementedError


class MongoProductStore(ProductStore):
    def __init__(
        self,
        db,
        clock: Callable[[], str] = utc_timestamp,
        retry_attempts: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(clock)
        self.collection = db.products
        self.counters = db.counters
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep

    def _run(self, operation: Callable, description: str):
        return run_with_retry(
            operation,
            attempts=self.retry_attempts,
            delay=self.retry_delay,
            sleep=self.sleep,
            description=description,
        )

    def _find_document(self, product_id: str) -> Optional[Dict]:
        for lookup in resolve_identifier(product_id):
            document = self._run(
                partial(self.collection.find_one, lookup), "Product lookup"
            )
            if document is not None:
                return document
        return None

    def _reserve_id(self) -> int:
        # The sequence is raised to the highest stored id first so products
        # created before the counter existed are never collided with.
        def reserve():
            current_max = max_product_id(self.collection.find({}, {"id": 1}))
            raise_to_max = {"$max": {"value": current_max}}
            try:
                self.counters.update_one(
                    {"_id": PRODUCT_SEQUENCE_ID}, raise_to_max, upsert=True
                )
            except DuplicateKeyError:
                self.counters.update_one({"_id": PRODUCT_SEQUENCE_ID}, raise_to_max)
            counter = self.counters.find_one_and_update(
                {"_id": PRODUCT_SEQUENCE_ID},
                {"$inc": {"value": 1}},
                return_document=ReturnDocument.AFTER,
            )
            return int(counter["value"])

        return self._run(reserve, "Product id reservation")

    def list_products(self) -> List[Dict]:
        documents = self._run(lambda: list(self.collection.find()), "Product listing")
        return [serialize_product(document) for document in documents]

    def get_by_id(self, product_id: str) -> Optional[Dict]:
        document = self._find_document(product_id)
        if document is None:
            return None
        return serialize_product(document)

    def create(self, data: Dict) -> Dict:
        document = copy.deepcopy(writable_fields(data))
        document["id"] = self._reserve_id()
        timestamp = self.clock()
        document["createdAt"] = timestamp
        document["updatedAt"] = timestamp

        self._run(partial(self.collection.insert_one, document), "Product insert")
        return serialize_product(document)

    def update(self, product_id: str, patch: Dict) -> Optional[Dict]:
        document = self._find_document(product_id)
        if document is None:
            return None

        changes = writable_fields(patch)
        changes["updatedAt"] = self.clock()
        updated = self._run(
            partial(
                self.collection.find_one_and_update,
                {"_id": document["_id"]},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            ),
            "Product update",
        )
        if updated is None:
            return None
        return serialize_product(updated)

    def remove(self, product_id: str) -> bool:
        document = self._find_document(product_id)
        if document is None:
            return False

        result = self._run(
            partial(self.collection.delete_one, {"_id": document["_id"]}),
            "Product delete",
        )
        return result.deleted_count > 0


def matches_lookup(document: Dict, lookup: Dict) -> bool:
    return all(
        document.get(key, _MISSING) == value for key, value in lookup.items()
    )


class DocumentListProductStore(ProductStore):
    """Store over a whole list of documents read and written at once.

    Writers hold the lock and always write a new list; readers work on the
    snapshot they read.
    """

    def __init__(self, clock: Callable[[], str] = utc_timestamp):
        super().__init__(clock)
        self._lock = threading.RLock()
        self._sequence = 0

    def _read(self) -> List[Dict]:
        raise NotImplementedError

    def _write(self, documents: List[Dict]) -> None:
        raise NotImplementedError

    @staticmethod
    def _locate(documents: List[Dict], product_id: str) -> Optional[int]:
        for lookup in resolve_identifier(product_id):
            for index, document in enumerate(documents):
                if matches_lookup(document, lookup):
                    return index
        return None

    def list_products(self) -> List[Dict]:
        return [
            serialize_product(copy.deepcopy(document)) for document in self._read()
        ]

    def get_by_id(self, product_id: str) -> Optional[Dict]:
        documents = self._read()
        index = self._locate(documents, product_id)
        if index is None:
            return None
        return serialize_product(copy.deepcopy(documents[index]))

    def create(self, data: Dict) -> Dict:
        with self._lock:
            documents = self._read()
            self._sequence = max(self._sequence, max_product_id(documents)) + 1
            timestamp = self.clock()
            document = copy.deepcopy(writable_fields(data))
            document["id"] = self._sequence
            document["createdAt"] = timestamp
            document["updatedAt"] = timestamp
            self._write(documents + [document])
        return serialize_product(copy.deepcopy(document))

    def update(self, product_id: str, patch: Dict) -> Optional[Dict]:
        with self._lock:
            documents = self._read()
            index = self._locate(documents, product_id)
            if index is None:
                return None

            updated = dict(documents[index])
            updated.update(copy.deepcopy(writable_fields(patch)))
            updated["updatedAt"] = self.clock()
            documents[index] = updated
            self._write(documents)
        return serialize_product(copy.deepcopy(updated))

    def remove(self, product_id: str) -> bool:
        with self._lock:
            documents = self._read()
            index = self._locate(documents, product_id)
            if index is None:
                return False
            del documents[index]
            self._write(documents)
        return True


class MemoryProductStore(DocumentListProductStore):
    """Process-local store for read-only deployments such as Vercel."""

    def __init__(
        self,
        documents: Optional[List[Dict]] = None,
        clock: Callable[[], str] = utc_timestamp,
    ):
        super().__init__(clock)
        self._documents = tuple(copy.deepcopy(list(documents or [])))

    def _read(self) -> List[Dict]:
        return list(self._documents)

    def _write(self, documents: List[Dict]) -> None:
        self._documents = tuple(documents)


class JsonFileProductStore(DocumentListProductStore):
    def __init__(self, path: str, clock: Callable[[], str] = utc_timestamp):
        super().__init__(clock)
        self.path = path

    def _read(self) -> List[Dict]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                documents = json.load(handle)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.error("Unable to read products from %s: %s", self.path, exc)
            raise StorageUnavailable(f"Product file could not be read: {exc}") from exc

        if not isinstance(documents, list):
            raise StorageUnavailable("Product file does not contain a list.")
        for position, document in enumerate(documents):
            if not isinstance(document, dict):
                logger.error(
                    "Entry %s in %s is not a product object", position, self.path
                )
                raise StorageUnavailable(
                    f"Product file entry {position} is not an object."
                )
        return documents

    def _write(self, documents: List[Dict]) -> None:
        directory = os.path.dirname(self.path)
        temporary_path = f"{self.path}.tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(temporary_path, "w", encoding="utf-8") as handle:
                json.dump(documents, handle, indent=2, ensure_ascii=False)
            os.replace(temporary_path, self.path)
        except OSError as exc:
            logger.error("Unable to save products to %s: %s", self.path, exc)
            raise StorageUnavailable(f"Product file could not be written: {exc}") from exc
