import json
import logging
import os
import threading
import time
from functools import partial
from typing import Callable, Dict, List, Optional

from errors import StorageUnavailable
from product_store import run_with_retry

logger = logging.getLogger(__name__)

VISIBILITY_DOCUMENT_ID = "static-products-visibility"


def toggled(hidden: List[str], product_id: str) -> List[str]:
    if product_id in hidden:
        return [value for value in hidden if value != product_id]
    return hidden + [product_id]


class MongoVisibilityStore:
    """Hidden-set for static catalog entries kept in a singleton document."""

    def __init__(
        self,
        db,
        retry_attempts: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.collection = db.settings
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

    def get(self) -> Dict[str, List[str]]:
        document = self._run(
            partial(self.collection.find_one, {"_id": VISIBILITY_DOCUMENT_ID}),
            "Static visibility lookup",
        )
        hidden = (document or {}).get("hidden") or []
        return {"hidden": [str(value) for value in hidden]}

    def toggle(self, product_id: str) -> Dict[str, List[str]]:
        product_id = str(product_id)

        # Each branch is a single atomic update, so toggles of different ids
        # never overwrite each other.
        unhidden = self._run(
            partial(
                self.collection.update_one,
                {"_id": VISIBILITY_DOCUMENT_ID, "hidden": product_id},
                {"$pull": {"hidden": product_id}},
            ),
            "Static visibility update",
        )
        if not unhidden.modified_count:
            self._run(
                partial(
                    self.collection.update_one,
                    {"_id": VISIBILITY_DOCUMENT_ID},
                    {"$addToSet": {"hidden": product_id}},
                    upsert=True,
                ),
                "Static visibility update",
            )
        return self.get()


class MemoryVisibilityStore:
    def __init__(self, hidden: Optional[List[str]] = None):
        self._lock = threading.Lock()
        self._hidden = tuple(str(value) for value in hidden or [])

    def get(self) -> Dict[str, List[str]]:
        return {"hidden": list(self._hidden)}

    def toggle(self, product_id: str) -> Dict[str, List[str]]:
        with self._lock:
            self._hidden = tuple(toggled(list(self._hidden), str(product_id)))
            return {"hidden": list(self._hidden)}


class JsonFileVisibilityStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def get(self) -> Dict[str, List[str]]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {"hidden": []}
        except (OSError, ValueError) as exc:
            logger.error("Unable to read static visibility from %s: %s", self.path, exc)
            raise StorageUnavailable(
                f"Static visibility file could not be read: {exc}"
            ) from exc

        hidden = data.get("hidden") if isinstance(data, dict) else None
        return {"hidden": [str(value) for value in hidden or []]}

    def toggle(self, product_id: str) -> Dict[str, List[str]]:
        with self._lock:
            state = {"hidden": toggled(self.get()["hidden"], str(product_id))}
            directory = os.path.dirname(self.path)
            temporary_path = f"{self.path}.tmp"
            try:
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(temporary_path, "w", encoding="utf-8") as handle:
                    json.dump(state, handle, indent=2)
                os.replace(temporary_path, self.path)
            except OSError as exc:
                logger.error(
                    "Unable to save static visibility to %s: %s", self.path, exc
                )
                raise StorageUnavailable(
                    f"Static visibility file could not be written: {exc}"
                ) from exc
            return state
