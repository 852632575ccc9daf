import logging
import time

from .models import Task
from .store.interface import KeyValueStore

log = logging.getLogger("k8s-metadata-injector")


class FailureReporter:
    """Where tasks go when they exhaust their retries: the log, and Redis when configured."""

    def __init__(self, datastore: KeyValueStore | None = None, ttl_seconds: int = 86400) -> None:
        self.datastore = datastore
        self.ttl_seconds = ttl_seconds

    def report(self, task: Task, error: BaseException, attempts: int) -> None:
        log.error(
            "Error processing %s (giving up after %d attempts): %s", task.key, attempts, error
        )
        if self.datastore is None:
            return
        try:
            self.datastore.set(
                f"failed:{task.key}",
                {
                    "key": task.key,
                    "action": task.action,
                    "error": str(error),
                    "attempts": attempts,
                    "failed_at": time.time(),
                },
                ttl_seconds=self.ttl_seconds,
            )
        except Exception as e:
            log.error("Could not record failure for %s: %s", task.key, e)

    def clear(self, task: Task) -> None:
        if self.datastore is None:
            return
        try:
            self.datastore.delete(f"failed:{task.key}")
        except Exception as e:
            log.warning("Could not clear failure record for %s: %s", task.key, e)

    def get(self, key: str) -> dict | None:
        if self.datastore is None:
            return None
        cached = self.datastore.get(f"failed:{key}")
        return None if cached is None else cached[1]
