"""EBS tagger: tags EBS volumes with the tags annotated on their bound claims."""

import logging
import threading
from typing import Any, Iterable

from .cache import Informer, wait_for_cache_sync
from .errors import TagParseError
from .helpers import (
    TagSet,
    extract_volume_id,
    is_ebs_volume,
    object_key,
    parse_tags,
    resource_version,
    volume_identifier,
)
from .models import PERSISTENT_VOLUME_CLAIM, Task, VolumeRecord
from .reporting import FailureReporter
from .tagging import TagCreator
from .workqueue import RateLimitingQueue

log = logging.getLogger("k8s-metadata-injector")

CREATE = "CREATE"
UPDATE = "UPDATE"


class VolumeTagController:
    def __init__(
        self,
        pv_lookup: Any,
        pvc_lookup: Any,
        tagger: TagCreator,
        queue: RateLimitingQueue | None = None,
        reporter: FailureReporter | None = None,
        max_retries: int = 5,
        tags_annotation: str = "ebs-tagger.kubernetes.io/ebs-additional-resource-tags",
        tag_parse_error_policy: str = "fail",
    ) -> None:
        """
        Args:
            pv_lookup: anything with get_by_key(key) -> (obj, exists) for PersistentVolumes
            pvc_lookup: the same for PersistentVolumeClaims
            tagger: applies tags to a volume ID
            queue: work queue; a fresh RateLimitingQueue by default
            reporter: receives tasks that exhausted max_retries
            tag_parse_error_policy: "fail" retries a malformed annotation like
                any other error, "discard" skips the volume with a warning
        """
        self.pv_lookup = pv_lookup
        self.pvc_lookup = pvc_lookup
        self.tagger = tagger
        self.queue = queue or RateLimitingQueue()
        self.reporter = reporter or FailureReporter()
        self.max_retries = max_retries
        self.tags_annotation = tags_annotation
        self.tag_parse_error_policy = tag_parse_error_policy

    # Event handlers

    def on_volume_add(self, pv: Any) -> None:
        if is_ebs_volume(pv):
            self.queue.add(Task(object_key(pv), CREATE))

    def on_volume_update(self, old: Any, new: Any) -> None:
        # Periodic resyncs deliver the same object again
        if resource_version(old) == resource_version(new):
            return
        if is_ebs_volume(new):
            self.queue.add(Task(object_key(new), UPDATE))

    def on_claim_add(self, pvc: Any) -> None:
        self._enqueue_bound_volume(pvc)

    def on_claim_update(self, old: Any, new: Any) -> None:
        if resource_version(old) == resource_version(new):
            return
        if self._tags_annotation_of(old) != self._tags_annotation_of(new):
            self._enqueue_bound_volume(new)

    def _enqueue_bound_volume(self, pvc: Any) -> None:
        volume_name = getattr(pvc.spec, "volume_name", None) if pvc.spec else None
        if volume_name and self._tags_annotation_of(pvc) is not None:
            self.queue.add(Task(volume_name, UPDATE))

    def _tags_annotation_of(self, pvc: Any) -> str | None:
        return (pvc.metadata.annotations or {}).get(self.tags_annotation)

    # Workers

    def run_worker(self) -> None:
        while self.process_next():
            pass

    def process_next(self) -> bool:
        """Process one task from the queue. Returns False once the queue shuts down."""
        task, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            self.process(task)
        except Exception as e:
            attempts = self.queue.num_requeues(task)
            if attempts < self.max_retries:
                log.info("Error processing %s (will retry): %s", task.key, e)
                self.queue.add_rate_limited(task)
            else:
                self.queue.forget(task)
                self.reporter.report(task, e, attempts + 1)
        else:
            # No error, reset the rate limit counters and any earlier failure record
            self.queue.forget(task)
            self.reporter.clear(task)
        finally:
            self.queue.done(task)

        return True

    def process(self, task: Task) -> None:
        record = self.resolve_volume(task.key)
        if record is None:
            return

        pvc, exists = self.pvc_lookup.get_by_key(record.claim_key)
        if not exists:
            log.debug("Claim %s for volume %s not found; skipping", record.claim_key, task.key)
            return

        tags = self.claim_tags(pvc)
        if not tags:
            return

        self.tagger.create_tags(record.volume_id, tags)
        log.info("EBS tags created on %s for %s: %s", record.volume_id, record.claim_key, tags)

    def resolve_volume(self, key: str) -> VolumeRecord | None:
        """Read the volume ID and claim of a cached PV. None means nothing to do."""
        pv, exists = self.pv_lookup.get_by_key(key)
        if not exists:
            log.debug("PersistentVolume %s no longer exists; skipping", key)
            return None

        identifier = volume_identifier(pv)
        if not identifier:
            return None
        volume_id = extract_volume_id(identifier)
        if not volume_id:
            return None

        claim_ref = pv.spec.claim_ref
        if claim_ref is None or claim_ref.kind != PERSISTENT_VOLUME_CLAIM:
            return None

        return VolumeRecord(
            volume_id=volume_id,
            claim_namespace=claim_ref.namespace or "",
            claim_name=claim_ref.name or "",
        )

    def claim_tags(self, pvc: Any) -> TagSet:
        annotation = self._tags_annotation_of(pvc)
        if annotation is None or not annotation.strip():
            return []
        try:
            return parse_tags(annotation)
        except TagParseError as e:
            if self.tag_parse_error_policy == "discard":
                log.warning("Invalid annotation on %s, discarding tags: %s", object_key(pvc), e)
                return []
            raise

    def run(
        self,
        workers: int,
        stop_event: threading.Event,
        informers: Iterable[Informer] = (),
        drain_timeout: float | None = 30,
    ) -> None:
        informers = list(informers)
        log.info("Starting ebs-tagger controller")
        for informer in informers:
            if not informer.is_alive():
                informer.start()

        log.info("Waiting for informer caches to sync")
        if not wait_for_cache_sync(stop_event, *informers):
            self.queue.shut_down()
            raise RuntimeError("failed to wait for caches to sync")

        log.info("Starting %d workers", workers)
        threads = [
            threading.Thread(target=self.run_worker, name=f"ebs-tagger-worker-{i}", daemon=True)
            for i in range(workers)
        ]
        for t in threads:
            t.start()
        log.info("Started workers")

        stop_event.wait()
        log.info("Shutting down workers")
        self.queue.shut_down_with_drain(drain_timeout)
        for informer in informers:
            informer.stop()
        for t in threads:
            t.join(timeout=1)
