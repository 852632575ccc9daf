"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: MIT-0
"""
import atexit
import logging
import os
import signal
import sys
import threading

import yaml
from flask import Flask
from kubernetes import client, config

from .cache import Informer
from .config import load_metadata_config, settings
from .controller import VolumeTagController
from .models import MetadataConfig, ObjectDecoder
from .mutation import AdmissionMutator
from .registration import WebhookRegistration, cert_paths
from .reporting import FailureReporter
from .routes import create_routes
from .store.redis_store import RedisStore
from .tagging import EC2Tagger
from .workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(message)s",
)
log = logging.getLogger("k8s-metadata-injector")

_testing = os.getenv("APP_ENV", getattr(settings, "app_env", "production")) == "test"

# Initialize Kubernetes clients; avoid constructing real clients in tests
if _testing:
    core = object()
    admission_api = None
else:
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    core = client.CoreV1Api()
    admission_api = client.AdmissionregistrationV1Api()

try:
    metadata_config = load_metadata_config(settings.metadata_config_file)
except (OSError, ValueError, yaml.YAMLError) as e:
    log.error("Failed to load metadata configuration: %s; nothing will be mutated", e)
    metadata_config = MetadataConfig()

datastore = None
if getattr(settings, "redis_url", ""):
    datastore = RedisStore(settings.redis_url, settings.failure_ttl_seconds)
else:
    log.info("REDIS_URL not set; failed tasks are only logged")

app = Flask(__name__)
mutator = AdmissionMutator(metadata_config, ObjectDecoder(), settings)
bp = create_routes(settings, mutator)
app.register_blueprint(bp)

_stop_event = threading.Event()
_controller_thread = None
_registration = None


def build_controller(core_api, stop_event: threading.Event):
    """Wire informers, queue, tagger and failure reporting into a VolumeTagController."""
    queue = RateLimitingQueue(
        ItemExponentialFailureRateLimiter(
            settings.retry_base_delay_seconds, settings.retry_max_delay_seconds
        )
    )
    pv_informer = Informer(
        "persistentvolumes",
        core_api.list_persistent_volume,
        stop_event,
        resync_period=settings.resync_period_seconds,
        watch_timeout=settings.watch_timeout_seconds,
    )
    pvc_informer = Informer(
        "persistentvolumeclaims",
        core_api.list_persistent_volume_claim_for_all_namespaces,
        stop_event,
        resync_period=settings.resync_period_seconds,
        watch_timeout=settings.watch_timeout_seconds,
    )
    controller = VolumeTagController(
        pv_informer,
        pvc_informer,
        EC2Tagger(settings.aws_region),
        queue=queue,
        reporter=FailureReporter(datastore, settings.failure_ttl_seconds),
        max_retries=settings.max_retries,
        tags_annotation=settings.tags_annotation,
        tag_parse_error_policy=settings.tag_parse_error_policy,
    )
    pv_informer.add_event_handler(
        on_add=controller.on_volume_add, on_update=controller.on_volume_update
    )
    pvc_informer.add_event_handler(
        on_add=controller.on_claim_add, on_update=controller.on_claim_update
    )
    return controller, [pv_informer, pvc_informer]


def _start_controller():
    if _testing:
        return

    global _controller_thread
    if _controller_thread is not None:
        return

    controller, informers = build_controller(core, _stop_event)

    def _run():
        try:
            controller.run(settings.workers, _stop_event, informers)
        except Exception:
            log.error("ebs-tagger controller stopped", exc_info=True)

    _controller_thread = threading.Thread(target=_run, name="ebs-tagger", daemon=True)
    _controller_thread.start()


def _register_webhook():
    if _testing or not settings.self_register:
        return

    global _registration
    if _registration is not None:
        return
    _registration = WebhookRegistration(admission_api, settings)
    _registration.register()


def shutdown():
    """Stop the tagger (draining in-flight tasks), then remove the webhook registration."""
    if _stop_event.is_set():
        return
    log.info("Shutting down the k8s-metadata-injector")
    _stop_event.set()
    if _controller_thread is not None:
        _controller_thread.join(timeout=60)
    if _registration is not None:
        _registration.deregister()


def _handle_signal(signum, frame):
    shutdown()
    sys.exit(0)


# Start the tagger and register the webhook eagerly in non-test envs (compatible with gunicorn)
_start_controller()
_register_webhook()
atexit.register(shutdown)

if __name__ == "__main__":
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    server_cert, server_key, _ = cert_paths(settings.webhook_cert_dir)
    log.info("Starting the k8s-metadata-injector admission webhook server")
    app.run(
        host="0.0.0.0",
        port=int(os.getenv("PORT", str(settings.port))),
        ssl_context=(server_cert, server_key),
    )
