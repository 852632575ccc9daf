import logging
from typing import Any, Iterable

from .errors import DecodeError
from .helpers import make_admission_response
from .models import (
    AdmissionRequestModel,
    MetadataConfig,
    MetadataSpec,
    ObjectDecoder,
    ObjectMetaModel,
    merge_metadata,
)

log = logging.getLogger("k8s-metadata-injector")

SKIP_VALUES = ("y", "yes", "true", "on")

# Reasons returned by mutation_required
REQUIRED = "required"
IGNORED_NAMESPACE = "ignored-namespace"
NOT_CONFIGURED = "not-configured"
OPTED_OUT = "opted-out"


def mutation_required(
    metadata: ObjectMetaModel,
    spec: MetadataSpec | None,
    ignored_namespaces: Iterable[str],
    skip_annotation: str,
) -> tuple[bool, str]:
    """
    Decide whether the object gets mutated. Checks run in this order and the
    first match wins: system namespace, kind+namespace not configured, opt-out
    annotation on the object.
    Returns (required, reason).
    """
    if metadata.namespace in ignored_namespaces:
        return False, IGNORED_NAMESPACE

    if spec is None:
        return False, NOT_CONFIGURED

    if metadata.annotations.get(skip_annotation, "").lower() in SKIP_VALUES:
        return False, OPTED_OUT

    return True, REQUIRED


def create_patch(
    metadata: ObjectMetaModel, spec: MetadataSpec, annotations: dict[str, str]
) -> list[dict[str, Any]]:
    """
    Build the JSONPatch for an object. Each "add" replaces the whole map, so the
    object's existing keys are merged in first and always keep their values.
    """
    added = dict(annotations)
    added.update(spec.annotations)

    patch = [
        {
            "op": "add",
            "path": "/metadata/annotations",
            "value": merge_metadata(metadata.annotations, added),
        }
    ]

    if spec.labels:
        patch.append(
            {
                "op": "add",
                "path": "/metadata/labels",
                "value": merge_metadata(metadata.labels, spec.labels),
            }
        )

    return patch


class AdmissionMutator:
    """Turns one admission request into an AdmissionReview response."""

    def __init__(
        self,
        metadata_config: MetadataConfig,
        decoder: ObjectDecoder,
        settings: Any,
    ) -> None:
        self.metadata_config = metadata_config
        self.decoder = decoder
        self.ignored_namespaces = tuple(settings.ignored_namespaces)
        self.skip_annotation = settings.skip_annotation
        self.status_annotation = settings.status_annotation

    def mutate(self, req: AdmissionRequestModel) -> dict[str, Any]:
        kind = req.kind.kind

        try:
            metadata = self.decoder.decode(kind, req.obj)
        except DecodeError as e:
            log.error("Could not decode %s object: %s", kind, e)
            return make_admission_response(req.uid, False, message=str(e))

        if metadata is None:
            log.info("Unsupported kind %r for uid=%s; allowing without mutation", kind, req.uid)
            return make_admission_response(req.uid, True)

        log.info(
            "AdmissionReview for Kind=%s Namespace=%s Name=%s (%s) UID=%s Operation=%s",
            kind,
            req.namespace,
            req.name,
            metadata.display_name(),
            req.uid,
            req.operation,
        )

        # Namespace is not always set on the object itself, e.g. pods created by a controller
        if not metadata.namespace:
            metadata.namespace = req.namespace

        spec = self.metadata_config.lookup(kind, metadata.namespace)
        required, reason = mutation_required(
            metadata, spec, self.ignored_namespaces, self.skip_annotation
        )
        if not required:
            log.info(
                "Skipping mutation for %s/%s due to policy check: %s",
                metadata.namespace,
                metadata.display_name(),
                reason,
            )
            return make_admission_response(req.uid, True)

        log.info(
            "Mutation policy for %s/%s: status=%r required=True",
            metadata.namespace,
            metadata.display_name(),
            metadata.annotations.get(self.status_annotation, ""),
        )

        patch = create_patch(metadata, spec, {self.status_annotation: "injected"})
        log.info("AdmissionResponse for uid=%s: patch=%s", req.uid, patch)
        return make_admission_response(req.uid, True, patch)
