import base64
import json
import logging
from typing import Any

from .errors import TagParseError, VolumeIDError

log = logging.getLogger("k8s-metadata-injector")

EBS_CSI_DRIVER = "ebs.csi.aws.com"

TagSet = list[tuple[str, str]]


def make_admission_response(
    uid: str,
    allowed: bool = True,
    patch: list[dict[str, Any]] | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    """Return the AdmissionReview the webhook sends to K8s to allow, deny or patch an object."""
    resp: dict[str, Any] = {"uid": uid, "allowed": allowed}

    if patch:
        resp["patchType"] = "JSONPatch"
        resp["patch"] = base64.b64encode(json.dumps(patch).encode()).decode()

    if message:
        resp["status"] = {"message": message}

    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "response": resp,
    }


def parse_tags(annotation: str) -> TagSet:
    """
    Parse a tag annotation such as "env=prod,team" into ordered (key, value) pairs.
    A bare key gets an empty value. The first occurrence of a key wins.
    Raises TagParseError for an entry with more than one "=" or an empty key.
    """
    tags: TagSet = []
    seen: set[str] = set()

    for entry in annotation.strip().split(","):
        parts = entry.strip().split("=")
        if len(parts) == 2:
            key, value = parts[0].strip(), parts[1].strip()
        elif len(parts) == 1:
            key, value = parts[0].strip(), ""
        else:
            raise TagParseError(annotation, entry.strip())

        if not key:
            raise TagParseError(annotation, entry.strip())

        if key in seen:
            log.debug("Duplicate tag key %r in %r; keeping the first value", key, annotation)
            continue
        seen.add(key)
        tags.append((key, value))

    return tags


def extract_volume_id(identifier: str) -> str:
    """
    Return the EBS volume ID from a backend identifier.
    Accepts a bare ID ("vol-123") or "aws://<zone>/<id>" (4 "/"-separated segments).
    """
    segments = identifier.split("/")
    if len(segments) == 1:
        return identifier
    if len(segments) == 4:
        return segments[3]
    raise VolumeIDError(identifier)


def volume_identifier(pv: Any) -> str | None:
    """Backend identifier of an EBS-backed PersistentVolume, or None for other backends."""
    spec = getattr(pv, "spec", None)
    if spec is None:
        return None

    ebs = getattr(spec, "aws_elastic_block_store", None)
    if ebs is not None:
        return ebs.volume_id or ""

    csi = getattr(spec, "csi", None)
    if csi is not None and csi.driver == EBS_CSI_DRIVER:
        return csi.volume_handle or ""

    return None


def is_ebs_volume(pv: Any) -> bool:
    return volume_identifier(pv) is not None


def object_key(obj: Any) -> str:
    """Cache key of a typed Kubernetes object: "namespace/name", or "name" when cluster-scoped."""
    meta = obj.metadata
    if meta.namespace:
        return f"{meta.namespace}/{meta.name}"
    return meta.name


def resource_version(obj: Any) -> str | None:
    meta = getattr(obj, "metadata", None)
    return getattr(meta, "resource_version", None) if meta is not None else None
