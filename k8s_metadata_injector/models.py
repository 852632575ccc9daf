"""
Minimal models for the objects this process reads and writes.

Admission objects are parsed into the handful of metadata fields the injector
needs and everything else is ignored, so that new Kubernetes fields don't
break decoding. Cached PersistentVolumes and claims stay as the typed
`kubernetes.client` models the watch returns.

References:
- AdmissionReview request/response shape:
  https://kubernetes.io/docs/reference/access-authn-authz/extensible-admission-controllers/#request-and-response
- ObjectMeta (meta/v1) API reference:
  https://kubernetes.io/docs/reference/generated/kubernetes-api/latest/#objectmeta-v1-meta
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from .errors import DecodeError

POD = "Pod"
SERVICE = "Service"
PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"

SUPPORTED_KINDS = (POD, SERVICE, PERSISTENT_VOLUME_CLAIM)

# Keys accepted in the metadata config file for each kind
CONFIG_KIND_KEYS = {
    "pod": POD,
    "service": SERVICE,
    "persistentVolumeClaim": PERSISTENT_VOLUME_CLAIM,
    POD: POD,
    SERVICE: SERVICE,
    PERSISTENT_VOLUME_CLAIM: PERSISTENT_VOLUME_CLAIM,
}


def _string_map(value: Any, where: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(f"{where}: expected an object, got {type(value).__name__}")
    out = {}
    for k, v in value.items():
        if not isinstance(v, str):
            raise DecodeError(f"{where}.{k}: expected a string, got {type(v).__name__}")
        out[str(k)] = v
    return out


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError(f"{where}: expected a string, got {type(value).__name__}")
    return value


@dataclass
class ObjectMetaModel:
    name: str = ""
    namespace: str = ""
    generate_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Any) -> "ObjectMetaModel":
        if d is None:
            return ObjectMetaModel()
        if not isinstance(d, dict):
            raise DecodeError(f"metadata: expected an object, got {type(d).__name__}")
        return ObjectMetaModel(
            name=_string(d.get("name"), "metadata.name"),
            namespace=_string(d.get("namespace"), "metadata.namespace"),
            generate_name=_string(d.get("generateName"), "metadata.generateName"),
            labels=_string_map(d.get("labels"), "metadata.labels"),
            annotations=_string_map(d.get("annotations"), "metadata.annotations"),
        )

    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.generate_name:
            return self.generate_name + "***** (actual name not yet known)"
        return ""


def _decode_metadata(kind: str) -> Callable[[Any], ObjectMetaModel]:
    def decode(raw: Any) -> ObjectMetaModel:
        if not isinstance(raw, dict):
            raise DecodeError(f"cannot decode {kind}: expected an object, got {type(raw).__name__}")
        if "spec" in raw and raw["spec"] is not None and not isinstance(raw["spec"], dict):
            raise DecodeError(f"cannot decode {kind}: spec must be an object")
        return ObjectMetaModel.from_dict(raw.get("metadata"))

    return decode


class ObjectDecoder:
    """Decodes raw admission objects of the supported kinds into their metadata.

    The kind table is fixed when the decoder is built; pass one instance to the
    mutator instead of sharing a module-level registry.
    """

    def __init__(self, kinds: tuple[str, ...] = SUPPORTED_KINDS) -> None:
        self._decoders: Mapping[str, Callable[[Any], ObjectMetaModel]] = MappingProxyType(
            {kind: _decode_metadata(kind) for kind in kinds}
        )

    def decode(self, kind: str, raw: Any) -> Optional[ObjectMetaModel]:
        """Return the object's metadata, or None when the kind is not supported.

        Raises DecodeError when a supported kind cannot be decoded.
        """
        decoder = self._decoders.get(kind)
        if decoder is None:
            return None
        return decoder(raw)


@dataclass(frozen=True)
class GroupVersionKind:
    group: str = ""
    version: str = ""
    kind: str = ""

    @staticmethod
    def from_dict(d: Any) -> "GroupVersionKind":
        if not isinstance(d, dict):
            return GroupVersionKind()
        return GroupVersionKind(
            group=str(d.get("group", "")),
            version=str(d.get("version", "")),
            kind=str(d.get("kind", "")),
        )


@dataclass
class AdmissionRequestModel:
    uid: str
    kind: GroupVersionKind
    namespace: str = ""
    name: str = ""
    operation: str = "CREATE"
    obj: Any = None

    @staticmethod
    def from_dict(d: Any) -> "AdmissionRequestModel":
        if not isinstance(d, dict):
            raise DecodeError("AdmissionReview request must be an object")
        return AdmissionRequestModel(
            uid=str(d.get("uid", "")),
            kind=GroupVersionKind.from_dict(d.get("kind")),
            namespace=str(d.get("namespace") or ""),
            name=str(d.get("name") or ""),
            operation=str(d.get("operation", "CREATE")),
            obj=d.get("object"),
        )


@dataclass
class AdmissionReviewModel:
    request: AdmissionRequestModel

    @staticmethod
    def from_dict(d: Any) -> "AdmissionReviewModel":
        if not isinstance(d, dict):
            raise DecodeError("AdmissionReview must be a JSON object")
        req_raw = d.get("request")
        if req_raw is None:
            raise DecodeError("AdmissionReview has no request")
        return AdmissionReviewModel(request=AdmissionRequestModel.from_dict(req_raw))


@dataclass(frozen=True)
class MetadataSpec:
    annotations: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Any, where: str = "") -> "MetadataSpec":
        # Values must be YAML strings; unquoted `true` or `42` is rejected
        d = d if isinstance(d, dict) else {}
        prefix = f"{where}." if where else ""
        return MetadataSpec(
            annotations=MappingProxyType(
                _string_map(d.get("annotations"), f"{prefix}annotations")
            ),
            labels=MappingProxyType(_string_map(d.get("labels"), f"{prefix}labels")),
        )


def merge_metadata(target: Mapping[str, str] | None, added: Mapping[str, str]) -> dict[str, str]:
    """Return target plus the keys of added it does not have yet. Existing keys win."""
    merged = dict(target or {})
    for key, value in added.items():
        merged.setdefault(key, value)
    return merged


class MetadataConfig:
    """Read-only kind -> namespace -> MetadataSpec table."""

    def __init__(self, kinds: Mapping[str, Mapping[str, MetadataSpec]] | None = None) -> None:
        self._kinds = MappingProxyType(
            {kind: MappingProxyType(dict(namespaces)) for kind, namespaces in (kinds or {}).items()}
        )

    @staticmethod
    def from_dict(d: Any) -> "MetadataConfig":
        if d is None:
            return MetadataConfig()
        if not isinstance(d, dict):
            raise ValueError("metadata config must be a mapping of kind to namespaces")
        kinds: dict[str, dict[str, MetadataSpec]] = {}
        for key, namespaces in d.items():
            kind = CONFIG_KIND_KEYS.get(key)
            if kind is None or not isinstance(namespaces, dict):
                continue
            target = kinds.setdefault(kind, {})
            for ns, spec in namespaces.items():
                target[str(ns)] = MetadataSpec.from_dict(spec, f"{key}.{ns}")
        return MetadataConfig(kinds)

    def lookup(self, kind: str, namespace: str) -> MetadataSpec | None:
        return self._kinds.get(kind, {}).get(namespace)

    def namespaces(self, kind: str) -> list[str]:
        return sorted(self._kinds.get(kind, {}))


@dataclass(frozen=True)
class Task:
    # Queue identity is the key alone; action is informational only.
    key: str
    action: str = field(default="CREATE", compare=False)


@dataclass(frozen=True)
class VolumeRecord:
    volume_id: str
    claim_namespace: str
    claim_name: str

    @property
    def claim_key(self) -> str:
        return f"{self.claim_namespace}/{self.claim_name}"
