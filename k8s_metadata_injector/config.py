import logging
import os
from dataclasses import dataclass
from typing import Literal

import yaml

from .models import MetadataConfig

TagParseErrorPolicy = Literal["fail", "discard"]

log = logging.getLogger("k8s-metadata-injector")


def _get_env(name: str, default: str) -> str:
    val = os.getenv(name)
    return val if val is not None and val != "" else default


def _parse_int(name: str, default: int) -> int:
    val = _get_env(name, str(default))
    try:
        return int(val)
    except Exception:
        return default


def _parse_float(name: str, default: float) -> float:
    val = _get_env(name, str(default))
    try:
        return float(val)
    except Exception:
        return default


def _parse_bool(name: str, default: bool) -> bool:
    return _get_env(name, "true" if default else "false").lower() in ("1", "true", "yes", "on")


def _parse_tag_policy(
    name: str, default: TagParseErrorPolicy = "fail"
) -> TagParseErrorPolicy:
    val = _get_env(name, default).lower()
    return val if val in ("fail", "discard") else default


@dataclass(frozen=True)
class Settings:
    app_env: str = "production"
    port: int = 8443

    # Webhook server and self-registration
    webhook_cert_dir: str = "/etc/webhook/certs/"
    webhook_config_name: str = "k8s-metadata-injector"
    webhook_svc_namespace: str = "kube-system"
    webhook_svc_name: str = "k8s-metadata-injector"
    webhook_path: str = "/serve"
    self_register: bool = True
    metadata_config_file: str = "/etc/webhook/config/metadataconfig.yaml"

    # EBS tagger
    workers: int = 2
    max_retries: int = 5
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 1000.0
    resync_period_seconds: int = 1800
    watch_timeout_seconds: int = 300
    tag_parse_error_policy: TagParseErrorPolicy = "fail"
    aws_region: str = ""

    # Failure records
    redis_url: str = ""
    failure_ttl_seconds: int = 86400

    # Keys (labels/annotations)
    tags_annotation: str = "ebs-tagger.kubernetes.io/ebs-additional-resource-tags"
    skip_annotation: str = "k8s-metadata-injector.kubernetes.io/skip"
    status_annotation: str = "k8s-metadata-injector.kubernetes.io/status"
    ignored_namespaces: tuple[str, ...] = ("kube-system", "kube-public")


def load() -> Settings:
    return Settings(
        app_env=_get_env("APP_ENV", "production"),
        port=_parse_int("PORT", 8443),
        webhook_cert_dir=_get_env("WEBHOOK_CERT_DIR", "/etc/webhook/certs/"),
        webhook_config_name=_get_env("WEBHOOK_CONFIG_NAME", "k8s-metadata-injector"),
        webhook_svc_namespace=_get_env("WEBHOOK_SVC_NAMESPACE", "kube-system"),
        webhook_svc_name=_get_env("WEBHOOK_SVC_NAME", "k8s-metadata-injector"),
        webhook_path=_get_env("WEBHOOK_PATH", "/serve"),
        self_register=_parse_bool("SELF_REGISTER", True),
        metadata_config_file=_get_env(
            "METADATA_CONFIG_FILE", "/etc/webhook/config/metadataconfig.yaml"
        ),
        workers=max(1, _parse_int("WORKERS", 2)),
        max_retries=max(0, _parse_int("MAX_RETRIES", 5)),
        retry_base_delay_seconds=_parse_float("RETRY_BASE_DELAY_SECONDS", 0.005),
        retry_max_delay_seconds=_parse_float("RETRY_MAX_DELAY_SECONDS", 1000.0),
        resync_period_seconds=_parse_int("RESYNC_PERIOD_SECONDS", 1800),
        watch_timeout_seconds=_parse_int("WATCH_TIMEOUT_SECONDS", 300),
        tag_parse_error_policy=_parse_tag_policy("TAG_PARSE_ERROR_POLICY", "fail"),
        aws_region=_get_env("AWS_REGION", ""),
        redis_url=_get_env("REDIS_URL", ""),
        failure_ttl_seconds=_parse_int("FAILURE_TTL_SECONDS", 86400),
    )


def load_metadata_config(path: str) -> MetadataConfig:
    """Read the kind -> namespace -> {annotations, labels} YAML file."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    cfg = MetadataConfig.from_dict(data)
    log.info(
        "Loaded metadata config from %s (pods=%s services=%s pvcs=%s)",
        path,
        cfg.namespaces("Pod"),
        cfg.namespaces("Service"),
        cfg.namespaces("PersistentVolumeClaim"),
    )
    return cfg


# Singleton settings for app usage (optional in tests)
settings: Settings = load()
