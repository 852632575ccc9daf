import base64
import logging
import os

from kubernetes import client
from kubernetes.client.rest import ApiException

log = logging.getLogger("k8s-metadata-injector")

WEBHOOK_NAME = "serve.k8s-metadata-injector.io"

SERVER_CERT_FILE = "server-cert.pem"
SERVER_KEY_FILE = "server-key.pem"
CA_CERT_FILE = "ca-cert.pem"


def cert_paths(cert_dir: str) -> tuple[str, str, str]:
    """(server cert, server key, CA cert) file paths inside cert_dir."""
    return (
        os.path.join(cert_dir, SERVER_CERT_FILE),
        os.path.join(cert_dir, SERVER_KEY_FILE),
        os.path.join(cert_dir, CA_CERT_FILE),
    )


def build_webhook(settings, ca_cert: bytes) -> client.V1MutatingWebhook:
    """Mutate Pods, Services and claims on CREATE; Services and claims on UPDATE."""
    return client.V1MutatingWebhook(
        name=WEBHOOK_NAME,
        admission_review_versions=["v1"],
        side_effects="None",
        failure_policy="Ignore",
        rules=[
            client.V1RuleWithOperations(
                operations=["CREATE"],
                api_groups=[""],
                api_versions=["v1"],
                resources=["pods", "services", "persistentvolumeclaims"],
            ),
            client.V1RuleWithOperations(
                operations=["UPDATE"],
                api_groups=[""],
                api_versions=["v1"],
                resources=["services", "persistentvolumeclaims"],
            ),
        ],
        client_config=client.AdmissionregistrationV1WebhookClientConfig(
            service=client.AdmissionregistrationV1ServiceReference(
                namespace=settings.webhook_svc_namespace,
                name=settings.webhook_svc_name,
                path=settings.webhook_path,
            ),
            ca_bundle=base64.b64encode(ca_cert).decode(),
        ),
    )


class WebhookRegistration:
    """Creates, updates and removes the MutatingWebhookConfiguration for this server."""

    def __init__(self, api: client.AdmissionregistrationV1Api, settings) -> None:
        self.api = api
        self.settings = settings
        self.config_name = settings.webhook_config_name

    def register(self) -> None:
        _, _, ca_file = cert_paths(self.settings.webhook_cert_dir)
        with open(ca_file, "rb") as f:
            ca_cert = f.read()
        webhooks = [build_webhook(self.settings, ca_cert)]

        try:
            existing = self.api.read_mutating_webhook_configuration(self.config_name)
        except ApiException as e:
            if e.status != 404:
                raise
            existing = None

        if existing is not None:
            log.info("Updating existing MutatingWebhookConfiguration %s", self.config_name)
            if existing.webhooks != webhooks:
                existing.webhooks = webhooks
                self.api.replace_mutating_webhook_configuration(self.config_name, existing)
            return

        log.info("Creating MutatingWebhookConfiguration %s", self.config_name)
        self.api.create_mutating_webhook_configuration(
            client.V1MutatingWebhookConfiguration(
                metadata=client.V1ObjectMeta(name=self.config_name),
                webhooks=webhooks,
            )
        )

    def deregister(self) -> None:
        try:
            self.api.delete_mutating_webhook_configuration(
                self.config_name, body=client.V1DeleteOptions(grace_period_seconds=0)
            )
        except ApiException as e:
            if e.status != 404:
                raise
        log.info("Webhook %s deregistered", self.config_name)
