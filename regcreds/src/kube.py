from __future__ import annotations

import base64
import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api, V1LocalObjectReference, V1ObjectMeta, V1Secret
from kubernetes.config.config_exception import ConfigException

from regcreds.src.pullsecret import SecretPayload

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def secret_body(payload: SecretPayload) -> V1Secret:
    """Convert a materialized payload into a ``V1Secret``.

    The API expects base64 text in ``data``; an empty payload becomes a
    secret with neither data nor type.
    """
    data = {
        key: base64.b64encode(value).decode("ascii") for key, value in payload.data.items()
    }
    return V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=V1ObjectMeta(name=payload.name),
        data=data or None,
        type=payload.type_tag or None,
    )


def pull_secret_reference(name: str) -> V1LocalObjectReference:
    return V1LocalObjectReference(name=name)
