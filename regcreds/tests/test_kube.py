from __future__ import annotations

import base64
from types import SimpleNamespace
from unittest.mock import patch

from regcreds.src.kube import (
    build_core_client,
    load_kube_configuration,
    pull_secret_reference,
    secret_body,
)
from regcreds.src.pullsecret import AuthToken, SecretEncoding, materialize_secret


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("regcreds.src.kube.config.load_incluster_config") as mock_incluster,
        patch("regcreds.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "regcreds.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("regcreds.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_core_client() -> None:
    with patch("regcreds.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        core = build_core_client()

    assert core.name == "core"


def test_secret_body_base64_encodes_payload() -> None:
    payload = materialize_secret(
        [AuthToken(access_token="tok", endpoint="https://registry")],
        SecretEncoding.JSON,
        "awsecr-cred",
    )

    body = secret_body(payload)

    assert body.metadata.name == "awsecr-cred"
    assert body.type == "kubernetes.io/dockerconfigjson"
    assert base64.b64decode(body.data[".dockerconfigjson"]) == payload.data[".dockerconfigjson"]


def test_secret_body_for_empty_payload_has_no_data_or_type() -> None:
    body = secret_body(materialize_secret([], SecretEncoding.LEGACY, "gcr-cred"))

    assert body.metadata.name == "gcr-cred"
    assert body.data is None
    assert body.type is None


def test_pull_secret_reference_carries_name() -> None:
    assert pull_secret_reference("awsecr-cred").name == "awsecr-cred"
