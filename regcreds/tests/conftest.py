from __future__ import annotations

import base64
import json
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException


class FakeCoreApi:
    """In-memory stand-in for the CoreV1Api calls the reconciler makes.

    ``fail`` maps a method name to the HTTP status it should raise with.
    """

    def __init__(
        self,
        namespaces: tuple[str, ...] = ("team-a",),
        image_pull_secrets: dict[str, list[Any]] | None = None,
        missing_service_accounts: set[str] | None = None,
        fail: dict[str, int] | None = None,
    ) -> None:
        self.secrets: dict[tuple[str, str], Any] = {}
        self.service_accounts: dict[str, SimpleNamespace] = {}
        missing = missing_service_accounts or set()
        for namespace in namespaces:
            if namespace in missing:
                continue
            self.service_accounts[namespace] = SimpleNamespace(
                metadata=SimpleNamespace(name="default", namespace=namespace),
                image_pull_secrets=list((image_pull_secrets or {}).get(namespace, [])),
            )
        self.fail = dict(fail or {})
        self.calls: list[tuple[str, str]] = []

    def _maybe_fail(self, method: str) -> None:
        status = self.fail.get(method)
        if status is not None:
            raise ApiException(status=status, reason="boom")

    def read_namespaced_secret(self, name: str, namespace: str) -> Any:
        self.calls.append(("read_secret", namespace))
        self._maybe_fail("read_namespaced_secret")
        if (namespace, name) not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        return self.secrets[(namespace, name)]

    def create_namespaced_secret(self, namespace: str, body: Any) -> Any:
        self.calls.append(("create_secret", namespace))
        self._maybe_fail("create_namespaced_secret")
        self.secrets[(namespace, body.metadata.name)] = body
        return body

    def replace_namespaced_secret(self, name: str, namespace: str, body: Any) -> Any:
        self.calls.append(("replace_secret", namespace))
        self._maybe_fail("replace_namespaced_secret")
        self.secrets[(namespace, name)] = body
        return body

    def read_namespaced_service_account(self, name: str, namespace: str) -> Any:
        self.calls.append(("read_service_account", namespace))
        self._maybe_fail("read_namespaced_service_account")
        if namespace not in self.service_accounts:
            raise ApiException(status=404, reason="Not Found")
        return self.service_accounts[namespace]

    def replace_namespaced_service_account(self, name: str, namespace: str, body: Any) -> Any:
        self.calls.append(("replace_service_account", namespace))
        self._maybe_fail("replace_namespaced_service_account")
        self.service_accounts[namespace] = body
        return body

    def reference_names(self, namespace: str) -> list[str]:
        refs = self.service_accounts[namespace].image_pull_secrets or []
        return [ref["name"] if isinstance(ref, dict) else ref.name for ref in refs]

    def secret_document(self, namespace: str, name: str, key: str) -> Any:
        encoded = self.secrets[(namespace, name)].data[key]
        return json.loads(base64.b64decode(encoded))


@pytest.fixture
def fake_core_api_class() -> type[FakeCoreApi]:
    return FakeCoreApi
