from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from regcreds.src.kube import pull_secret_reference, secret_body
from regcreds.src.metrics import METRICS
from regcreds.src.pullsecret import SecretPayload

DEFAULT_SERVICE_ACCOUNT = "default"


class ReconciliationError(RuntimeError):
    """Raised when a namespace cannot be converged to the refreshed pull secret."""

    def __init__(self, namespace: str, secret_name: str, message: str) -> None:
        super().__init__(f"namespace {namespace}, secret {secret_name}: {message}")
        self.namespace = namespace
        self.secret_name = secret_name


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of converging one secret into one namespace."""

    namespace: str
    secret_name: str
    secret_operation: str
    reference_added: bool


def _reference_name(reference: Any) -> str | None:
    if isinstance(reference, dict):
        return reference.get("name")
    return getattr(reference, "name", None)


def merge_pull_secret_references(
    references: list[Any] | None, secret_name: str
) -> tuple[list[Any], bool]:
    """Return *references* with exactly one entry named *secret_name*.

    The first matching entry is replaced in place; further entries with the
    same name are dropped.  Everything else keeps its position and value.
    The boolean is ``True`` when the reference had to be appended.
    """
    merged: list[Any] = []
    found = False
    for reference in references or []:
        if _reference_name(reference) != secret_name:
            merged.append(reference)
            continue
        if not found:
            merged.append(pull_secret_reference(secret_name))
            found = True

    if not found:
        merged.append(pull_secret_reference(secret_name))
    return merged, not found


class NamespaceReconciler:
    """Writes a pull secret into a namespace and links it from the default service account.

    Each call is idempotent: the secret is created or fully replaced, and
    the service account's ``imagePullSecrets`` list ends up holding the
    managed name exactly once while references to any other secrets are
    left untouched.  Failures are raised as :class:`ReconciliationError`;
    there is no retry at this layer.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        service_account_name: str = DEFAULT_SERVICE_ACCOUNT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.service_account_name = service_account_name
        self.logger = logger or logging.getLogger(__name__)

    def _upsert_secret(self, namespace: str, payload: SecretPayload) -> str:
        body = secret_body(payload)
        self.logger.debug("Checking for secret %s in namespace %s", payload.name, namespace)
        try:
            self.core_api.read_namespaced_secret(name=payload.name, namespace=namespace)
        except ApiException as exc:
            if exc.status != 404:
                raise ReconciliationError(
                    namespace, payload.name, f"could not read Secret (status={exc.status})"
                ) from exc
            self.logger.debug(
                "Secret %s not found in namespace %s; creating it", payload.name, namespace
            )
            try:
                self.core_api.create_namespaced_secret(namespace=namespace, body=body)
            except ApiException as create_exc:
                raise ReconciliationError(
                    namespace, payload.name, f"could not create Secret (status={create_exc.status})"
                ) from create_exc
            self.logger.info("Created secret %s in namespace %s", payload.name, namespace)
            return "created"

        try:
            self.core_api.replace_namespaced_secret(
                name=payload.name, namespace=namespace, body=body
            )
        except ApiException as exc:
            raise ReconciliationError(
                namespace, payload.name, f"could not update Secret (status={exc.status})"
            ) from exc
        self.logger.info("Updated secret %s in namespace %s", payload.name, namespace)
        return "updated"

    def _link_service_account(self, namespace: str, secret_name: str) -> bool:
        try:
            service_account = self.core_api.read_namespaced_service_account(
                name=self.service_account_name, namespace=namespace
            )
        except ApiException as exc:
            raise ReconciliationError(
                namespace,
                secret_name,
                f"could not get ServiceAccount {self.service_account_name} (status={exc.status})",
            ) from exc

        merged, added = merge_pull_secret_references(
            service_account.image_pull_secrets, secret_name
        )
        service_account.image_pull_secrets = merged

        self.logger.info(
            "Updating ServiceAccount %s in namespace %s", self.service_account_name, namespace
        )
        try:
            self.core_api.replace_namespaced_service_account(
                name=self.service_account_name, namespace=namespace, body=service_account
            )
        except ApiException as exc:
            raise ReconciliationError(
                namespace,
                secret_name,
                f"could not update ServiceAccount {self.service_account_name} (status={exc.status})",
            ) from exc
        return added

    def reconcile(self, namespace: str, payload: SecretPayload) -> ReconcileResult:
        try:
            operation = self._upsert_secret(namespace, payload)
            added = self._link_service_account(namespace, payload.name)
        except ReconciliationError:
            METRICS.reconcile_errors_total.inc()
            self.logger.exception(
                "Failed to reconcile secret %s in namespace %s", payload.name, namespace
            )
            raise

        METRICS.secrets_reconciled_total.labels(operation=operation).inc()
        return ReconcileResult(
            namespace=namespace,
            secret_name=payload.name,
            secret_operation=operation,
            reference_added=added,
        )
