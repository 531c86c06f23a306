from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from regcreds.src.metrics import METRICS
from regcreds.src.providers import TokenProvider
from regcreds.src.pullsecret import (
    AuthToken,
    MaterializationError,
    SecretPayload,
    materialize_secret,
)
from regcreds.src.reconcile import NamespaceReconciler, ReconcileResult
from regcreds.src.retry import RetryConfig, RetryPolicy, new_retry_policy

SYSTEM_NAMESPACE = "kube-system"


@dataclass(frozen=True)
class TokenOutcome:
    """Tokens collected from one provider during one refresh cycle."""

    provider: str
    tokens: tuple[AuthToken, ...]
    attempts: int
    succeeded: bool


@dataclass(frozen=True)
class GeneratedSecret:
    payload: SecretPayload
    provider: str
    succeeded: bool
    attempts: int = 1


@dataclass(frozen=True)
class RefreshResult:
    """Immutable record of one namespace refresh cycle."""

    namespace: str
    skipped: bool
    reconciled: tuple[ReconcileResult, ...] = ()
    abandoned_providers: tuple[str, ...] = ()


class RefreshOrchestrator:
    """Runs every registered provider and converges a namespace to the fresh secrets.

    One call to :meth:`refresh_namespace` is one refresh cycle:

    1. Excluded namespaces (and ``kube-system`` when ``skip_system_namespace``
       is set) are left alone.
    2. Each provider is invoked up to ``max_retries + 1`` times, waiting
       between attempts as dictated by a retry policy built fresh for the
       cycle and reset per provider.  A policy that signals stop, or running
       out of attempts, abandons that provider for this cycle only.
    3. Every provider's tokens are materialized into a secret payload.
       Payloads that fail to encode are dropped with an error log.
    4. Payloads from providers that produced tokens are reconciled in
       registration order.  An abandoned provider contributes no change, so
       the namespace keeps its previous credentials.  The first
       :class:`~regcreds.src.reconcile.ReconciliationError` stops the cycle
       and propagates to the caller.
    """

    def __init__(
        self,
        providers: Mapping[str, TokenProvider],
        reconciler: NamespaceReconciler,
        retry_config: RetryConfig,
        excluded_namespaces: Iterable[str] = (),
        skip_system_namespace: bool = True,
        policy_factory: Callable[[RetryConfig], RetryPolicy] = new_retry_policy,
        sleep_fn: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.providers = dict(providers)
        self.reconciler = reconciler
        self.retry_config = retry_config
        self.excluded_namespaces = frozenset(
            name.strip() for name in excluded_namespaces if name.strip()
        )
        self.skip_system_namespace = skip_system_namespace
        self.policy_factory = policy_factory
        self.sleep_fn = sleep_fn
        self.logger = logger or logging.getLogger(__name__)

    def is_excluded(self, namespace: str) -> bool:
        return namespace in self.excluded_namespaces

    def _skips_reconcile(self, namespace: str) -> bool:
        return self.skip_system_namespace and namespace == SYSTEM_NAMESPACE

    def acquire_tokens(
        self, provider: TokenProvider, policy: RetryPolicy, namespace: str = ""
    ) -> TokenOutcome:
        """Call ``provider.generate`` under *policy* until it succeeds or gives up."""
        max_attempts = self.retry_config.max_attempts
        policy.reset()

        attempt = 0
        while True:
            attempt += 1
            self.logger.info(
                "Getting tokens for provider %s; try #%d of %d", provider.name, attempt, max_attempts
            )
            try:
                tokens = provider.generate()
            except Exception as exc:
                METRICS.token_attempts_total.labels(provider=provider.name, outcome="error").inc()
                if attempt >= max_attempts:
                    self.logger.error(
                        "Error getting tokens for provider %s (namespace %s). Tried %d time(s); "
                        "will not try again until the next refresh cycle. [Err: %s]",
                        provider.name,
                        namespace,
                        attempt,
                        exc,
                    )
                    METRICS.providers_skipped_total.labels(
                        provider=provider.name, reason="attempts_exhausted"
                    ).inc()
                    return TokenOutcome(provider.name, (), attempt, succeeded=False)

                delay = policy.next_delay()
                if delay is None:
                    self.logger.error(
                        "Error getting tokens for provider %s (namespace %s). Retry policy "
                        "exceeded its time budget; will not try again until the next refresh "
                        "cycle. [Err: %s]",
                        provider.name,
                        namespace,
                        exc,
                    )
                    METRICS.providers_skipped_total.labels(
                        provider=provider.name, reason="retry_budget_exceeded"
                    ).inc()
                    return TokenOutcome(provider.name, (), attempt, succeeded=False)

                self.logger.error(
                    "Error getting tokens for provider %s (namespace %s). Will try again "
                    "after %.2f seconds. [Err: %s]",
                    provider.name,
                    namespace,
                    delay,
                    exc,
                )
                METRICS.token_retries_total.labels(provider=provider.name).inc()
                self.sleep_fn(delay)
                continue

            METRICS.token_attempts_total.labels(provider=provider.name, outcome="success").inc()
            self.logger.info(
                "Got %d token(s) for provider %s after %d try(s)",
                len(tokens),
                provider.name,
                attempt,
            )
            return TokenOutcome(provider.name, tuple(tokens), attempt, succeeded=True)

    def generate_secrets(self, namespace: str = "") -> list[GeneratedSecret]:
        """Run all providers once and materialize one payload per provider."""
        policy = self.policy_factory(self.retry_config)
        generated: list[GeneratedSecret] = []
        for provider in self.providers.values():
            outcome = self.acquire_tokens(provider, policy, namespace)
            try:
                payload = materialize_secret(list(outcome.tokens), provider.encoding, provider.name)
            except MaterializationError as exc:
                self.logger.error(
                    "Error generating secret for provider %s (namespace %s). Skipping provider "
                    "until the next refresh cycle! [Err: %s]",
                    provider.name,
                    namespace,
                    exc,
                )
                METRICS.providers_skipped_total.labels(
                    provider=provider.name, reason="materialization_failed"
                ).inc()
                continue
            generated.append(
                GeneratedSecret(
                    payload=payload,
                    provider=provider.name,
                    succeeded=outcome.succeeded,
                    attempts=outcome.attempts,
                )
            )
        return generated

    def refresh_namespace(self, namespace: str) -> RefreshResult:
        if self.is_excluded(namespace):
            self.logger.info("Namespace %s is excluded; skipping refresh", namespace)
            return RefreshResult(namespace=namespace, skipped=True)
        if self._skips_reconcile(namespace):
            self.logger.info("Skipping pull secrets for system namespace %s", namespace)
            return RefreshResult(namespace=namespace, skipped=True)

        self.logger.info("Generating credentials for namespace %s", namespace)
        started = time.monotonic()
        generated = self.generate_secrets(namespace)
        self.logger.info(
            "Got %d refreshed credential(s) for namespace %s", len(generated), namespace
        )

        reconciled: list[ReconcileResult] = []
        abandoned: list[str] = []
        for secret in generated:
            if not secret.succeeded:
                self.logger.warning(
                    "Leaving secret %s in namespace %s unchanged; provider %s produced no "
                    "tokens after %d try(s)",
                    secret.payload.name,
                    namespace,
                    secret.provider,
                    secret.attempts,
                )
                abandoned.append(secret.provider)
                continue

            self.logger.info(
                "Processing secret %s for namespace %s", secret.payload.name, namespace
            )
            if secret.payload.is_empty:
                self.logger.warning(
                    "Secret %s for namespace %s carries no credentials (provider %s)",
                    secret.payload.name,
                    namespace,
                    secret.provider,
                )
            reconciled.append(self.reconciler.reconcile(namespace, secret.payload))

        METRICS.refresh_cycle_seconds.observe(time.monotonic() - started)
        # Only a cycle in which every provider produced a written secret counts as fresh.
        if not abandoned and len(generated) == len(self.providers):
            METRICS.last_successful_refresh.set_to_current_time()
        self.logger.info("Finished refreshing credentials for namespace %s", namespace)
        return RefreshResult(
            namespace=namespace,
            skipped=False,
            reconciled=tuple(reconciled),
            abandoned_providers=tuple(abandoned),
        )
