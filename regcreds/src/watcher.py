from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from regcreds.src.metrics import METRICS

DISPATCHED_EVENT_TYPES = frozenset({"ADDED", "MODIFIED"})
RESYNC_EVENT_TYPE = "RESYNC"
MAX_WATCH_TIMEOUT_SECONDS = 30


class NamespaceWatcher:
    """Streams namespace events and hands every namespace to a refresh handler.

    Namespaces are listed once at startup (each one dispatched as
    ``ADDED``), then watched from the listing's ``resourceVersion``.
    ``ADDED`` and ``MODIFIED`` events go to the same handler.  Every
    ``resync_seconds`` the full namespace list is dispatched again so
    short-lived registry tokens are renewed even when nothing in the
    cluster changes.

    Each dispatch is its own unit of work: a handler exception is logged
    with the namespace, counted in ``regcreds_handler_failures_total``, and
    the loop moves on to the next event.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        handler: Callable[[str], Any],
        resync_seconds: float,
        logger: logging.Logger | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if resync_seconds <= 0:
            raise ValueError("resync_seconds must be > 0")
        self.core_api = core_api
        self.handler = handler
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.monotonic = monotonic

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._next_resync_at = 0.0

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def dispatch(self, event_type: str, namespace: Any) -> bool:
        """Run the handler for one namespace event; return ``True`` when it succeeded."""
        metadata = getattr(namespace, "metadata", None)
        name = getattr(metadata, "name", None)
        if not name:
            self.logger.warning("Skipping %s event for namespace without a name", event_type)
            return False

        METRICS.namespace_events_total.labels(type=event_type).inc()
        try:
            self.handler(name)
        except Exception:
            METRICS.handler_failures_total.inc()
            self.logger.exception("Refresh failed for namespace %s (%s event)", name, event_type)
            return False
        return True

    def _dispatch_listing(
        self, namespaces: Any, event_type: str, stop_event: threading.Event
    ) -> None:
        for namespace in getattr(namespaces, "items", None) or []:
            if self._should_stop(stop_event):
                return
            self.dispatch(event_type, namespace)

    def _list_namespaces(self) -> tuple[Any, str | None]:
        listing = self.core_api.list_namespace()
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
        return listing, resource_version

    def _schedule_next_resync(self) -> None:
        self._next_resync_at = self.monotonic() + self.resync_seconds

    def _resync(self, event_type: str, stop_event: threading.Event) -> str | None:
        """Re-list every namespace, dispatch each one, and return the new resourceVersion."""
        listing, resource_version = self._list_namespaces()
        self._schedule_next_resync()
        self._dispatch_listing(listing, event_type, stop_event)
        return resource_version

    def _next_watch_timeout_seconds(self) -> int:
        """Return the next watch timeout, shortened so the loop wakes up for a due resync."""
        remaining = self._next_resync_at - self.monotonic()
        return min(MAX_WATCH_TIMEOUT_SECONDS, max(1, math.ceil(remaining)))

    def _access_denied(self, exc: ApiException, during: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check RBAC for listing/watching namespaces and writing secrets "
            "and service accounts.",
            during,
            exc.status,
        )
        self.ready.clear()
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main loop: list, dispatch, then watch namespaces until shutdown.

        1. Retries the initial namespace list with jittered exponential
           backoff (capped at 30 s) so API startup hiccups do not crash-loop.
        2. Dispatches every listed namespace, then opens a watch from the
           listing's ``resourceVersion``.
        3. On ``410 Gone`` re-lists, re-dispatches and resumes watching.
        4. Runs a full resync once per ``resync_seconds``.
        5. ``401`` / ``403`` responses end the loop with an RBAC hint rather
           than retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        initial: Any = None
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial, resource_version = self._list_namespaces()
                self.ready.set()
                self.logger.info("Listed namespaces at resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial namespace list"):
                    return
                self.logger.exception("Initial Kubernetes namespace list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial namespace list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        self._schedule_next_resync()
        self._dispatch_listing(initial, "ADDED", stop)

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if self.monotonic() >= self._next_resync_at:
                    self.logger.info("Resyncing all namespaces")
                    METRICS.resyncs_total.inc()
                    resource_version = self._resync(RESYNC_EVENT_TYPE, stop)
                    continue

                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.core_api.list_namespace,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    event_type = str(event.get("type", ""))
                    if event_type in DISPATCHED_EVENT_TYPES:
                        self.dispatch(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away; take a
                # fresh snapshot and resume from it.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._resync(RESYNC_EVENT_TYPE, stop)
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if self._access_denied(exc, "namespace watch"):
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
