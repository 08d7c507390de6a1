"""Deliver received APRS packets to operator-configured HTTP endpoints.

Each packet is checked against every configured webhook. For each match a
delivery job goes onto a bounded queue that a small pool of worker threads
drains, POSTing with a few retries and linear backoff. When the queue is
full the newest job is dropped and recorded as a failure, so a slow or
unreachable receiver never holds up the packet stream.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence, Union

import requests

from .webhook_match import Packet, Webhook, build_body, match, sample_test_packet

log = logging.getLogger(__name__)

# Total delivery tries before a job is dropped and logged.
MAX_ATTEMPTS = 3
# Bound on a single HTTP attempt, so one dead endpoint cannot tie up a worker.
DELIVER_TIMEOUT = 10.0
# Bound on queued jobs; APRS rates are low, so this absorbs bursts easily.
QUEUE_DEPTH = 256
# Concurrent outbound POSTs.
NUM_WORKERS = 4
# Seconds added to the wait before each further attempt (1 s, then 2 s).
RETRY_DELAY = 1.0

USER_AGENT = "aprstation-webhook"

WebhookSource = Union[Sequence[Webhook], Callable[[], Iterable[Webhook]], None]


@dataclass
class EndpointStatus:
    """Per-webhook delivery health."""

    last_attempt: datetime | None = None
    last_code: int = 0
    last_err: str = ""
    sent: int = 0
    failed: int = 0


@dataclass(frozen=True)
class DeliveryJob:
    """One payload to POST to one endpoint."""

    name: str
    url: str
    body: bytes
    header_name: str = ""
    header_value: str = ""
    insecure: bool = False


class WebhookManager:
    """Matches packets to webhooks and delivers them from a worker pool.

    ``webhooks`` is either a sequence of :class:`Webhook` or a callable that
    returns the current configuration each time it is called.
    """

    def __init__(self, webhooks: WebhookSource = None) -> None:
        self._webhooks = webhooks
        self._jobs: queue.Queue[DeliveryJob] = queue.Queue(maxsize=QUEUE_DEPTH)
        self._lock = threading.Lock()
        self._status: dict[str, EndpointStatus] = {}
        self._stop = threading.Event()
        self.retry_delay = RETRY_DELAY

    def _current_webhooks(self) -> list[Webhook]:
        if self._webhooks is None:
            return []
        if callable(self._webhooks):
            return list(self._webhooks())
        return list(self._webhooks)

    def dispatch(self, packet: Packet) -> None:
        """Queue one delivery job for every enabled webhook that matches."""
        body: bytes | None = None
        for wh in self._current_webhooks():
            if not wh.enabled or not wh.url:
                continue
            if not match(wh, packet):
                continue
            if body is None:
                try:
                    body = build_body(packet, False)
                except (TypeError, ValueError) as exc:
                    log.error("webhook: marshal packet failed: %s", exc)
                    return
            job = DeliveryJob(
                name=wh.name,
                url=wh.url,
                body=body,
                header_name=wh.header_name,
                header_value=wh.header_value,
                insecure=wh.insecure_skip_tls,
            )
            try:
                self._jobs.put_nowait(job)
            except queue.Full:
                self._record_failure(wh.name, 0, "delivery queue full (receiver too slow)")
                log.warning("webhook %r: queue full, dropped event", wh.name)

    def run(self, packets: Iterable[Packet], stop: threading.Event | None = None) -> None:
        """Dispatch every packet from ``packets`` until it ends or ``stop`` is set.

        When the packets run out, queued jobs are delivered before returning;
        when ``stop`` is set, workers finish their current attempt and quit.
        """
        if stop is None:
            stop = threading.Event()
        self._stop = stop
        finished = threading.Event()
        workers = [
            threading.Thread(target=self._worker, args=(stop, finished), daemon=True)
            for _ in range(NUM_WORKERS)
        ]
        for worker in workers:
            worker.start()
        try:
            for packet in packets:
                if stop.is_set():
                    break
                self.dispatch(packet)
        finally:
            finished.set()
            for worker in workers:
                worker.join()

    def _worker(self, stop: threading.Event, finished: threading.Event) -> None:
        while not stop.is_set():
            try:
                job = self._jobs.get(timeout=0.05)
            except queue.Empty:
                if finished.is_set():
                    return
                continue
            try:
                self.deliver(job)
            except Exception:  # a worker must survive any single bad job
                log.exception("webhook %r: delivery crashed", job.name)

    def deliver(self, job: DeliveryJob) -> None:
        """POST ``job`` with retries; record success, or the final failure."""
        last_err = ""
        last_code = 0
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                code = self._attempt(job)
            except requests.RequestException as exc:
                last_err = str(exc)
                last_code = 0
            else:
                if 200 <= code < 300:
                    self._record_success(job.name, code)
                    return
                last_err = f"HTTP {code}"
                last_code = code
            if attempt < MAX_ATTEMPTS and self._stop.wait(attempt * self.retry_delay):
                return
        self._record_failure(job.name, last_code, last_err)
        log.error(
            "webhook %r: delivery to %s failed after %d attempts: %s",
            job.name,
            job.url,
            MAX_ATTEMPTS,
            last_err,
        )

    def _attempt(self, job: DeliveryJob) -> int:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if job.header_name:
            headers[job.header_name] = job.header_value
        response = requests.post(
            job.url,
            data=job.body,
            headers=headers,
            timeout=DELIVER_TIMEOUT,
            verify=not job.insecure,
        )
        response.close()
        return response.status_code

    def send_test(self, webhook: Webhook) -> int:
        """POST one sample packet to ``webhook`` and return the HTTP status.

        No retries and no status bookkeeping; transport failures raise
        :class:`requests.RequestException`.
        """
        if not webhook.url.strip():
            raise ValueError("no URL configured")
        body = build_body(sample_test_packet(), True)
        return self._attempt(
            DeliveryJob(
                name=webhook.name,
                url=webhook.url,
                body=body,
                header_name=webhook.header_name,
                header_value=webhook.header_value,
                insecure=webhook.insecure_skip_tls,
            )
        )

    def snapshot(self) -> dict[str, EndpointStatus]:
        """A copy of the per-endpoint status keyed by webhook name."""
        with self._lock:
            return {name: replace(status) for name, status in self._status.items()}

    def _entry(self, name: str) -> EndpointStatus:
        return self._status.setdefault(name, EndpointStatus())

    def _record_success(self, name: str, code: int) -> None:
        with self._lock:
            entry = self._entry(name)
            entry.last_attempt = datetime.now(timezone.utc)
            entry.last_code = code
            entry.last_err = ""
            entry.sent += 1

    def _record_failure(self, name: str, code: int, err_text: str) -> None:
        with self._lock:
            entry = self._entry(name)
            entry.last_attempt = datetime.now(timezone.utc)
            entry.last_code = code
            entry.last_err = err_text
            entry.failed += 1