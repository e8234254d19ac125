"""
Projection Builder - Read Models for Dashboards

Folds the deduplicated event streams plus per-record point lookups into
RecordViews. Projections are caches - the source of truth is always the
ledger.

ARCHITECTURE:
- ProjectionBuilder is a pure fold: events + lookups + viewer -> BuildResult
- Projector owns fetching: windowed replay of the log, retries, and the
  generation counter that decides which build is published

USAGE:
    projector = Projector(ledger, LedgerConfig.from_env())

    # Full rebuild for a dashboard
    result = projector.rebuild(Viewer(role=Role.PATIENT, address="0xabc..."))

    # Freshest single-record view, right before a guard check
    view = projector.view_for(token_id)

    # After a receipt
    projector.refresh_record(token_id, viewer)

Rules:
- One RecordView per RecordCreated event
- A failing point lookup omits that record only; the rest of the build
  proceeds
- Point lookups fan out through a bounded pool
- A build from an older generation never replaces a newer one
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Optional, Sequence

from ..core.dedup import count_duplicates, deduplicate
from ..core.errors import LookupFailed, SourceUnavailable
from ..observability import get_logger, get_metrics
from ..schemas import (
    EventKind,
    RawEvent,
    Record,
    RecordCreatedPayload,
    RecordView,
    Role,
    VerificationRequest,
    VerificationRequestedPayload,
    normalize_address,
    normalize_name,
)
from .config import LedgerConfig
from .ledger import EventSource, LedgerClient, PointLookups

logger = get_logger(__name__)


@dataclass(frozen=True)
class Viewer:
    """
    Whose dashboard is being built.

    Patients are scoped by address, insurers by their registered name.
    Doctors see every record.
    """
    role: Role
    address: Optional[str] = None
    name: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.role, normalize_address(self.address), normalize_name(self.name))


@dataclass
class BuildResult:
    """Outcome of one projection build."""
    views: list[RecordView]
    failures: dict[int, str] = field(default_factory=dict)
    generation: int = 0
    window: tuple[int, int] = (0, 0)
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, token_id: int) -> Optional[RecordView]:
        for view in self.views:
            if view.token_id == token_id:
                return view
        return None


@dataclass
class _RequestEntry:
    payload: VerificationRequestedPayload
    position: int


# ============================================================
# BUILDER
# ============================================================

class ProjectionBuilder:
    """
    Builds RecordViews from raw events and point lookups.

    Stateless between builds; safe to share.
    """

    def __init__(self, max_workers: int = 8):
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._max_workers = max_workers

    def build(
        self,
        created_events: Sequence[RawEvent],
        request_events: Sequence[RawEvent],
        lookups: PointLookups,
        viewer: Optional[Viewer] = None,
        generation: int = 0,
        window: tuple[int, int] = (0, 0),
    ) -> BuildResult:
        """
        Build the views visible to `viewer` (all records when None).

        Duplicate events are dropped first, so overlapping fetch windows
        yield the same result as a single exact window.
        """
        start = time.perf_counter()

        duplicates = count_duplicates(list(created_events)) + count_duplicates(list(request_events))
        created = [e.record_created() for e in deduplicate(created_events)]
        requests_by_token = self._index_requests(deduplicate(request_events))

        candidates = [
            payload for payload in created
            if self._in_scope(payload, requests_by_token.get(payload.token_id, []), viewer)
        ]

        views: dict[int, RecordView] = {}
        failures: dict[int, str] = {}

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = [
                (
                    payload.token_id,
                    pool.submit(
                        self._resolve,
                        payload,
                        requests_by_token.get(payload.token_id, []),
                        lookups,
                        viewer,
                    ),
                )
                for payload in candidates
            ]
            for token_id, future in futures:
                try:
                    views[token_id] = future.result()
                except Exception as e:
                    # Isolation boundary: one record's lookup failure omits that record only.
                    failures[token_id] = str(e)
                    logger.warning(
                        "Point lookup failed; record omitted",
                        token_id=token_id,
                        error=str(e),
                    )

        latency_ms = (time.perf_counter() - start) * 1000
        get_metrics().record_build(latency_ms, len(failures))
        logger.debug(
            "Projection built",
            generation=generation,
            records=len(views),
            failures=len(failures),
            duplicates_dropped=duplicates,
            latency_ms=round(latency_ms, 2),
        )

        return BuildResult(
            views=[views[p.token_id] for p in candidates if p.token_id in views],
            failures=failures,
            generation=generation,
            window=window,
        )

    @staticmethod
    def _index_requests(events: list[RawEvent]) -> dict[int, list[_RequestEntry]]:
        index: dict[int, list[_RequestEntry]] = {}
        for event in events:
            payload = event.verification_requested()
            index.setdefault(payload.token_id, []).append(
                _RequestEntry(payload=payload, position=event.log_position)
            )
        return index

    @staticmethod
    def _in_scope(
        payload: RecordCreatedPayload,
        requests: list[_RequestEntry],
        viewer: Optional[Viewer],
    ) -> bool:
        if viewer is None or viewer.role == Role.DOCTOR:
            return True
        if viewer.role == Role.PATIENT:
            return normalize_address(payload.owner_address) == normalize_address(viewer.address)
        if viewer.role == Role.INSURER:
            name = normalize_name(viewer.name)
            return bool(name) and any(
                normalize_name(r.payload.insurer_name) == name for r in requests
            )
        return False

    def _resolve(
        self,
        payload: RecordCreatedPayload,
        requests: list[_RequestEntry],
        lookups: PointLookups,
        viewer: Optional[Viewer],
    ) -> RecordView:
        """Run the point lookups for one record and assemble its view."""
        token_id = payload.token_id
        try:
            doctor_verified = lookups.is_doctor_verified(token_id)
            insurer_verified = lookups.is_insurer_verified(token_id)
            details = lookups.get_request_details(token_id)
            record_details = lookups.get_record_details(token_id, payload.owner_address)
        except SourceUnavailable as e:
            raise LookupFailed(token_id, str(e)) from e

        record = Record(
            token_id=token_id,
            patient_name=record_details.patient_name or None,
            content_hash=record_details.content_hash or None,
            provider_name=payload.provider_name or record_details.provider_name,
            owner_address=payload.owner_address,
        )

        entry = self._select_request(requests, viewer, details.insurer_name if details.requested else None)
        request = None
        if entry is not None:
            # The approval flag belongs to whichever request the ledger holds now.
            current = not details.requested or (
                normalize_name(details.insurer_name) == normalize_name(entry.payload.insurer_name)
            )
            request = VerificationRequest(
                token_id=token_id,
                insurer_name=entry.payload.insurer_name,
                requesting_doctor_name=entry.payload.doctor_name,
                issued_at=entry.position,
                approved=insurer_verified and current,
                superseded=not current,
            )
        elif details.requested:
            # Requested on the ledger but the event lies outside the replayed range.
            request = VerificationRequest(
                token_id=token_id,
                insurer_name=details.insurer_name,
                requesting_doctor_name="",
                approved=insurer_verified,
            )

        return RecordView(
            record=record,
            verification_request=request,
            doctor_verified=doctor_verified,
            insurer_verified=insurer_verified,
        )

    @staticmethod
    def _select_request(
        requests: list[_RequestEntry],
        viewer: Optional[Viewer],
        ledger_insurer: Optional[str],
    ) -> Optional[_RequestEntry]:
        if not requests:
            return None

        if viewer is not None and viewer.role == Role.INSURER:
            wanted = normalize_name(viewer.name)
        elif ledger_insurer:
            wanted = normalize_name(ledger_insurer)
        else:
            return requests[0]

        for entry in requests:
            if normalize_name(entry.payload.insurer_name) == wanted:
                return entry
        return requests[0]


# ============================================================
# PROJECTOR
# ============================================================

class Projector:
    """
    Replays the ledger and publishes builds per viewer.

    Thread Safety:
    - The generation counter and the published results sit behind one lock
    - Builds run outside the lock; a build that finishes after a newer one
      was published is discarded
    """

    def __init__(
        self,
        ledger: LedgerClient,
        config: Optional[LedgerConfig] = None,
        builder: Optional[ProjectionBuilder] = None,
        retry_delay: float = 0.5,
    ):
        self._ledger = ledger
        self._config = config or LedgerConfig()
        self._builder = builder or ProjectionBuilder(self._config.lookup_concurrency)
        self._retry_delay = retry_delay

        self._lock = Lock()
        self._generation = 0
        self._published: dict[tuple, BuildResult] = {}

    @property
    def generation(self) -> int:
        return self._generation

    def next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    # ================================================================
    # FETCHING
    # ================================================================

    def fetch_all(
        self,
        kind: EventKind,
        to_position: int,
        from_position: Optional[int] = None,
        source: Optional[EventSource] = None,
    ) -> list[RawEvent]:
        """
        Fetch every event of `kind` up to `to_position` in windows.

        Consecutive windows share their boundary position, so an event at
        a boundary is delivered twice; the builder deduplicates.
        """
        source = source or self._ledger
        start = self._config.start_position if from_position is None else from_position
        if start > to_position:
            return []

        events: list[RawEvent] = []
        while True:
            end = min(start + self._config.fetch_window, to_position)
            events.extend(self._fetch_window(source, kind, start, end))
            if end >= to_position:
                break
            start = end
        return events

    def _fetch_window(self, source: EventSource, kind: EventKind, start: int, end: int) -> list[RawEvent]:
        retries = self._config.fetch_retries
        for attempt in range(retries + 1):
            try:
                return source.fetch(kind, start, end)
            except SourceUnavailable as e:
                if attempt >= retries:
                    logger.error(
                        "Fetch window failed; giving up",
                        kind=kind.value,
                        window=[start, end],
                        attempts=attempt + 1,
                    )
                    raise
                get_metrics().record_fetch_retry()
                logger.warning(
                    "Fetch window failed; retrying same window",
                    kind=kind.value,
                    window=[start, end],
                    attempt=attempt + 1,
                    error=str(e),
                )
                if self._retry_delay:
                    time.sleep(self._retry_delay * (attempt + 1))
        return []

    # ================================================================
    # BUILDS
    # ================================================================

    def rebuild(self, viewer: Viewer) -> BuildResult:
        """
        Replay the whole log and build the viewer's dashboard.

        Raises:
            SourceUnavailable: a window kept failing after all retries
        """
        generation = self.next_generation()
        head = self._ledger.head()

        created = self.fetch_all(EventKind.RECORD_CREATED, head)
        requests = self.fetch_all(EventKind.VERIFICATION_REQUESTED, head)

        result = self._builder.build(
            created,
            requests,
            self._ledger,
            viewer,
            generation=generation,
            window=(self._config.start_position, head),
        )
        return self.publish(viewer, result)

    def publish(self, viewer: Viewer, result: BuildResult) -> BuildResult:
        """
        Publish `result` unless a newer generation already is.

        Returns the result that is current after the call.
        """
        with self._lock:
            latest = self._published.get(viewer.key)
            if latest is not None and latest.generation > result.generation:
                get_metrics().record_discarded_build()
                logger.info(
                    "Discarding stale build",
                    generation=result.generation,
                    current=latest.generation,
                )
                return latest
            self._published[viewer.key] = result
            return result

    def current(self, viewer: Viewer) -> Optional[BuildResult]:
        """Latest published build for this viewer, if any."""
        with self._lock:
            return self._published.get(viewer.key)

    def view_for(self, token_id: int, viewer: Optional[Viewer] = None) -> Optional[RecordView]:
        """
        Freshest view of one record, built from fresh lookups.

        Returns None if no RecordCreated event exists for `token_id`
        (or the record is outside `viewer`'s scope).

        Raises:
            LookupFailed: a point lookup for this record failed
        """
        head = self._ledger.head()
        created = [
            e for e in self.fetch_all(EventKind.RECORD_CREATED, head)
            if e.token_id == token_id
        ]
        if not created:
            return None
        requests = [
            e for e in self.fetch_all(EventKind.VERIFICATION_REQUESTED, head)
            if e.token_id == token_id
        ]

        result = self._builder.build(created, requests, self._ledger, viewer)
        if token_id in result.failures:
            raise LookupFailed(token_id, result.failures[token_id])
        return result.get(token_id)

    def refresh_record(self, token_id: int, viewer: Viewer) -> Optional[RecordView]:
        """
        Re-project one record after a receipt and patch it into the
        viewer's published build.

        The patch is dropped if a build started after this refresh has been
        published in the meantime; that build already holds newer state.
        """
        generation = self.next_generation()
        view = self.view_for(token_id, viewer)

        with self._lock:
            published = self._published.get(viewer.key)
            if published is None:
                return view
            if published.generation > generation:
                logger.info(
                    "Discarding stale record refresh",
                    token_id=token_id,
                    generation=generation,
                    current=published.generation,
                )
                return view

            views = [v for v in published.views if v.token_id != token_id]
            if view is not None:
                position = next(
                    (i for i, v in enumerate(published.views) if v.token_id == token_id),
                    len(views),
                )
                views.insert(position, view)

            failures = {k: v for k, v in published.failures.items() if k != token_id}
            self._published[viewer.key] = replace(published, views=views, failures=failures)

        return view
