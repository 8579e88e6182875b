"""In-memory enrollment store: the single source of truth for in-flight workflows."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Collection
from datetime import datetime
from typing import Any, Optional

from ..logging_config import get_logger
from .schema import (
    OPEN_STATUSES,
    Enrollment,
    EnrollmentStatus,
    ExecutionLogEntry,
    LogEventType,
    LogStatus,
    utc_now,
)

logger = get_logger(__name__)


class EnrollmentStore:
    """Mutex-guarded map of enrollment id -> Enrollment.

    Readers get deep copies; every mutation goes through a method that holds
    the store lock, so check-then-write sequences are atomic.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.RLock()
        self._enrollments: dict[str, Enrollment] = {}
        self._enrollment_ids = itertools.count(1)
        self._log_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, enrollment_id: str) -> Optional[Enrollment]:
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            return enrollment.model_copy(deep=True) if enrollment else None

    def list(
        self,
        *,
        definition_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._enrollments.values()
                if (definition_id is None or e.definition_id == definition_id)
                and (subject_id is None or e.subject_id == subject_id)
                and (status is None or e.status is status)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._enrollments)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_if_absent(
        self, definition_id: str, subject_id: str, first_step_id: str
    ) -> Optional[Enrollment]:
        """Atomically create an enrollment unless an open one exists for the pair.

        Returns None when the subject is already enrolled.
        """
        with self._lock:
            if self._find_open(definition_id, subject_id) is not None:
                return None
            now = self._clock()
            enrollment_id = f"ENR_{next(self._enrollment_ids):04d}"
            enrollment = Enrollment(
                id=enrollment_id,
                definition_id=definition_id,
                subject_id=subject_id,
                current_step_id=first_step_id,
                enrolled_at=now,
                history=[
                    self._entry(
                        step_id=first_step_id,
                        event_type=LogEventType.ENROLLMENT,
                        status=LogStatus.SUCCESS,
                        details=f"Enrolled {subject_id} into {definition_id}",
                        timestamp=now,
                    )
                ],
            )
            self._enrollments[enrollment_id] = enrollment
        logger.info("Created enrollment %s for %s in %s", enrollment_id, subject_id, definition_id)
        return enrollment.model_copy(deep=True)

    def update(
        self,
        enrollment_id: str,
        *,
        only_if_status: Optional[Collection[EnrollmentStatus]] = None,
        **changes: Any,
    ) -> Optional[Enrollment]:
        """Apply field changes atomically.

        When only_if_status is given the update is a compare-and-set: it is
        skipped (returning None) unless the current status is in that set.
        """
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None:
                return None
            if only_if_status is not None and enrollment.status not in only_if_status:
                return None
            for field, value in changes.items():
                setattr(enrollment, field, value)
            return enrollment.model_copy(deep=True)

    def transition(
        self,
        enrollment_id: str,
        to_status: EnrollmentStatus,
        *,
        allowed_from: Collection[EnrollmentStatus] = OPEN_STATUSES,
        **changes: Any,
    ) -> Optional[Enrollment]:
        return self.update(enrollment_id, only_if_status=allowed_from, status=to_status, **changes)

    def reopen(self, enrollment_id: str, **changes: Any) -> tuple[Optional[Enrollment], bool]:
        """Move a failed enrollment back to active unless its pair already has an open one.

        Returns (enrollment, conflict). conflict is True when another open
        enrollment exists for the same definition and subject.
        """
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None or enrollment.status is not EnrollmentStatus.FAILED:
                return None, False
            if self._find_open(enrollment.definition_id, enrollment.subject_id) is not None:
                return None, True
            enrollment.status = EnrollmentStatus.ACTIVE
            for field, value in changes.items():
                setattr(enrollment, field, value)
            return enrollment.model_copy(deep=True), False

    def bulk_transition(
        self, definition_id: str, from_status: EnrollmentStatus, to_status: EnrollmentStatus
    ) -> list[str]:
        """Move every enrollment of a definition from one status to another."""
        moved: list[str] = []
        with self._lock:
            for enrollment in self._enrollments.values():
                if enrollment.definition_id == definition_id and enrollment.status is from_status:
                    enrollment.status = to_status
                    moved.append(enrollment.id)
        return moved

    def append_log(
        self,
        enrollment_id: str,
        *,
        step_id: str,
        event_type: LogEventType,
        status: LogStatus,
        details: str = "",
        **extra: Any,
    ) -> Optional[ExecutionLogEntry]:
        """Append an immutable history entry; returns None for an unknown enrollment."""
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None:
                return None
            entry = self._entry(
                step_id=step_id,
                event_type=event_type,
                status=status,
                details=details,
                timestamp=self._clock(),
                **extra,
            )
            enrollment.history.append(entry)
            return entry

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _find_open(self, definition_id: str, subject_id: str) -> Optional[Enrollment]:
        for enrollment in self._enrollments.values():
            if (
                enrollment.definition_id == definition_id
                and enrollment.subject_id == subject_id
                and enrollment.status in OPEN_STATUSES
            ):
                return enrollment
        return None

    def _entry(self, **fields: Any) -> ExecutionLogEntry:
        return ExecutionLogEntry(id=f"EXLOG_{next(self._log_ids):05d}", **fields)
