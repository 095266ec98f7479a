"""
Usage snapshots for billing validation.

Add-on reductions and tier downgrades are only legal when the resulting
limits still cover what the academy is using right now, so every check reads
the ``AcademyUsage`` row fresh from the database. Nothing here is cached.

Usage:
    snapshot = UsageSnapshotProvider().get_usage(academy)
    if snapshot.total_users > new_limit:
        ...

    # Inside a transaction that is about to shrink limits
    with transaction.atomic():
        snapshot = UsageSnapshotProvider().get_usage_for_update(academy)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from classraum.academies.models import AcademyUsage

if TYPE_CHECKING:
    from classraum.academies.models import Academy


@dataclass(frozen=True)
class UsageSnapshot:
    """Point-in-time consumption for one academy."""

    current_student_count: int = 0
    current_teacher_count: int = 0
    current_storage_gb: Decimal = Decimal("0")
    current_classroom_count: int = 0

    @property
    def total_users(self) -> int:
        return self.current_student_count + self.current_teacher_count

    @classmethod
    def from_row(cls, row: AcademyUsage | None) -> UsageSnapshot:
        if row is None:
            return cls()
        return cls(
            current_student_count=row.student_count,
            current_teacher_count=row.teacher_count,
            current_storage_gb=Decimal(row.storage_used_gb),
            current_classroom_count=row.classroom_count,
        )

    def as_dict(self) -> dict:
        return {
            "students": self.current_student_count,
            "teachers": self.current_teacher_count,
            "totalUsers": self.total_users,
            "storageGb": str(self.current_storage_gb),
            "classrooms": self.current_classroom_count,
        }


class UsageSnapshotProvider:
    """Read-only access to an academy's current usage."""

    def get_usage(self, academy: Academy) -> UsageSnapshot:
        """Return usage as stored right now. A missing row means nothing is used."""
        row = AcademyUsage.objects.filter(academy=academy).first()
        return UsageSnapshot.from_row(row)

    def get_usage_for_update(self, academy: Academy) -> UsageSnapshot:
        """
        Return usage and lock the row until the caller's transaction ends.

        Must be called inside ``transaction.atomic()``. Holding the lock keeps
        a concurrent enrollment from slipping in between the floor check and
        the write that lowers the limit.
        """
        row = (
            AcademyUsage.objects.select_for_update()
            .filter(academy=academy)
            .first()
        )
        return UsageSnapshot.from_row(row)
