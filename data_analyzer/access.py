"""
Hierarchical profile-code access control for datasets.

Profile codes are 9 characters: company(3) + business unit(3) + team(3).
'000' in the dataset's BU or team position means "any"; the company segment
never wildcards. The admin sentinel sees everything.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable, NamedTuple, Protocol

from data_analyzer.models import Dataset, DatasetAccessRecord, ProfileAssignment, UserIdentity

ADMIN_PROFILE = "admadmadm"
WILDCARD_SEGMENT = "000"
SEGMENT_WIDTH = 3
PROFILE_CODE_LENGTH = SEGMENT_WIDTH * 3


class AccessPolicy(str, Enum):
    # unassigned datasets are visible to their owner only
    STRICT = "strict"
    # unassigned datasets are visible to everyone
    PERMISSIVE = "permissive"


class ProfileCode(NamedTuple):
    company: str
    business_unit: str
    team: str

    @classmethod
    def parse(cls, raw: str | None) -> "ProfileCode | None":
        """Split a code into trimmed segments, or return None when it is not 9 characters."""
        if raw is None:
            return None
        text = raw if len(raw) == PROFILE_CODE_LENGTH else raw.strip()
        if len(text) != PROFILE_CODE_LENGTH:
            return None
        return cls(
            company=text[0:3].strip(),
            business_unit=text[3:6].strip(),
            team=text[6:9].strip(),
        )


class DatasetSource(Protocol):
    def get_datasets_for_user(self, email: str) -> list[Dataset]: ...

    def get_all_datasets(self) -> list[Dataset]: ...

    def get_profile_assignments(self) -> list[ProfileAssignment]: ...


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def is_admin(user: UserIdentity) -> bool:
    return not _blank(user.profile) and user.profile.strip() == ADMIN_PROFILE


def _segment_matches(dataset_segment: str, user_segment: str) -> bool:
    return dataset_segment == WILDCARD_SEGMENT or dataset_segment == user_segment


def can_access(
    user: UserIdentity,
    dataset: DatasetAccessRecord,
    policy: AccessPolicy = AccessPolicy.STRICT,
) -> bool:
    if is_admin(user):
        return True

    if _blank(dataset.profile_code):
        if policy is AccessPolicy.PERMISSIVE:
            return True
        return user.email == dataset.owner_email

    if _blank(user.profile):
        return False

    required = ProfileCode.parse(dataset.profile_code)
    held = ProfileCode.parse(user.profile)
    if required is None or held is None:
        return False

    if required.company != held.company:
        return False
    if not _segment_matches(required.business_unit, held.business_unit):
        return False
    if not _segment_matches(required.team, held.team):
        return False
    return True


def build_access_records(
    datasets: Iterable[Dataset],
    assignments: Iterable[ProfileAssignment],
) -> list[tuple[Dataset, DatasetAccessRecord]]:
    codes = {assignment.dataset_id: assignment.profile_code for assignment in assignments}
    return [
        (
            dataset,
            DatasetAccessRecord(
                dataset_id=dataset.id,
                owner_email=dataset.owner_email,
                profile_code=codes.get(dataset.id),
            ),
        )
        for dataset in datasets
    ]


def list_accessible_datasets(
    user: UserIdentity,
    datasets: Iterable[Dataset],
    assignments: Iterable[ProfileAssignment],
    policy: AccessPolicy = AccessPolicy.STRICT,
) -> list[Dataset]:
    return [
        dataset
        for dataset, record in build_access_records(datasets, assignments)
        if can_access(user, record, policy)
    ]


def fetch_accessible_datasets(
    store: DatasetSource,
    user: UserIdentity,
    policy: AccessPolicy = AccessPolicy.STRICT,
) -> list[Dataset]:
    """Read candidates from the store and keep the ones the user may open.

    Under STRICT the candidates are the datasets the gateway lists for the
    user's email. Admins and the PERMISSIVE policy read every dataset in the
    system, so unassigned datasets of other owners can surface.
    """
    if policy is AccessPolicy.PERMISSIVE or is_admin(user):
        datasets = store.get_all_datasets()
    else:
        datasets = store.get_datasets_for_user(user.email)
    assignments = store.get_profile_assignments()
    return list_accessible_datasets(user, datasets, assignments, policy)
