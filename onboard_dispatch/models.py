"""Data models for provisioning requests and their processing metadata."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


class StepName:
    VALIDATION = "validation"
    GROUP_ASSIGNMENT = "groupAssignment"
    USER_CREATION = "userCreation"
    LICENSING = "licensing"

    ALL = (VALIDATION, GROUP_ASSIGNMENT, USER_CREATION, LICENSING)


class StepStatus:
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    PARTIAL = "partial"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"

    ALL = (PENDING, SUCCESSFUL, FAILED, PARTIAL, COMPLETED_WITH_WARNINGS)


# Legacy form fields and the canonical top-level field they map to.
_LEGACY_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("RequestedLicense", "LicenseTypes"),
    ("RequestedLicenses", "LicenseTypes"),
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def find_key(mapping: Any, name: str) -> Optional[str]:
    """Return the actual key in ``mapping`` matching ``name`` case-insensitively."""

    if not isinstance(mapping, Mapping):
        return None
    if name in mapping:
        return name
    lowered = name.lower()
    for key in mapping.keys():
        if isinstance(key, str) and key.lower() == lowered:
            return key
    return None


def get_field(mapping: Any, name: str, default: Any = None) -> Any:
    key = find_key(mapping, name)
    if key is None:
        return default
    return mapping[key]


def has_field(mapping: Any, name: str) -> bool:
    return find_key(mapping, name) is not None


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    seen: set[str] = set()
    result: List[str] = []
    for entry in value:
        cleaned = _clean_str(entry)
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result


def migrate_legacy_fields(payload: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """Rename legacy request fields to the canonical schema.

    Returns the migrated copy of ``payload`` and one warning per migrated field.
    """

    migrated: Dict[str, Any] = dict(payload)
    warnings: List[str] = []

    for legacy, canonical in _LEGACY_FIELDS:
        legacy_key = find_key(migrated, legacy)
        if legacy_key is None:
            continue
        value = migrated.pop(legacy_key)
        if has_field(migrated, canonical):
            warnings.append(f"{legacy} ignored because {canonical} is also present.")
            continue
        migrated[canonical] = [value] if isinstance(value, str) else value
        warnings.append(f"{legacy} is deprecated; use {canonical}.")

    mirror_key = find_key(migrated, "MirroredUser")
    if mirror_key is not None:
        value = migrated.pop(mirror_key)
        groups_key = find_key(migrated, "Groups")
        groups = migrated.get(groups_key) if groups_key else None
        if groups is None:
            groups = {}
        if isinstance(groups, Mapping):
            groups = dict(groups)
            mirrored_key = find_key(groups, "MirroredUsers")
            mirrored = dict(groups.get(mirrored_key) or {}) if mirrored_key else {}
            if has_field(mirrored, "MirroredUserEmail"):
                warnings.append(
                    "MirroredUser ignored because Groups.MirroredUsers.MirroredUserEmail is also present."
                )
            else:
                mirrored["MirroredUserEmail"] = value
                groups[mirrored_key or "MirroredUsers"] = mirrored
                migrated[groups_key or "Groups"] = groups
                warnings.append(
                    "MirroredUser is deprecated; use Groups.MirroredUsers.MirroredUserEmail."
                )
        else:
            warnings.append("MirroredUser ignored because Groups is not an object.")

    return migrated, warnings


@dataclass
class ProvisioningMetadata:
    """Per-request processing state shared by every pipeline step."""

    created_timestamp: str = field(default_factory=_utc_now_iso)
    status: Dict[str, str] = field(
        default_factory=lambda: {name: StepStatus.PENDING for name in StepName.ALL}
    )
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "createdTimestamp": self.created_timestamp,
            "status": dict(self.status),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class AccountDetails:
    given_name: str = ""
    surname: str = ""
    user_principal_name: str = ""
    additional_details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "AccountDetails":
        if not isinstance(data, Mapping):
            return cls()
        additional = get_field(data, "AdditionalDetails")
        return cls(
            given_name=_clean_str(get_field(data, "GivenName")),
            surname=_clean_str(get_field(data, "Surname")),
            user_principal_name=_clean_str(get_field(data, "UserPrincipalName")),
            additional_details=dict(additional) if isinstance(additional, Mapping) else {},
        )

    def detail(self, name: str, default: Any = None) -> Any:
        value = get_field(self.additional_details, name, default)
        if isinstance(value, str):
            value = value.strip()
            return value or default
        return value

    @property
    def display_name(self) -> str:
        explicit = self.detail("DisplayName")
        if explicit:
            return str(explicit)
        return f"{self.given_name} {self.surname}".strip()

    @property
    def mail_nickname(self) -> str:
        return self.user_principal_name.split("@", 1)[0]


@dataclass
class MirroredUsers:
    mirrored_user_email: Optional[str] = None
    mirrored_user_groups: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "MirroredUsers":
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            mirrored_user_email=_clean_str(get_field(data, "MirroredUserEmail")) or None,
            mirrored_user_groups=_clean_str(get_field(data, "MirroredUserGroups")) or None,
        )

    @property
    def requested(self) -> bool:
        return bool(self.mirrored_user_email or self.mirrored_user_groups)


@dataclass
class GroupSelection:
    """Groups requested for the new user, by category."""

    teams: List[str] = field(default_factory=list)
    security: List[str] = field(default_factory=list)
    distribution: List[str] = field(default_factory=list)
    shared_mailboxes: List[str] = field(default_factory=list)
    software: List[str] = field(default_factory=list)
    mirrored: MirroredUsers = field(default_factory=MirroredUsers)

    CATEGORIES = ("teams", "security", "distribution", "shared_mailboxes", "software")

    @classmethod
    def from_dict(cls, data: Any) -> "GroupSelection":
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            teams=_string_list(get_field(data, "Teams")),
            security=_string_list(get_field(data, "Security")),
            distribution=_string_list(get_field(data, "Distribution")),
            shared_mailboxes=_string_list(get_field(data, "SharedMailboxes")),
            software=_string_list(get_field(data, "Software")),
            mirrored=MirroredUsers.from_dict(get_field(data, "MirroredUsers")),
        )

    def merge(self, category: str, names: Iterable[str]) -> None:
        current: List[str] = getattr(self, category)
        seen = {name.lower() for name in current}
        for name in names:
            cleaned = _clean_str(name)
            if cleaned and cleaned.lower() not in seen:
                seen.add(cleaned.lower())
                current.append(cleaned)

    @property
    def is_empty(self) -> bool:
        return not any(getattr(self, category) for category in self.CATEGORIES)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "teams": list(self.teams),
            "security": list(self.security),
            "distribution": list(self.distribution),
            "sharedMailboxes": list(self.shared_mailboxes),
            "software": list(self.software),
        }


@dataclass
class ProvisioningRequest:
    """A single onboarding request as received from the ticket form."""

    tenant_id: str = ""
    ticket_id: str = ""
    account: AccountDetails = field(default_factory=AccountDetails)
    license_types: List[str] = field(default_factory=list)
    groups: GroupSelection = field(default_factory=GroupSelection)
    metadata: Optional[ProvisioningMetadata] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ProvisioningRequest":
        """Build a request from a sanitized payload without raising on bad shapes."""

        if not isinstance(data, Mapping):
            return cls()
        return cls(
            tenant_id=_clean_str(get_field(data, "TenantId")),
            ticket_id=_clean_str(get_field(data, "TicketId")),
            account=AccountDetails.from_dict(get_field(data, "AccountDetails")),
            license_types=_string_list(get_field(data, "LicenseTypes")),
            groups=GroupSelection.from_dict(get_field(data, "Groups")),
        )

    @property
    def user_principal_name(self) -> str:
        return self.account.user_principal_name


__all__ = [
    "AccountDetails",
    "GroupSelection",
    "MirroredUsers",
    "ProvisioningMetadata",
    "ProvisioningRequest",
    "StepName",
    "StepStatus",
    "find_key",
    "get_field",
    "has_field",
    "migrate_legacy_fields",
]
