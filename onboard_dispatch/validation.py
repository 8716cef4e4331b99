"""Schema checks for provisioning requests."""
from __future__ import annotations

import re
from typing import Any, List, Mapping

from .models import get_field, has_field
from .sanitizer import is_placeholder

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_GROUP_LISTS = ("Software", "Teams", "Security", "Distribution", "SharedMailboxes")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip() or is_placeholder(value)
    return False


def _is_list(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _has_entries(value: Any) -> bool:
    return _is_list(value) and any(not _is_blank(item) for item in value)


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_PATTERN.match(value.strip()))


def _check_required(payload: Mapping[str, Any], name: str, label: str, errors: List[str]) -> None:
    value = get_field(payload, name)
    if _is_blank(value):
        errors.append(f"{label} is required.")
    elif not isinstance(value, (str, int)) or isinstance(value, bool):
        errors.append(f"{label} must be a string.")


def _check_account(payload: Mapping[str, Any], errors: List[str]) -> None:
    account = get_field(payload, "AccountDetails")
    if account is None:
        errors.append("AccountDetails is required.")
        return
    if not isinstance(account, Mapping):
        errors.append("AccountDetails must be an object.")
        return

    _check_required(account, "GivenName", "AccountDetails.GivenName", errors)
    _check_required(account, "Surname", "AccountDetails.Surname", errors)

    upn = get_field(account, "UserPrincipalName")
    if _is_blank(upn):
        errors.append("AccountDetails.UserPrincipalName is required.")
    elif not is_valid_email(upn):
        errors.append(
            f"AccountDetails.UserPrincipalName '{upn}' is not a valid email address."
        )

    additional = get_field(account, "AdditionalDetails")
    if additional is not None and not isinstance(additional, Mapping):
        errors.append("AccountDetails.AdditionalDetails must be an object.")


def _check_groups(payload: Mapping[str, Any], errors: List[str]) -> None:
    if not has_field(payload, "Groups"):
        return
    groups = get_field(payload, "Groups")
    if not isinstance(groups, Mapping):
        errors.append("Groups must be an object.")
        return

    for name in _GROUP_LISTS:
        if has_field(groups, name) and not _is_list(get_field(groups, name)):
            errors.append(f"Groups.{name} must be an array.")

    if not has_field(groups, "MirroredUsers"):
        return
    mirrored = get_field(groups, "MirroredUsers")
    if not isinstance(mirrored, Mapping):
        errors.append("Groups.MirroredUsers must be an object.")
        return

    mirror_email = get_field(mirrored, "MirroredUserEmail")
    mirror_groups = get_field(mirrored, "MirroredUserGroups")

    if not _is_blank(mirror_email):
        if not is_valid_email(mirror_email):
            errors.append(
                f"Groups.MirroredUsers.MirroredUserEmail '{mirror_email}' is not a valid email address."
            )
        conflicting = [
            name for name in ("Teams", "Security") if _has_entries(get_field(groups, name))
        ]
        if conflicting:
            errors.append(
                "Groups.MirroredUsers.MirroredUserEmail cannot be combined with "
                + " or ".join(f"Groups.{name}" for name in conflicting)
                + "; Teams and Security groups are copied from the mirrored user."
            )

    if not _is_blank(mirror_groups):
        conflicting = [
            name
            for name in ("Distribution", "SharedMailboxes")
            if _has_entries(get_field(groups, name))
        ]
        if conflicting:
            errors.append(
                "Groups.MirroredUsers.MirroredUserGroups cannot be combined with "
                + " or ".join(f"Groups.{name}" for name in conflicting)
                + "; Distribution and SharedMailboxes are copied from the mirrored user."
            )


def validate(payload: Any) -> List[str]:
    """Return every rule violation found in ``payload``; an empty list means valid."""

    if not isinstance(payload, Mapping):
        return ["Request body must be a JSON object."]

    errors: List[str] = []
    _check_required(payload, "TenantId", "TenantId", errors)
    _check_required(payload, "TicketId", "TicketId", errors)
    _check_account(payload, errors)

    if has_field(payload, "LicenseTypes") and not _is_list(get_field(payload, "LicenseTypes")):
        errors.append("LicenseTypes must be an array.")

    _check_groups(payload, errors)
    return errors


__all__ = ["EMAIL_PATTERN", "is_valid_email", "validate"]
