"""Step executors invoked by the dispatcher.

Each executor takes the :class:`~onboard_dispatch.pipeline.PipelineContext`,
talks to its remote collaborator and returns a
:class:`~onboard_dispatch.pipeline.StepResult`. Failures a collaborator is
expected to produce are returned as results; anything else propagates to the
dispatcher.
"""
from __future__ import annotations

import secrets
import string
from typing import Any, Dict, List, Optional, Tuple

import requests

from .connectwise_client import ConnectWiseError
from .exchange import ExchangeError
from .graph_client import GraphApiError, GraphClientError
from .models import StepName
from .pipeline import ErrorKind, PipelineContext, StepResult, classify_exception

# AdditionalDetails keys copied onto the Graph user object.
_USER_ATTRIBUTES = {
    "JobTitle": "jobTitle",
    "Department": "department",
    "OfficeLocation": "officeLocation",
    "MobilePhone": "mobilePhone",
    "CompanyName": "companyName",
    "EmployeeId": "employeeId",
    "City": "city",
    "State": "state",
    "Country": "country",
    "StreetAddress": "streetAddress",
    "PostalCode": "postalCode",
}
# Remote failures recorded against a single item; the step moves on to the next one.
GRAPH_ERRORS = (GraphClientError, requests.RequestException)
_PASSWORD_SYMBOLS = "!@#$%^&*-_=+?"
_GRAPH_CATEGORIES = ("teams", "security", "software")
_CATEGORY_LABELS = {
    "teams": "Teams",
    "security": "Security",
    "software": "Software",
    "distribution": "Distribution",
    "shared_mailboxes": "Shared mailbox",
}


def generate_password(length: int = 16) -> str:
    """Generate a random password meeting Entra ID complexity rules."""

    length = max(length, 12)
    pools = (string.ascii_uppercase, string.ascii_lowercase, string.digits, _PASSWORD_SYMBOLS)
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def classify_group(group: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(category, skip_reason)`` for a Graph group object."""

    group_types = group.get("groupTypes") or []
    if group.get("membershipRule") or "DynamicMembership" in group_types:
        return None, "membership is rule-based"
    if group.get("onPremisesSyncEnabled"):
        return None, "group is synced from on-premises Active Directory"
    if "Unified" in group_types:
        return "teams", None
    if group.get("mailEnabled"):
        return "distribution", None
    if group.get("securityEnabled"):
        return "security", None
    return None, "group type is not supported"


def _group_name(group: Dict[str, Any]) -> str:
    return str(group.get("displayName") or group.get("mail") or group.get("id") or "")


# --------------------------------------------------------------------------- #
# Mirrored group lookup                                                       #
# --------------------------------------------------------------------------- #
def lookup_mirrored_groups(context: PipelineContext) -> StepResult:
    """Copy group memberships from the mirrored user(s) onto the request."""

    mirrored = context.request.groups.mirrored
    graph = context.graph
    found: Dict[str, List[str]] = {
        "teams": [],
        "security": [],
        "distribution": [],
        "shared_mailboxes": [],
    }
    errors: List[str] = []
    warnings: List[str] = []
    error_kind: Optional[str] = None
    lookups = 0

    references = []
    if mirrored.mirrored_user_email:
        references.append((mirrored.mirrored_user_email, ("teams", "security")))
    if mirrored.mirrored_user_groups:
        references.append((mirrored.mirrored_user_groups, ("distribution", "shared_mailboxes")))

    for reference, categories in references:
        try:
            user = graph.find_user(reference, select="id,userPrincipalName")
            if not user or not user.get("id"):
                errors.append(f"Mirrored user {reference} was not found in tenant {context.request.tenant_id}.")
                error_kind = error_kind or ErrorKind.INPUT
                continue
            memberships = graph.get_user_groups(user["id"])
        except GRAPH_ERRORS as exc:
            errors.append(f"Mirrored group lookup failed for {reference}: {exc}")
            error_kind = classify_exception(exc)
            continue

        lookups += 1
        for group in memberships:
            category, skip_reason = classify_group(group)
            name = _group_name(group)
            if skip_reason:
                warnings.append(f"Mirrored group '{name}' skipped: {skip_reason}.")
                continue
            if category not in categories:
                continue
            found[category].append(name)
            context.resolved_groups[name.lower()] = group

        if "shared_mailboxes" in categories:
            exchange = context.services.exchange if context.services else None
            if exchange is None:
                warnings.append(
                    f"Shared mailbox access of {reference} was not copied: "
                    "Exchange Online is not configured."
                )
            else:
                try:
                    found["shared_mailboxes"].extend(exchange.list_shared_mailbox_access(reference))
                except ExchangeError as exc:
                    errors.append(f"Shared mailbox lookup failed for {reference}: {exc}")
                    error_kind = error_kind or classify_exception(exc)

    for category, names in found.items():
        context.groups.merge(category, names)

    data = {
        "teams": found["teams"],
        "security": found["security"],
        "distribution": found["distribution"],
        "sharedMailboxes": found["shared_mailboxes"],
    }
    total = sum(len(names) for names in found.values())
    message = f"Found {total} group(s) to mirror."
    return StepResult.from_counts(data, lookups, errors, warnings, message, error_kind)


# --------------------------------------------------------------------------- #
# User creation                                                               #
# --------------------------------------------------------------------------- #
def build_user_payload(context: PipelineContext, password: str) -> Dict[str, Any]:
    account = context.request.account
    usage_location = str(
        account.detail("UsageLocation") or context.config.graph.default_usage_location or ""
    ).strip().upper()

    payload: Dict[str, Any] = {
        "accountEnabled": True,
        "displayName": account.display_name,
        "givenName": account.given_name,
        "surname": account.surname,
        "mailNickname": account.mail_nickname,
        "userPrincipalName": account.user_principal_name,
        "passwordProfile": {
            "password": password,
            "forceChangePasswordNextSignIn": True,
        },
    }
    if len(usage_location) == 2:
        payload["usageLocation"] = usage_location
    for source, target in _USER_ATTRIBUTES.items():
        value = account.detail(source)
        if value not in (None, ""):
            payload[target] = str(value)
    phones = account.detail("BusinessPhones") or account.detail("BusinessPhone")
    if phones:
        payload["businessPhones"] = [phones] if isinstance(phones, str) else [str(p) for p in phones][:1]
    return payload


def create_user(context: PipelineContext) -> StepResult:
    graph = context.graph
    request = context.request
    upn = request.user_principal_name
    warnings: List[str] = []

    try:
        existing = graph.find_user(upn, select="id,userPrincipalName,usageLocation")
    except GRAPH_ERRORS as exc:
        return StepResult.err(classify_exception(exc), f"Unable to check whether {upn} exists: {exc}")

    if existing and existing.get("id"):
        if not context.config.pipeline.reuse_existing_user:
            return StepResult.err(
                ErrorKind.INPUT,
                f"User {upn} already exists in tenant {request.tenant_id}.",
                data={"resultStatus": "failed", "principalName": upn},
            )
        context.user = {
            "id": existing["id"],
            "userPrincipalName": existing.get("userPrincipalName") or upn,
            "usageLocation": existing.get("usageLocation"),
            "password": None,
            "reused": True,
        }
        return StepResult.ok(
            {"resultStatus": "success", "principalName": context.user["userPrincipalName"]},
            f"Reusing existing user {upn}.",
            [f"User {upn} already existed; continuing with the existing account."],
        )

    password = str(request.account.detail("Password") or "") or generate_password(
        context.config.pipeline.password_length
    )
    payload = build_user_payload(context, password)
    try:
        created = graph.create_user(payload)
    except GRAPH_ERRORS as exc:
        return StepResult.err(
            classify_exception(exc),
            f"Failed to create user {upn}: {exc}",
            data={"resultStatus": "failed", "principalName": upn},
        )

    user_id = created.get("id")
    if not user_id:
        return StepResult.err(
            ErrorKind.REMOTE,
            f"Microsoft Graph did not return an id for {upn}.",
            data={"resultStatus": "failed", "principalName": upn},
        )

    context.user = {
        "id": user_id,
        "userPrincipalName": created.get("userPrincipalName") or upn,
        "usageLocation": payload.get("usageLocation"),
        "password": password,
        "reused": False,
    }
    context.logger.info("Created user %s (id=%s).", context.user["userPrincipalName"], user_id)

    manager = request.account.detail("Manager")
    if manager:
        try:
            manager_user = graph.find_user(str(manager), select="id")
            if manager_user and manager_user.get("id"):
                graph.set_manager(user_id, manager_user["id"])
            else:
                warnings.append(f"Manager {manager} was not found; manager not set.")
        except GRAPH_ERRORS as exc:
            warnings.append(f"Unable to set manager {manager}: {exc}")

    return StepResult.ok(
        {
            "resultStatus": "success",
            "principalName": context.user["userPrincipalName"],
            "userId": user_id,
        },
        f"User {context.user['userPrincipalName']} created.",
        warnings,
    )


# --------------------------------------------------------------------------- #
# Group assignment                                                            #
# --------------------------------------------------------------------------- #
def _resolve_group(context: PipelineContext, name: str) -> Optional[Dict[str, Any]]:
    cached = context.resolved_groups.get(name.lower())
    if cached is not None:
        return cached
    group = context.graph.find_group(name)
    if group:
        context.resolved_groups[name.lower()] = group
    return group


def _is_existing_member_error(exc: GraphApiError) -> bool:
    return exc.status_code == 400 and "already exist" in exc.description.lower()


def assign_groups(context: PipelineContext) -> StepResult:
    groups = context.groups
    user_id = context.user["id"]
    upn = context.upn
    exchange = context.services.exchange if context.services else None

    assigned: List[str] = []
    skipped: List[str] = []
    failed: List[str] = []
    errors: List[str] = []
    warnings: List[str] = []
    error_kind: Optional[str] = None

    exchange_work: List[Tuple[str, str]] = [
        ("distribution", name) for name in groups.distribution
    ] + [("shared_mailboxes", name) for name in groups.shared_mailboxes]

    for category in _GRAPH_CATEGORIES:
        label = _CATEGORY_LABELS[category]
        for name in getattr(groups, category):
            try:
                group = _resolve_group(context, name)
                if not group:
                    failed.append(name)
                    errors.append(f"{label} group '{name}' was not found.")
                    error_kind = error_kind or ErrorKind.INPUT
                    continue
                kind, skip_reason = classify_group(group)
                if skip_reason:
                    skipped.append(name)
                    warnings.append(f"{label} group '{name}' skipped: {skip_reason}.")
                    continue
                if kind == "distribution":
                    exchange_work.append(("distribution", group.get("mail") or name))
                    continue
                try:
                    context.graph.add_user_to_group(user_id, group["id"])
                except GraphApiError as exc:
                    if not _is_existing_member_error(exc):
                        raise
                assigned.append(name)
                context.logger.info("Added %s to %s group %s.", upn, label, name)
            except GRAPH_ERRORS as exc:
                failed.append(name)
                errors.append(f"Failed to add {upn} to {label} group '{name}': {exc}")
                error_kind = error_kind or classify_exception(exc)

    for category, name in exchange_work:
        label = _CATEGORY_LABELS[category]
        if exchange is None:
            skipped.append(name)
            warnings.append(f"{label} '{name}' skipped: Exchange Online is not configured.")
            continue
        try:
            if category == "distribution":
                exchange.add_distribution_group_member(name, upn)
            else:
                exchange.add_shared_mailbox_access(name, upn)
            assigned.append(name)
            context.logger.info("Added %s to %s %s via Exchange Online.", upn, label, name)
        except ExchangeError as exc:
            failed.append(name)
            errors.append(f"Failed to add {upn} to {label} '{name}': {exc}")
            error_kind = error_kind or classify_exception(exc)

    if not (assigned or skipped or failed):
        message = "No groups to assign."
    else:
        message = f"Assigned {len(assigned)} group(s); {len(failed)} failed; {len(skipped)} skipped."
    data = {
        "message": message,
        "errors": list(errors),
        "groupsAssigned": assigned,
        "groupsSkipped": skipped,
        "groupsFailed": failed,
    }
    return StepResult.from_counts(data, len(assigned), errors, warnings, message, error_kind)


# --------------------------------------------------------------------------- #
# Licensing                                                                   #
# --------------------------------------------------------------------------- #
def _sku_index(skus: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    index: Dict[str, Dict[str, Any]] = {}
    for sku in skus:
        for key in (sku.get("skuId"), sku.get("skuPartNumber")):
            if key:
                index[str(key).lower()] = sku
    return index


def _available_units(sku: Dict[str, Any]) -> int:
    prepaid = sku.get("prepaidUnits") or {}
    return int(prepaid.get("enabled") or 0) - int(sku.get("consumedUnits") or 0)


def _ensure_usage_location(context: PipelineContext) -> Optional[str]:
    """Make sure the user has a usage location; return an error message if not possible."""

    if context.user.get("usageLocation"):
        return None
    default = str(context.config.graph.default_usage_location or "").strip().upper()
    if len(default) != 2:
        return (
            f"User {context.upn} has no usage location and no default usage location is configured; "
            "licenses cannot be assigned."
        )
    context.graph.update_user(context.user["id"], usageLocation=default)
    context.user["usageLocation"] = default
    return None


def assign_licenses(context: PipelineContext) -> StepResult:
    upn = context.upn
    aliases = context.config.licensing.aliases

    try:
        location_error = _ensure_usage_location(context)
        if location_error:
            return StepResult.err(
                ErrorKind.CONFIGURATION, location_error, data={"resultStatus": "failed"}
            )
        index = _sku_index(context.graph.list_subscribed_skus())
    except GRAPH_ERRORS as exc:
        return StepResult.err(
            classify_exception(exc),
            f"Unable to prepare license assignment for {upn}: {exc}",
            data={"resultStatus": "failed"},
        )

    assigned: List[str] = []
    failed: List[str] = []
    errors: List[str] = []
    error_kind: Optional[str] = None

    for requested in context.request.license_types:
        lookup = aliases.get(requested.lower(), requested).lower()
        sku = index.get(lookup)
        if sku is None:
            failed.append(requested)
            errors.append(f"License '{requested}' is not available in tenant {context.request.tenant_id}.")
            error_kind = error_kind or ErrorKind.INPUT
            continue
        part_number = str(sku.get("skuPartNumber") or requested)
        if _available_units(sku) <= 0:
            failed.append(requested)
            errors.append(f"No available seats for license {part_number}.")
            error_kind = error_kind or ErrorKind.INPUT
            continue
        try:
            context.graph.assign_license(context.user["id"], sku["skuId"])
        except GRAPH_ERRORS as exc:
            failed.append(requested)
            errors.append(f"Failed to assign license {part_number} to {upn}: {exc}")
            error_kind = error_kind or classify_exception(exc)
            continue
        assigned.append(part_number)
        context.logger.info("Assigned license %s to %s.", part_number, upn)

    if errors and not assigned:
        result_status = "failed"
    elif errors:
        result_status = "partial"
    else:
        result_status = "success"
    message = f"Assigned {len(assigned)} of {len(context.request.license_types)} license(s)."
    data = {
        "message": message,
        "resultStatus": result_status,
        "licensesAssigned": assigned,
        "licensesFailed": failed,
    }
    return StepResult.from_counts(data, len(assigned), errors, [], message, error_kind)


# --------------------------------------------------------------------------- #
# Ticket note                                                                 #
# --------------------------------------------------------------------------- #
def _output_list(context: PipelineContext, step: str, key: str) -> List[str]:
    result = context.outputs.get(step)
    if result is None:
        return []
    return [str(item) for item in result.data.get(key) or []]


def format_ticket_note(context: PipelineContext) -> StepResult:
    request = context.request
    metadata = context.metadata
    account = request.account

    lines = [
        f"New user onboarding: {account.display_name} ({context.upn})",
        "",
        f"User creation: {metadata.status[StepName.USER_CREATION]}",
    ]
    if context.user.get("reused"):
        lines.append("The account already existed and was reused.")
    password = context.user.get("password")
    if password and context.config.connectwise.include_password_in_note:
        lines.append(f"Temporary password: {password} (must be changed at next sign-in)")

    lines.append(f"Group assignment: {metadata.status[StepName.GROUP_ASSIGNMENT]}")
    for label, key in (
        ("Added to", "groupsAssigned"),
        ("Skipped", "groupsSkipped"),
        ("Failed", "groupsFailed"),
    ):
        names = _output_list(context, StepName.GROUP_ASSIGNMENT, key)
        if names:
            lines.append(f"  {label}: {', '.join(names)}")

    lines.append(f"Licensing: {metadata.status[StepName.LICENSING]}")
    for label, key in (("Assigned", "licensesAssigned"), ("Failed", "licensesFailed")):
        names = _output_list(context, StepName.LICENSING, key)
        if names:
            lines.append(f"  {label}: {', '.join(names)}")

    if metadata.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  - {error}" for error in metadata.errors)
    if metadata.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {warning}" for warning in metadata.warnings)

    context.note = "\n".join(lines)
    return StepResult.ok({"ticketId": request.ticket_id, "message": context.note}, "Ticket note prepared.")


def publish_ticket_note(context: PipelineContext) -> StepResult:
    ticket_id = context.request.ticket_id
    connectwise = context.services.connectwise if context.services else None
    if connectwise is None:
        return StepResult.ok(
            {"status": "Failure", "message": "ConnectWise is not configured."},
            "Ticket note not posted.",
            [f"ConnectWise is not configured; note was not posted to ticket {ticket_id}."],
        )
    try:
        connectwise.add_ticket_note(ticket_id, context.note or "")
    except (ConnectWiseError, requests.RequestException) as exc:
        return StepResult.err(
            classify_exception(exc),
            f"Failed to post note to ticket {ticket_id}: {exc}",
            data={"status": "Failure", "message": str(exc)},
        )
    context.logger.info("Posted onboarding note to ticket %s.", ticket_id)
    return StepResult.ok(
        {"status": "Success", "message": f"Note added to ticket {ticket_id}."},
        f"Note added to ticket {ticket_id}.",
    )


__all__ = [
    "assign_groups",
    "assign_licenses",
    "build_user_payload",
    "classify_group",
    "create_user",
    "format_ticket_note",
    "generate_password",
    "lookup_mirrored_groups",
    "publish_ticket_note",
]
