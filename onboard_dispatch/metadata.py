"""Helpers maintaining the ``metadata`` record attached to a request."""
from __future__ import annotations

from typing import Any, Optional

from .models import ProvisioningMetadata, StepName, StepStatus

_SEVERITY = {
    StepStatus.PENDING: 0,
    StepStatus.SUCCESSFUL: 1,
    StepStatus.COMPLETED_WITH_WARNINGS: 2,
    StepStatus.PARTIAL: 3,
    StepStatus.FAILED: 4,
}


def get_metadata(request: Any) -> Optional[ProvisioningMetadata]:
    if isinstance(request, dict):
        return request.get("metadata")
    return getattr(request, "metadata", None)


def initialize_metadata(request: Any) -> ProvisioningMetadata:
    """Attach fresh metadata to ``request`` unless it already carries some."""

    existing = get_metadata(request)
    if existing is not None:
        return existing
    metadata = ProvisioningMetadata()
    if isinstance(request, dict):
        request["metadata"] = metadata
    else:
        request.metadata = metadata
    return metadata


def record_step_result(
    request: Any, step: str, outcome: str, error: Optional[str] = None
) -> ProvisioningMetadata:
    if step not in StepName.ALL:
        raise ValueError(f"Unknown step name '{step}'.")
    if outcome not in StepStatus.ALL:
        raise ValueError(f"Unknown step status '{outcome}'.")
    metadata = initialize_metadata(request)
    metadata.status[step] = outcome
    if error:
        metadata.errors.append(error)
    return metadata


def record_error(request: Any, error: str) -> None:
    initialize_metadata(request).errors.append(error)


def record_warning(request: Any, warning: str) -> None:
    initialize_metadata(request).warnings.append(warning)


def merge_status(previous: str, outcome: str) -> str:
    """Combine two outcomes written to the same status key.

    A failed first half followed by a successful second half is reported as
    ``partial``; otherwise the more severe outcome wins.
    """

    if previous == StepStatus.PENDING:
        return outcome
    if outcome == StepStatus.PENDING:
        return previous
    if (previous == StepStatus.FAILED) != (outcome == StepStatus.FAILED):
        return StepStatus.PARTIAL
    return max(previous, outcome, key=_SEVERITY.__getitem__)


__all__ = [
    "get_metadata",
    "initialize_metadata",
    "merge_status",
    "record_error",
    "record_step_result",
    "record_warning",
]
