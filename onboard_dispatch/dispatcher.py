"""Provisioning dispatcher: runs the onboarding steps and builds the response."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .config import AppConfig, ConfigurationError
from .connectwise_client import ConnectWiseError
from .exchange import ExchangeError
from .graph_client import GraphClientError
from .metadata import initialize_metadata, merge_status, record_error, record_step_result
from .models import ProvisioningRequest, StepName, StepStatus, migrate_legacy_fields
from .pipeline import (
    ErrorKind,
    PipelineContext,
    Services,
    StepResult,
    build_services,
    classify_exception,
)
from .sanitizer import sanitize_payload
from . import steps as executors
from .validation import validate


CONTINUE = "continue"
ABORT = "abort"
STOP = "stop"

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

_USER_READY = (StepStatus.SUCCESSFUL, StepStatus.COMPLETED_WITH_WARNINGS)


@dataclass(frozen=True)
class StepDescriptor:
    """One row of the pipeline table.

    ``on_failure`` decides what a failed result does to the run: ``continue``
    records it and moves on, ``abort`` ends the run as failed, ``stop`` skips
    the remaining steps but keeps whatever was already applied.
    """

    name: str
    executor: Callable[[PipelineContext], StepResult]
    label: str = ""
    status_key: Optional[str] = None
    on_failure: str = CONTINUE
    condition: Optional[Callable[[PipelineContext], bool]] = None
    requires_user: bool = False
    retryable: bool = False
    records_success: bool = True


def _mirror_requested(context: PipelineContext) -> bool:
    return context.request.groups.mirrored.requested


def _groups_requested(context: PipelineContext) -> bool:
    return not context.groups.is_empty or context.request.groups.mirrored.requested


def _licenses_requested(context: PipelineContext) -> bool:
    requested = context.request.license_types
    if not requested:
        return False
    if not context.config.licensing.enabled:
        context.warn(
            "License assignment is disabled; not assigned: " + ", ".join(requested) + "."
        )
        return False
    return True


def _note_ready(context: PipelineContext) -> bool:
    return bool(context.note)


DEFAULT_STEPS: Sequence[StepDescriptor] = (
    StepDescriptor(
        name="mirroredGroups",
        label="Mirrored group lookup",
        executor=executors.lookup_mirrored_groups,
        status_key=StepName.GROUP_ASSIGNMENT,
        condition=_mirror_requested,
        retryable=True,
        records_success=False,
    ),
    StepDescriptor(
        name=StepName.USER_CREATION,
        label="User creation",
        executor=executors.create_user,
        status_key=StepName.USER_CREATION,
        on_failure=ABORT,
    ),
    StepDescriptor(
        name=StepName.GROUP_ASSIGNMENT,
        label="Group assignment",
        executor=executors.assign_groups,
        status_key=StepName.GROUP_ASSIGNMENT,
        condition=_groups_requested,
        requires_user=True,
    ),
    StepDescriptor(
        name=StepName.LICENSING,
        label="License assignment",
        executor=executors.assign_licenses,
        status_key=StepName.LICENSING,
        condition=_licenses_requested,
        requires_user=True,
    ),
    StepDescriptor(
        name="ticketNoteFormat",
        label="Ticket note formatting",
        executor=executors.format_ticket_note,
        on_failure=STOP,
        requires_user=True,
    ),
    StepDescriptor(
        name="ticketNotePublish",
        label="Ticket note publishing",
        executor=executors.publish_ticket_note,
        condition=_note_ready,
        requires_user=True,
    ),
)


@dataclass
class DispatchResponse:
    status: str
    message: str
    ticket_id: str
    upn: Optional[str]
    metadata: Dict[str, Any]
    errors: List[str] = field(default_factory=list)
    http_status: int = 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "ticketId": self.ticket_id,
            "upn": self.upn,
            "metadata": self.metadata,
            "errors": list(self.errors),
        }


class Dispatcher:
    """Runs one provisioning request through the configured step table."""

    def __init__(
        self,
        config: AppConfig,
        steps: Optional[Sequence[StepDescriptor]] = None,
        services_factory: Callable[[AppConfig, str], Services] = build_services,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.steps = tuple(steps if steps is not None else DEFAULT_STEPS)
        self._services_factory = services_factory
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

    # ------------------------------------------------------------------ #
    # Entry points                                                       #
    # ------------------------------------------------------------------ #
    def dispatch_raw(self, body: Union[str, bytes, None]) -> DispatchResponse:
        """Decode a raw HTTP body and dispatch it."""

        if isinstance(body, bytes):
            try:
                body = body.decode("utf-8-sig")
            except UnicodeDecodeError:
                return self._reject("Request body is not valid UTF-8.")
        if not body or not body.strip():
            return self._reject("Request body is empty.")
        try:
            payload = json.loads(body)
        except ValueError as exc:
            return self._reject(f"Request body is not valid JSON: {exc}")
        except RecursionError:
            return self._reject("Request body is nested too deeply.")
        if not isinstance(payload, dict):
            return self._reject("Request body must be a JSON object.")
        return self.dispatch(payload)

    def dispatch(self, payload: Dict[str, Any]) -> DispatchResponse:
        context = self._new_context()
        try:
            return self._run(context, payload)
        except Exception as exc:
            self.logger.exception("Unexpected error while dispatching ticket %s.", context.request.ticket_id)
            record_error(context.request, f"Unexpected error: {exc}")
            return self._respond(context, STATUS_FAILED, f"Provisioning failed unexpectedly: {exc}", 500)

    # ------------------------------------------------------------------ #
    # Pipeline                                                           #
    # ------------------------------------------------------------------ #
    def _new_context(self) -> PipelineContext:
        return PipelineContext(config=self.config, logger=self.logger)

    def _reject(self, message: str, http_status: int = 400) -> DispatchResponse:
        context = self._new_context()
        record_step_result(context.request, StepName.VALIDATION, StepStatus.FAILED, message)
        self.logger.warning("Rejected provisioning request: %s", message)
        return self._respond(context, STATUS_FAILED, message, http_status)

    def _run(self, context: PipelineContext, raw_payload: Dict[str, Any]) -> DispatchResponse:
        payload, migration_warnings = migrate_legacy_fields(sanitize_payload(raw_payload))
        context.payload = payload
        context.use_request(ProvisioningRequest.from_dict(payload))
        initialize_metadata(context.request)
        for warning in migration_warnings:
            context.warn(warning)

        errors = validate(payload)
        if errors:
            record_step_result(context.request, StepName.VALIDATION, StepStatus.FAILED)
            for error in errors:
                record_error(context.request, error)
            self.logger.warning(
                "Validation failed for ticket %s: %s", context.request.ticket_id or "<none>", errors
            )
            return self._respond(context, STATUS_FAILED, "Request validation failed.", 400)
        record_step_result(context.request, StepName.VALIDATION, StepStatus.SUCCESSFUL)

        self.logger.info(
            "Provisioning %s for ticket %s in tenant %s.",
            context.request.user_principal_name,
            context.request.ticket_id,
            context.request.tenant_id,
        )

        try:
            context.services = self._services_factory(self.config, context.request.tenant_id)
        except (ConfigurationError, GraphClientError, ConnectWiseError, ExchangeError) as exc:
            record_error(context.request, f"Provisioning services are unavailable: {exc}")
            self.logger.error("Unable to initialise provisioning services: %s", exc)
            return self._respond(context, STATUS_FAILED, f"Provisioning services are unavailable: {exc}", 500)

        stopped_by: Optional[StepResult] = None
        for step in self.steps:
            if not self._should_run(step, context):
                self.logger.debug("Skipping step %s.", step.name)
                continue
            result = self._execute(step, context)
            context.outputs[step.name] = result
            self._apply(step, context, result)
            if not result.failed:
                continue
            if step.on_failure == ABORT:
                http_status = 400 if result.error_kind == ErrorKind.INPUT else 500
                return self._respond(
                    context, STATUS_FAILED, f"{step.label or step.name} failed: {result.message}", http_status
                )
            if step.on_failure == STOP:
                stopped_by = result
                break

        return self._finish(context, stopped_by)

    def _should_run(self, step: StepDescriptor, context: PipelineContext) -> bool:
        if step.requires_user and context.status(StepName.USER_CREATION) not in _USER_READY:
            return False
        if step.condition is not None and not step.condition(context):
            return False
        return True

    def _execute(self, step: StepDescriptor, context: PipelineContext) -> StepResult:
        attempts = 1 + (self.config.pipeline.lookup_retries if step.retryable else 0)
        label = step.label or step.name
        result = StepResult.err(ErrorKind.UNEXPECTED, f"{label} did not run.")
        for attempt in range(attempts):
            self.logger.info("Running step %s (attempt %s of %s).", step.name, attempt + 1, attempts)
            try:
                result = step.executor(context)
            except Exception as exc:
                kind = classify_exception(exc)
                if kind == ErrorKind.UNEXPECTED:
                    self.logger.exception("Step %s raised an unexpected error.", step.name)
                result = StepResult.err(kind, f"{label} failed: {exc}")

            if not result.failed or result.error_kind not in ErrorKind.RETRYABLE:
                return result
            if attempt + 1 < attempts:
                delay = self.config.pipeline.retry_backoff_seconds * (2 ** attempt)
                self.logger.warning(
                    "Step %s failed (%s); retrying in %.1fs.", step.name, result.message, delay
                )
                self._sleep(delay)
        return result

    def _apply(self, step: StepDescriptor, context: PipelineContext, result: StepResult) -> None:
        for warning in result.warnings:
            context.warn(warning)

        succeeded = result.outcome in (StepStatus.SUCCESSFUL, StepStatus.COMPLETED_WITH_WARNINGS)
        if step.status_key and (step.records_success or not succeeded):
            previous = context.status(step.status_key)
            record_step_result(context.request, step.status_key, merge_status(previous, result.outcome))

        errors = result.errors or ([result.message] if result.failed else [])
        for error in errors:
            record_error(context.request, error)

        if result.failed:
            self.logger.error("Step %s failed: %s", step.name, result.message)
        elif errors:
            self.logger.warning("Step %s completed with errors: %s", step.name, errors)
        else:
            self.logger.info("Step %s finished: %s", step.name, result.message or result.outcome)

    # ------------------------------------------------------------------ #
    # Response assembly                                                  #
    # ------------------------------------------------------------------ #
    def _finish(self, context: PipelineContext, stopped_by: Optional[StepResult]) -> DispatchResponse:
        upn = context.upn
        error_count = len(context.metadata.errors)
        if stopped_by is not None:
            return self._respond(
                context,
                STATUS_PARTIAL,
                f"User {upn} was provisioned but the ticket note could not be prepared: {stopped_by.message}",
                200,
            )
        if error_count:
            return self._respond(
                context,
                STATUS_PARTIAL,
                f"User {upn} was provisioned with {error_count} error(s); see errors for details.",
                200,
            )
        return self._respond(context, STATUS_SUCCESS, f"User {upn} was provisioned successfully.", 200)

    def _respond(
        self, context: PipelineContext, status: str, message: str, http_status: int
    ) -> DispatchResponse:
        metadata = initialize_metadata(context.request)
        upn = context.user.get("userPrincipalName") or None
        self.logger.info(
            "Ticket %s finished with status %s (HTTP %s).",
            context.request.ticket_id or "<none>",
            status,
            http_status,
        )
        return DispatchResponse(
            status=status,
            message=message,
            ticket_id=context.request.ticket_id,
            upn=upn,
            metadata=metadata.to_dict(),
            errors=list(metadata.errors),
            http_status=http_status,
        )


__all__ = [
    "ABORT",
    "CONTINUE",
    "DEFAULT_STEPS",
    "DispatchResponse",
    "Dispatcher",
    "STOP",
    "StepDescriptor",
]
