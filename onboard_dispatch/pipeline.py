"""Shared state and result types passed between the dispatcher and its steps."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .config import AppConfig, ConfigurationError
from .connectwise_client import (
    ConnectWiseApiError,
    ConnectWiseClient,
    ConnectWiseConfigurationError,
    ConnectWiseError,
    ConnectWiseTimeoutError,
)
from .exchange import ExchangeError, ExchangeOnlineClient
from .graph_client import (
    GraphApiError,
    GraphClient,
    GraphClientError,
    GraphConfigurationError,
    GraphTimeoutError,
)
from .metadata import initialize_metadata, record_warning
from .models import GroupSelection, ProvisioningMetadata, ProvisioningRequest, StepStatus


class ErrorKind:
    INPUT = "input"
    REMOTE = "remote"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    UNEXPECTED = "unexpected"

    RETRYABLE = (REMOTE, TIMEOUT)


_NON_INPUT_CLIENT_ERRORS = {401, 403, 408, 429}


@dataclass
class StepResult:
    """Outcome of a single pipeline step."""

    outcome: str
    data: Dict[str, Any] = field(default_factory=dict)
    message: str = ""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None

    @classmethod
    def ok(
        cls,
        data: Optional[Dict[str, Any]] = None,
        message: str = "",
        warnings: Optional[List[str]] = None,
    ) -> "StepResult":
        warnings = list(warnings or [])
        outcome = StepStatus.COMPLETED_WITH_WARNINGS if warnings else StepStatus.SUCCESSFUL
        return cls(outcome=outcome, data=dict(data or {}), message=message, warnings=warnings)

    @classmethod
    def err(
        cls,
        kind: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        warnings: Optional[List[str]] = None,
    ) -> "StepResult":
        return cls(
            outcome=StepStatus.FAILED,
            data=dict(data or {}),
            message=message,
            errors=[message],
            warnings=list(warnings or []),
            error_kind=kind,
        )

    @classmethod
    def partial(
        cls,
        data: Optional[Dict[str, Any]],
        message: str,
        errors: List[str],
        warnings: Optional[List[str]] = None,
        kind: str = ErrorKind.REMOTE,
    ) -> "StepResult":
        return cls(
            outcome=StepStatus.PARTIAL,
            data=dict(data or {}),
            message=message,
            errors=list(errors),
            warnings=list(warnings or []),
            error_kind=kind,
        )

    @classmethod
    def from_counts(
        cls,
        data: Dict[str, Any],
        succeeded: int,
        errors: List[str],
        warnings: List[str],
        message: str,
        kind: Optional[str] = None,
    ) -> "StepResult":
        """Pick ok/partial/failed for steps that act on several items."""

        if not errors:
            return cls.ok(data, message, warnings)
        if succeeded:
            return cls.partial(data, message, errors, warnings, kind or ErrorKind.REMOTE)
        result = cls.err(kind or ErrorKind.REMOTE, message, data, warnings)
        result.errors = list(errors)
        return result

    @property
    def failed(self) -> bool:
        return self.outcome == StepStatus.FAILED


def classify_exception(exc: BaseException) -> str:
    """Map an exception raised by a collaborator to an :class:`ErrorKind`."""

    if isinstance(exc, (requests.Timeout, GraphTimeoutError, ConnectWiseTimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConfigurationError, GraphConfigurationError, ConnectWiseConfigurationError)):
        return ErrorKind.CONFIGURATION
    if isinstance(exc, (GraphApiError, ConnectWiseApiError)):
        status = exc.status_code
        if 400 <= status < 500 and status not in _NON_INPUT_CLIENT_ERRORS:
            return ErrorKind.INPUT
        return ErrorKind.REMOTE
    if isinstance(exc, ExchangeError) and "timed out" in str(exc):
        return ErrorKind.TIMEOUT
    if isinstance(
        exc, (requests.RequestException, GraphClientError, ConnectWiseError, ExchangeError)
    ):
        return ErrorKind.REMOTE
    return ErrorKind.UNEXPECTED


@dataclass
class Services:
    """Remote collaborators available to the steps of one invocation."""

    graph: Any
    connectwise: Any = None
    exchange: Any = None


def build_services(config: AppConfig, tenant_id: str) -> Services:
    graph = GraphClient(config.graph, tenant_id)
    connectwise = ConnectWiseClient(config.connectwise) if config.connectwise.has_credentials else None
    exchange = None
    if config.exchange.has_credentials:
        organization = tenant_id if "." in tenant_id else None
        exchange = ExchangeOnlineClient(config.exchange, organization)
    return Services(graph=graph, connectwise=connectwise, exchange=exchange)


@dataclass
class PipelineContext:
    """Everything one invocation knows, handed explicitly to every step."""

    config: AppConfig
    logger: logging.Logger
    request: ProvisioningRequest = field(default_factory=ProvisioningRequest)
    payload: Dict[str, Any] = field(default_factory=dict)
    services: Optional[Services] = None
    groups: GroupSelection = field(default_factory=GroupSelection)
    # Populated by user creation: id, userPrincipalName, password, usageLocation.
    user: Dict[str, Any] = field(default_factory=dict)
    # Lower-cased group reference -> Graph group object, shared between steps.
    resolved_groups: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    outputs: Dict[str, StepResult] = field(default_factory=dict)
    note: Optional[str] = None

    def use_request(self, request: ProvisioningRequest) -> None:
        self.request = request
        self.groups = copy.deepcopy(request.groups)

    @property
    def metadata(self) -> ProvisioningMetadata:
        return initialize_metadata(self.request)

    def status(self, step: str) -> str:
        return self.metadata.status.get(step, StepStatus.PENDING)

    def warn(self, message: str) -> None:
        self.logger.warning(message)
        record_warning(self.request, message)

    @property
    def graph(self) -> Any:
        if self.services is None or self.services.graph is None:
            raise ConfigurationError("Microsoft Graph client is not available.")
        return self.services.graph

    @property
    def upn(self) -> str:
        return str(self.user.get("userPrincipalName") or self.request.user_principal_name)


__all__ = [
    "ErrorKind",
    "PipelineContext",
    "Services",
    "StepResult",
    "build_services",
    "classify_exception",
]
