"""Unit tests for individual step executors."""

import logging
import string
from unittest.mock import MagicMock

import pytest
import requests

from onboard_dispatch.exchange import ExchangeError
from onboard_dispatch.graph_client import GraphApiError
from onboard_dispatch.metadata import initialize_metadata
from onboard_dispatch.models import ProvisioningRequest, StepStatus
from onboard_dispatch.pipeline import ErrorKind, PipelineContext, Services, StepResult, classify_exception
from onboard_dispatch.sanitizer import sanitize_payload
from onboard_dispatch import steps

from conftest import UPN


@pytest.fixture
def context(app_config, services, valid_payload):
    ctx = PipelineContext(config=app_config, logger=logging.getLogger("test"))
    ctx.use_request(ProvisioningRequest.from_dict(sanitize_payload(valid_payload)))
    initialize_metadata(ctx.request)
    ctx.services = services
    return ctx


@pytest.fixture
def created(context):
    context.user = {"id": "user-1", "userPrincipalName": UPN, "usageLocation": "US", "password": "pw"}
    return context


class TestPasswordGeneration:

    def test_contains_every_character_class(self):
        password = steps.generate_password(16)
        assert len(password) == 16
        assert any(c in string.ascii_uppercase for c in password)
        assert any(c in string.ascii_lowercase for c in password)
        assert any(c in string.digits for c in password)

    def test_minimum_length(self):
        assert len(steps.generate_password(4)) == 12


class TestClassifyGroup:

    @pytest.mark.parametrize(
        "group, expected",
        [
            ({"groupTypes": ["Unified"]}, ("teams", None)),
            ({"groupTypes": [], "mailEnabled": True}, ("distribution", None)),
            ({"groupTypes": [], "securityEnabled": True}, ("security", None)),
        ],
    )
    def test_categories(self, group, expected):
        assert steps.classify_group(group) == expected

    def test_dynamic_and_synced_groups_are_skipped(self):
        assert steps.classify_group({"groupTypes": ["DynamicMembership"]})[0] is None
        assert steps.classify_group({"onPremisesSyncEnabled": True, "securityEnabled": True})[0] is None


class TestCreateUser:

    def test_payload_uses_default_usage_location(self, context):
        context.request.account.additional_details.pop("UsageLocation")
        context.config.graph.default_usage_location = "gb"
        payload = steps.build_user_payload(context, "Secret123!")
        assert payload["usageLocation"] == "GB"
        assert payload["mailNickname"] == "jane.doe"
        assert payload["passwordProfile"]["forceChangePasswordNextSignIn"] is True

    def test_creates_user_and_sets_manager(self, context, graph):
        context.request.account.additional_details["Manager"] = "boss@contoso.com"
        graph.find_user.side_effect = [None, {"id": "boss-id"}]
        result = steps.create_user(context)

        assert result.outcome == StepStatus.SUCCESSFUL
        assert context.user["id"] == "user-1"
        assert context.user["password"]
        graph.set_manager.assert_called_once_with("user-1", "boss-id")

    def test_missing_manager_is_warning(self, context, graph):
        context.request.account.additional_details["Manager"] = "ghost@contoso.com"
        result = steps.create_user(context)
        assert result.outcome == StepStatus.COMPLETED_WITH_WARNINGS
        assert result.warnings == ["Manager ghost@contoso.com was not found; manager not set."]

    def test_invalid_request_from_graph_is_input_error(self, context, graph):
        graph.create_user.side_effect = GraphApiError(400, "Request_BadRequest", "Invalid value")
        result = steps.create_user(context)
        assert result.failed
        assert result.error_kind == ErrorKind.INPUT
        assert context.user == {}


class TestAssignGroups:

    def test_existing_membership_counts_as_success(self, created, graph):
        graph.add_user_to_group.side_effect = GraphApiError(
            400, "Request_BadRequest", "One or more added object references already exist"
        )
        result = steps.assign_groups(created)
        assert result.outcome == StepStatus.SUCCESSFUL
        assert result.data["groupsAssigned"] == ["Finance Team"]

    def test_exchange_groups_skipped_without_exchange(self, created):
        created.groups.distribution = ["all@contoso.com"]
        created.groups.shared_mailboxes = ["info@contoso.com"]
        result = steps.assign_groups(created)
        assert result.outcome == StepStatus.COMPLETED_WITH_WARNINGS
        assert result.data["groupsSkipped"] == ["all@contoso.com", "info@contoso.com"]

    def test_exchange_groups(self, created, services):
        services.exchange = MagicMock()
        services.exchange.add_shared_mailbox_access.side_effect = ExchangeError("denied")
        created.groups.teams = []
        created.groups.distribution = ["all@contoso.com"]
        created.groups.shared_mailboxes = ["info@contoso.com"]
        result = steps.assign_groups(created)

        services.exchange.add_distribution_group_member.assert_called_once_with("all@contoso.com", UPN)
        assert result.outcome == StepStatus.PARTIAL
        assert result.data["groupsFailed"] == ["info@contoso.com"]

    def test_mail_enabled_security_group_goes_through_exchange(self, created, graph, services):
        services.exchange = MagicMock()
        graph.find_group.side_effect = lambda name: {
            "id": "dl", "displayName": name, "mail": "finance@contoso.com",
            "groupTypes": [], "mailEnabled": True,
        }
        steps.assign_groups(created)
        graph.add_user_to_group.assert_not_called()
        services.exchange.add_distribution_group_member.assert_called_once_with("finance@contoso.com", UPN)

    def test_connection_error_on_one_group_does_not_stop_the_others(self, created, graph):
        created.groups.teams = ["Finance Team", "Flaky Team", "Sales Team"]

        def add(user_id, group_id):
            if group_id == "group-Flaky Team":
                raise requests.ConnectionError("connection reset")

        graph.add_user_to_group.side_effect = add
        result = steps.assign_groups(created)

        attempted = [call[0][1] for call in graph.add_user_to_group.call_args_list]
        assert attempted == ["group-Finance Team", "group-Flaky Team", "group-Sales Team"]
        assert result.outcome == StepStatus.PARTIAL
        assert result.data["groupsAssigned"] == ["Finance Team", "Sales Team"]
        assert result.data["groupsFailed"] == ["Flaky Team"]
        assert len(result.errors) == 1
        assert "connection reset" in result.errors[0]

    def test_every_group_failing_is_failed(self, created, graph):
        graph.find_group.side_effect = GraphApiError(503, "ServiceUnavailable", "down")
        result = steps.assign_groups(created)
        assert result.failed
        assert result.error_kind == ErrorKind.REMOTE


class TestAssignLicenses:

    def test_timeout_on_one_license_does_not_stop_the_others(self, created, graph):
        created.request.license_types = ["SPB", "EMS"]
        graph.list_subscribed_skus.return_value.append(
            {"skuId": "sku-ems", "skuPartNumber": "EMS", "prepaidUnits": {"enabled": 2}, "consumedUnits": 0}
        )
        graph.assign_license.side_effect = [requests.ReadTimeout("slow"), {}]
        result = steps.assign_licenses(created)

        assert result.outcome == StepStatus.PARTIAL
        assert result.error_kind == ErrorKind.TIMEOUT
        assert result.data["licensesAssigned"] == ["EMS"]
        assert result.data["licensesFailed"] == ["SPB"]

    def test_alias_resolves_to_sku(self, created, graph):
        created.config.licensing.aliases = {"business premium": "SPB"}
        created.request.license_types = ["Business Premium"]
        result = steps.assign_licenses(created)
        assert result.outcome == StepStatus.SUCCESSFUL
        assert result.data["licensesAssigned"] == ["SPB"]

    def test_no_available_seats(self, created, graph):
        graph.list_subscribed_skus.return_value = [
            {"skuId": "sku-spb", "skuPartNumber": "SPB", "prepaidUnits": {"enabled": 5}, "consumedUnits": 5}
        ]
        result = steps.assign_licenses(created)
        assert result.failed
        assert result.errors == ["No available seats for license SPB."]
        graph.assign_license.assert_not_called()

    def test_usage_location_is_set_first(self, created, graph):
        created.user["usageLocation"] = None
        steps.assign_licenses(created)
        graph.update_user.assert_called_once_with("user-1", usageLocation="US")

    def test_missing_usage_location_is_configuration_error(self, created, graph):
        created.user["usageLocation"] = None
        created.config.graph.default_usage_location = None
        result = steps.assign_licenses(created)
        assert result.error_kind == ErrorKind.CONFIGURATION
        graph.assign_license.assert_not_called()


class TestTicketNote:

    def test_format_includes_errors_and_warnings(self, created):
        created.metadata.errors.append("License 'X' is not available.")
        created.metadata.warnings.append("Mirrored group skipped.")
        result = steps.format_ticket_note(created)
        assert result.outcome == StepStatus.SUCCESSFUL
        assert "License 'X' is not available." in created.note
        assert "Mirrored group skipped." in created.note
        assert "pw" not in created.note.split()

    def test_publish(self, created, connectwise):
        created.note = "hello"
        result = steps.publish_ticket_note(created)
        connectwise.add_ticket_note.assert_called_once_with("48211", "hello")
        assert result.data["status"] == "Success"


class TestStepResult:

    def test_from_counts(self):
        assert StepResult.from_counts({}, 0, [], [], "").outcome == StepStatus.SUCCESSFUL
        assert StepResult.from_counts({}, 1, ["e"], [], "").outcome == StepStatus.PARTIAL
        failed = StepResult.from_counts({}, 0, ["e1", "e2"], [], "m", ErrorKind.INPUT)
        assert failed.failed
        assert failed.errors == ["e1", "e2"]

    @pytest.mark.parametrize(
        "exc, kind",
        [
            (GraphApiError(404, "NotFound", "x"), ErrorKind.INPUT),
            (GraphApiError(429, "TooMany", "x"), ErrorKind.REMOTE),
            (ExchangeError("Exchange Online command timed out."), ErrorKind.TIMEOUT),
            (ValueError("x"), ErrorKind.UNEXPECTED),
        ],
    )
    def test_classify_exception(self, exc, kind):
        assert classify_exception(exc) == kind

    def test_services_default_to_none(self):
        assert Services(graph=None).exchange is None
