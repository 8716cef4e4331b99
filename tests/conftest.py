"""Shared fixtures for the dispatcher test-suite."""

import copy
import logging
from unittest.mock import MagicMock

import pytest

from onboard_dispatch.config import (
    AppConfig,
    ConnectWiseConfig,
    GraphConfig,
    PipelineConfig,
)
from onboard_dispatch.pipeline import Services


TENANT_ID = "contoso.onmicrosoft.com"
UPN = "jane.doe@contoso.com"


@pytest.fixture
def valid_payload():
    """Onboarding request as the ticket form submits it."""
    return {
        "TenantId": TENANT_ID,
        "TicketId": "48211",
        "AccountDetails": {
            "GivenName": "Jane",
            "Surname": "Doe",
            "UserPrincipalName": UPN,
            "AdditionalDetails": {
                "JobTitle": "Accountant",
                "Department": "@Department",
                "UsageLocation": "US",
            },
        },
        "LicenseTypes": ["SPB"],
        "Groups": {
            "Teams": ["Finance Team"],
            "Security": ["@Security"],
            "Distribution": [],
            "SharedMailboxes": ["@SharedMailboxes"],
            "Software": [],
        },
    }


@pytest.fixture
def mirrored_payload(valid_payload):
    payload = copy.deepcopy(valid_payload)
    payload["Groups"] = {"MirroredUsers": {"MirroredUserEmail": "john.smith@contoso.com"}}
    return payload


@pytest.fixture
def app_config():
    return AppConfig(
        graph=GraphConfig(client_id="client", client_secret="secret", default_usage_location="US"),
        connectwise=ConnectWiseConfig(
            company_id="contoso", public_key="pub", private_key="priv", client_id="cw-client"
        ),
        pipeline=PipelineConfig(lookup_retries=2, retry_backoff_seconds=0),
    )


@pytest.fixture
def graph():
    """Graph client mock whose calls succeed by default."""
    client = MagicMock()
    client.find_user.return_value = None
    client.create_user.return_value = {"id": "user-1", "userPrincipalName": UPN}
    client.find_group.side_effect = lambda name: {
        "id": f"group-{name}",
        "displayName": name,
        "groupTypes": ["Unified"],
        "mailEnabled": True,
        "securityEnabled": False,
    }
    client.list_subscribed_skus.return_value = [
        {
            "skuId": "sku-spb",
            "skuPartNumber": "SPB",
            "prepaidUnits": {"enabled": 10},
            "consumedUnits": 3,
        }
    ]
    client.get_user_groups.return_value = []
    return client


@pytest.fixture
def connectwise():
    return MagicMock()


@pytest.fixture
def services(graph, connectwise):
    return Services(graph=graph, connectwise=connectwise, exchange=None)


@pytest.fixture
def services_factory(services):
    return MagicMock(return_value=services)


@pytest.fixture
def logger():
    return logging.getLogger("onboard_dispatch.tests")
