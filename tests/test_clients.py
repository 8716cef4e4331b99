"""Tests for the Microsoft Graph, ConnectWise and Exchange Online clients."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests

from onboard_dispatch.config import ConnectWiseConfig, ExchangeConfig, GraphConfig
from onboard_dispatch.connectwise_client import (
    ConnectWiseApiError,
    ConnectWiseClient,
    ConnectWiseConfigurationError,
    ConnectWiseConnectionError,
    ConnectWiseTimeoutError,
)
from onboard_dispatch.exchange import ExchangeError, ExchangeOnlineClient
from onboard_dispatch.graph_client import (
    GraphApiError,
    GraphClient,
    GraphConfigurationError,
    GraphConnectionError,
    GraphTimeoutError,
    is_guid,
)
from onboard_dispatch.pipeline import ErrorKind, classify_exception


def make_response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"x" if payload is not None else b""
    response.text = text
    response.json.return_value = payload
    if payload is None:
        response.json.side_effect = ValueError("no json")
    return response


# ==================== GraphClient ====================

@pytest.fixture
def graph_config():
    return GraphConfig(client_id="client", client_secret="secret", timeout=5)


@pytest.fixture
def msal_app():
    with patch("onboard_dispatch.graph_client.msal.ConfidentialClientApplication") as factory:
        app = factory.return_value
        app.acquire_token_silent.return_value = None
        app.acquire_token_for_client.return_value = {"access_token": "token"}
        yield factory


@pytest.fixture
def graph_client(graph_config, msal_app):
    client = GraphClient(graph_config, "contoso.onmicrosoft.com")
    client._session = MagicMock()
    return client


class TestGraphClientInit:

    def test_requires_credentials(self):
        with pytest.raises(GraphConfigurationError):
            GraphClient(GraphConfig(), "contoso.onmicrosoft.com")

    def test_requires_tenant(self, graph_config, msal_app):
        with pytest.raises(GraphConfigurationError):
            GraphClient(graph_config)

    def test_authority_is_per_tenant(self, graph_config, msal_app):
        GraphClient(graph_config, "fabrikam.onmicrosoft.com")
        assert msal_app.call_args.kwargs["authority"] == "https://login.microsoftonline.com/fabrikam.onmicrosoft.com"


class TestGraphRequests:

    def test_find_user_filters_and_escapes(self, graph_client):
        graph_client._session.request.return_value = make_response(payload={"value": [{"id": "1"}]})
        assert graph_client.find_user("o'neil@contoso.com", select="id") == {"id": "1"}

        method, url = graph_client._session.request.call_args[0]
        kwargs = graph_client._session.request.call_args.kwargs
        assert (method, url) == ("GET", "https://graph.microsoft.com/v1.0/users")
        assert "o''neil@contoso.com" in kwargs["params"]["$filter"]
        assert kwargs["headers"]["Authorization"] == "Bearer token"
        assert kwargs["timeout"] == 5

    def test_error_payload_raises(self, graph_client):
        graph_client._session.request.return_value = make_response(
            400, {"error": {"code": "Request_BadRequest", "message": "bad"}}
        )
        with pytest.raises(GraphApiError) as excinfo:
            graph_client.create_user({"displayName": "x"})
        assert excinfo.value.status_code == 400
        assert excinfo.value.description == "bad"

    def test_connection_error_is_client_error(self, graph_client):
        graph_client._session.request.side_effect = requests.ConnectionError("connection reset")
        with pytest.raises(GraphConnectionError, match="connection reset") as excinfo:
            graph_client.add_user_to_group("u", "g")
        assert classify_exception(excinfo.value) == ErrorKind.REMOTE

    def test_timeout_is_classified_as_timeout(self, graph_client):
        graph_client._session.request.side_effect = requests.ReadTimeout("slow")
        with pytest.raises(GraphTimeoutError) as excinfo:
            graph_client.find_user("a@b.com")
        assert classify_exception(excinfo.value) == ErrorKind.TIMEOUT

    def test_token_endpoint_unreachable(self, graph_client, msal_app):
        msal_app.return_value.acquire_token_for_client.side_effect = requests.ConnectionError("dns")
        with pytest.raises(GraphConnectionError):
            graph_client.find_user("a@b.com")

    def test_token_failure(self, graph_client, msal_app):
        msal_app.return_value.acquire_token_for_client.return_value = {
            "error": "invalid_client",
            "error_description": "bad secret",
        }
        with pytest.raises(GraphApiError, match="bad secret"):
            graph_client.find_user("a@b.com")

    def test_no_content(self, graph_client):
        graph_client._session.request.return_value = make_response(204)
        assert graph_client.add_user_to_group("u", "g") is None

    def test_user_groups_follow_next_link(self, graph_client):
        graph_client._session.request.side_effect = [
            make_response(payload={"value": [{"id": "g1"}], "@odata.nextLink": "https://graph.microsoft.com/v1.0/next"}),
            make_response(payload={"value": [{"id": "g2"}, {"displayName": "no id"}]}),
        ]
        assert [g["id"] for g in graph_client.get_user_groups("u")] == ["g1", "g2"]
        assert graph_client._session.request.call_args[0][1] == "https://graph.microsoft.com/v1.0/next"

    def test_find_group_by_guid_not_found(self, graph_client):
        graph_client._session.request.return_value = make_response(
            404, {"error": {"code": "Request_ResourceNotFound", "message": "missing"}}
        )
        assert graph_client.find_group("0f8fad5b-d9cb-469f-a165-70867728950e") is None

    def test_guid_detection(self):
        assert is_guid("0F8FAD5B-D9CB-469F-A165-70867728950E")
        assert not is_guid("Finance Team")


# ==================== ConnectWiseClient ====================

@pytest.fixture
def cw_config():
    return ConnectWiseConfig(
        base_url="https://cw.example.com/v4_6_release/apis/3.0",
        company_id="contoso",
        public_key="pub",
        private_key="priv",
        client_id="cid",
    )


class TestConnectWiseClient:

    def test_requires_credentials(self):
        with pytest.raises(ConnectWiseConfigurationError):
            ConnectWiseClient(ConnectWiseConfig())

    def test_session_auth(self, cw_config):
        client = ConnectWiseClient(cw_config)
        assert client._session.auth == ("contoso+pub", "priv")
        assert client._session.headers["clientId"] == "cid"

    def test_add_internal_note(self, cw_config):
        client = ConnectWiseClient(cw_config)
        client._session = MagicMock()
        client._session.request.return_value = make_response(201, {"id": 9})

        assert client.add_ticket_note("48211", "hello") == {"id": 9}
        method, url = client._session.request.call_args[0]
        assert method == "POST"
        assert url == "https://cw.example.com/v4_6_release/apis/3.0/service/tickets/48211/notes"
        assert client._session.request.call_args.kwargs["json"] == {
            "text": "hello",
            "detailDescriptionFlag": False,
            "internalAnalysisFlag": True,
            "resolutionFlag": False,
        }

    def test_error(self, cw_config):
        client = ConnectWiseClient(cw_config)
        client._session = MagicMock()
        client._session.request.return_value = make_response(404, {"message": "Ticket not found"})
        with pytest.raises(ConnectWiseApiError) as excinfo:
            client.add_ticket_note("1", "hello")
        assert excinfo.value.status_code == 404
        assert excinfo.value.message == "Ticket not found"

    @pytest.mark.parametrize(
        "raised, expected, kind",
        [
            (requests.ConnectionError("refused"), ConnectWiseConnectionError, ErrorKind.REMOTE),
            (requests.ConnectTimeout("slow"), ConnectWiseTimeoutError, ErrorKind.TIMEOUT),
        ],
    )
    def test_transport_errors(self, cw_config, raised, expected, kind):
        client = ConnectWiseClient(cw_config)
        client._session = MagicMock()
        client._session.request.side_effect = raised
        with pytest.raises(expected) as excinfo:
            client.add_ticket_note("48211", "hello")
        assert classify_exception(excinfo.value) == kind


# ==================== ExchangeOnlineClient ====================

@pytest.fixture
def exchange_client():
    config = ExchangeConfig(
        organization="contoso.onmicrosoft.com", certificate_thumbprint="ABC", app_id="app"
    )
    return ExchangeOnlineClient(config)


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestExchangeOnlineClient:

    def test_requires_configuration(self):
        with pytest.raises(ExchangeError):
            ExchangeOnlineClient(ExchangeConfig())

    @patch("onboard_dispatch.exchange.subprocess.run")
    def test_add_distribution_member(self, run, exchange_client):
        run.return_value = completed("SUCCESS\n")
        exchange_client.add_distribution_group_member("all@contoso.com", "o'neil@contoso.com")

        command = run.call_args[0][0]
        assert command[:4] == ["pwsh", "-NoProfile", "-NonInteractive", "-Command"]
        assert "-Member 'o''neil@contoso.com'" in command[4]
        assert "-Organization 'contoso.onmicrosoft.com'" in command[4]

    @patch("onboard_dispatch.exchange.subprocess.run")
    def test_failure(self, run, exchange_client):
        run.return_value = completed(returncode=1, stderr="Couldn't find object")
        with pytest.raises(ExchangeError, match="Couldn't find object"):
            exchange_client.add_shared_mailbox_access("info@contoso.com", "jane@contoso.com")

    @patch("onboard_dispatch.exchange.subprocess.run")
    def test_timeout(self, run, exchange_client):
        run.side_effect = subprocess.TimeoutExpired(cmd="pwsh", timeout=1)
        with pytest.raises(ExchangeError, match="timed out"):
            exchange_client.add_shared_mailbox_access("info@contoso.com", "jane@contoso.com")

    @patch("onboard_dispatch.exchange.subprocess.run")
    def test_list_shared_mailboxes(self, run, exchange_client):
        run.return_value = completed("MAILBOX:info\nMAILBOX:sales\nMAILBOX:info\nSUCCESS\n")
        assert exchange_client.list_shared_mailbox_access("john@contoso.com") == ["info", "sales"]
