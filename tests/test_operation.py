"""Tests for operation descriptors and execute_api_operation()."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from canton_client_core.auth import ClientCredentials, NoAuth, StaticToken
from canton_client_core.client import ClientConfig, LedgerClient
from canton_client_core.errors import (
    ConfigurationError,
    HttpError,
    ResponseValidationError,
    ValidationError,
)
from canton_client_core.operation import (
    ApiOperation,
    RequestContext,
    WebSocketOperation,
    _encode_query,
)
from canton_client_core.schema import EMPTY, array, integer, json_value, obj, optional, string
from canton_client_core.subscription import SubscriptionHandlers, SubscriptionState
from canton_client_core.transport import NO_RETRY

from .conftest import API_URL, FakeConnection, create_mock_response, token_response

GET_USER = ApiOperation(
    name="get_user",
    method="GET",
    path="/v2/users/{userId}",
    params_schema=obj({"userId": string(min_length=1), "identityProviderId": optional(string())}),
    response_schema=obj({"user": obj({"id": string()})}),
    build_query=lambda p: {"identity-provider-id": p.get("identityProviderId")},
)

CREATE_USER = ApiOperation(
    name="create_user",
    method="POST",
    path="/v2/users",
    params_schema=obj({"user": obj({"id": string(min_length=1)}), "rights": optional(array(json_value()))}),
    response_schema=obj({"user": obj({"id": string()})}),
)

PUBLIC_VERSION = ApiOperation(
    name="get_version",
    method="GET",
    path="/v2/version",
    params_schema=EMPTY,
    response_schema=obj({"version": string()}),
    requires_auth=False,
)

ROUNDS = WebSocketOperation(
    name="subscribe_to_rounds",
    path="/v2/rounds",
    params_schema=obj({"from": integer(minimum=0)}),
    message_schema=obj({"round": integer()}),
    build_request_message=lambda p, client: {"beginExclusive": p["from"], "party": client.party_id},
)


def make_client(session: MagicMock, auth=StaticToken("tok"), **config) -> LedgerClient:
    config.setdefault("retry_policy", NO_RETRY)
    return LedgerClient(
        ClientConfig(api_url=API_URL, auth=auth, **config),
        [GET_USER, CREATE_USER, PUBLIC_VERSION, ROUNDS],
        session=session,
    )


class TestDescriptors:
    """Tests for descriptor helpers."""

    def test_descriptors_are_frozen(self):
        with pytest.raises(AttributeError):
            GET_USER.name = "other"  # type: ignore[misc]

    def test_endpoint_quotes_path_values(self):
        assert GET_USER.endpoint({"userId": "a b/c"}) == "/v2/users/a%20b%2Fc"

    def test_endpoint_with_query(self):
        endpoint = GET_USER.endpoint({"userId": "alice", "identityProviderId": "idp"})
        assert endpoint == "/v2/users/alice?identity-provider-id=idp"

    def test_endpoint_missing_template_field(self):
        with pytest.raises(ConfigurationError, match="userId"):
            GET_USER.endpoint({})

    def test_callable_path(self):
        op = ApiOperation(
            name="x",
            method="GET",
            path=lambda p: f"/v2/items/{p['id']}",
            params_schema=EMPTY,
            response_schema=EMPTY,
        )
        assert op.endpoint({"id": 3}) == "/v2/items/3"

    def test_encode_query(self):
        query = _encode_query({"a": None, "b": True, "c": [1, 2], "d": "x y"})
        assert query == "b=true&c=1&c=2&d=x+y"

    def test_request_context_repr_redacts(self):
        context = RequestContext(
            operation="get_user",
            method="GET",
            url=f"{API_URL}/v2/users/alice?access_token=secret",
            params={},
        ).with_token("secret")
        assert context.headers["Authorization"] == "Bearer secret"
        assert "secret" not in repr(context)


class TestExecuteApiOperation:
    """End-to-end REST execution against a mocked session."""

    async def test_path_and_auth_header(self, mock_session: MagicMock):
        mock_session.request.return_value = create_mock_response(
            json_data={"user": {"id": "alice", "extra": 1}}
        )
        client = make_client(mock_session)

        result = await client.call("get_user", {"userId": "alice"})

        assert result == {"user": {"id": "alice"}}
        call = mock_session.request.call_args
        assert call.args == ("GET", f"{API_URL}/v2/users/alice")
        assert call.kwargs["headers"]["Authorization"] == "Bearer tok"
        assert "data" not in call.kwargs

    async def test_body_reflects_params(self, mock_session: MagicMock):
        mock_session.request.return_value = create_mock_response(json_data={"user": {"id": "bob"}})
        client = make_client(mock_session)

        await client.create_user({"user": {"id": "bob"}, "rights": []})

        call = mock_session.request.call_args
        assert call.args == ("POST", f"{API_URL}/v2/users")
        assert json.loads(call.kwargs["data"]) == {"user": {"id": "bob"}, "rights": []}

    async def test_invalid_params_make_no_network_call(self, mock_session: MagicMock):
        client = make_client(
            mock_session,
            auth=ClientCredentials(client_id="c", client_secret="s", token_url="https://auth"),
        )

        with pytest.raises(ValidationError) as exc_info:
            await client.call("create_user", {"user": {}})

        assert exc_info.value.paths == [("user", "id")]
        assert "create_user" in str(exc_info.value)
        mock_session.request.assert_not_called()
        mock_session.post.assert_not_called()

    async def test_response_mismatch(self, mock_session: MagicMock):
        mock_session.request.return_value = create_mock_response(json_data={"user": {"id": 7}})
        client = make_client(mock_session)

        with pytest.raises(ResponseValidationError) as exc_info:
            await client.call("get_user", {"userId": "alice"})

        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.paths == [("user", "id")]

    async def test_http_error_propagates(self, mock_session: MagicMock):
        mock_session.request.return_value = create_mock_response(
            status=404, json_data={"code": "USER_NOT_FOUND", "message": "nope"}
        )
        client = make_client(mock_session)

        with pytest.raises(HttpError) as exc_info:
            await client.call("get_user", {"userId": "ghost"})
        assert exc_info.value.status == 404

    async def test_unauthorized_triggers_one_refresh(self, mock_session: MagicMock):
        mock_session.post.side_effect = [token_response("t1"), token_response("t2")]
        mock_session.request.side_effect = [
            create_mock_response(status=401),
            create_mock_response(json_data={"user": {"id": "alice"}}),
        ]
        client = make_client(
            mock_session,
            auth=ClientCredentials(client_id="c", client_secret="s", token_url="https://auth"),
        )

        result = await client.get_user({"userId": "alice"})

        assert result == {"user": {"id": "alice"}}
        assert mock_session.post.call_count == 2
        first, second = mock_session.request.call_args_list
        assert first.kwargs["headers"]["Authorization"] == "Bearer t1"
        assert second.kwargs["headers"]["Authorization"] == "Bearer t2"

    async def test_repeated_unauthorized_is_not_retried_again(self, mock_session: MagicMock):
        mock_session.post.side_effect = [token_response("t1"), token_response("t2")]
        mock_session.request.side_effect = [
            create_mock_response(status=401),
            create_mock_response(status=401),
        ]
        client = make_client(
            mock_session,
            auth=ClientCredentials(client_id="c", client_secret="s", token_url="https://auth"),
        )

        with pytest.raises(HttpError) as exc_info:
            await client.get_user({"userId": "alice"})

        assert exc_info.value.status == 401
        assert mock_session.post.call_count == 2
        assert mock_session.request.call_count == 2

    async def test_operation_without_auth(self, mock_session: MagicMock):
        mock_session.request.return_value = create_mock_response(json_data={"version": "3.3"})
        client = make_client(
            mock_session,
            auth=ClientCredentials(client_id="c", client_secret="s", token_url="https://auth"),
        )

        assert await client.get_version() == {"version": "3.3"}
        assert "Authorization" not in mock_session.request.call_args.kwargs["headers"]
        mock_session.post.assert_not_called()

    async def test_no_auth_config(self, mock_session: MagicMock):
        mock_session.request.return_value = create_mock_response(json_data={"user": {"id": "a"}})
        client = make_client(mock_session, auth=NoAuth())

        await client.call("get_user", {"userId": "a"})
        assert "Authorization" not in mock_session.request.call_args.kwargs["headers"]


class TestOpenSubscription:
    """Streams authenticate and send their request frame."""

    async def _subscribe(self, client: LedgerClient, operation=ROUNDS):
        connection = FakeConnection()
        connect = AsyncMock(return_value=connection)
        with patch("canton_client_core.ws_client.connect_websocket", new=connect):
            subscription = await client.subscribe(
                operation, {"from": 4}, SubscriptionHandlers(on_message=lambda m: None)
            )
        return subscription, connection, connect

    async def test_header_auth(self, mock_session: MagicMock):
        client = make_client(mock_session, party_id="alice::1")

        subscription, connection, connect = await self._subscribe(client)

        assert connect.call_args.args == ("wss://ledger.example.com/v2/rounds",)
        assert connect.call_args.kwargs["headers"] == {"Authorization": "Bearer tok"}
        assert connection.sent_json() == [{"beginExclusive": 4, "party": "alice::1"}]
        assert subscription.state is SubscriptionState.OPEN
        await subscription.close()

    async def test_subprotocol_auth(self, mock_session: MagicMock):
        op = WebSocketOperation(
            name="subscribe_to_rounds",
            path="/v2/rounds",
            params_schema=obj({"from": integer()}),
            message_schema=obj({"round": integer()}),
            auth_mode="subprotocol",
            subprotocols=("daml.ws.auth",),
        )
        client = make_client(mock_session)

        subscription, connection, connect = await self._subscribe(client, op)

        assert connect.call_args.kwargs["subprotocols"] == ["daml.ws.auth", "jwt.token.tok"]
        assert connect.call_args.kwargs["headers"] == {}
        assert connection.sent_json() == [{"from": 4}]
        await subscription.close()

    async def test_query_auth(self, mock_session: MagicMock):
        op = WebSocketOperation(
            name="subscribe_to_rounds",
            path="/v2/rounds",
            params_schema=obj({"from": integer()}),
            message_schema=obj({"round": integer()}),
            auth_mode="query",
        )
        client = make_client(mock_session)

        subscription, _, connect = await self._subscribe(client, op)

        assert connect.call_args.args == ("wss://ledger.example.com/v2/rounds?access_token=tok",)
        await subscription.close()

    async def test_invalid_params_do_not_connect(self, mock_session: MagicMock):
        client = make_client(mock_session)
        connect = AsyncMock()

        with patch("canton_client_core.ws_client.connect_websocket", new=connect):
            with pytest.raises(ValidationError):
                await client.subscribe(
                    "subscribe_to_rounds",
                    {"from": -1},
                    SubscriptionHandlers(on_message=lambda m: None),
                )
        connect.assert_not_called()
