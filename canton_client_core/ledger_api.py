"""Ledger JSON API (v2) operation catalogue.

Ledger payloads (commands, events, rights) are carried as opaque JSON; only
the envelope fields the client relies on are validated. Response schemas
pass unknown keys through so newer server versions keep working.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any

import aiohttp

from .auth import AuthProvider
from .client import ClientConfig, LedgerClient
from .config import config_from_env
from .errors import (
    CompletionError,
    ConfigurationError,
    RequestTimeout,
    SubscriptionError,
)
from .operation import ApiOperation, WebSocketOperation
from .schema import (
    EMPTY,
    array,
    boolean,
    integer,
    json_value,
    literal,
    mapping,
    obj,
    optional,
    string,
    union,
)
from .subscription import SubscriptionHandlers
from .transport import HttpTransport

_LOGGER = logging.getLogger(__name__)

DEFAULT_COMPLETION_TIMEOUT = 600.0

TRANSACTION_SHAPE_ACS_DELTA = "TRANSACTION_SHAPE_ACS_DELTA"
TRANSACTION_SHAPE_LEDGER_EFFECTS = "TRANSACTION_SHAPE_LEDGER_EFFECTS"

# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------

_NON_EMPTY = string(min_length=1)
_PARTIES = array(_NON_EMPTY)
_OFFSET = integer(minimum=0)

OBJECT_META = obj(
    {
        "resourceVersion": optional(string()),
        "annotations": optional(mapping(string())),
    },
    unknown="passthrough",
)

USER = obj(
    {
        "id": string(),
        "primaryParty": optional(string()),
        "isDeactivated": boolean(),
        "metadata": optional(OBJECT_META),
        "identityProviderId": optional(string()),
    },
    unknown="passthrough",
)

PARTY_DETAILS = obj(
    {
        "party": string(),
        "isLocal": boolean(),
        "localMetadata": optional(OBJECT_META),
        "identityProviderId": optional(string()),
    },
    unknown="passthrough",
)

JS_CANTON_ERROR = obj(
    {
        "code": union(string(), integer()),
        "message": string(),
        "details": optional(mapping(json_value())),
    },
    unknown="passthrough",
)

WS_CANTON_ERROR = obj({"code": string(), "cause": string()}, unknown="passthrough")

STREAM_ERROR = union(JS_CANTON_ERROR, WS_CANTON_ERROR)

JS_STATUS = obj(
    {
        "code": integer(),
        "message": string(),
        "details": optional(array(json_value())),
    },
    unknown="passthrough",
)

COMPLETION = obj(
    {
        "value": obj(
            {
                "commandId": string(),
                "status": optional(JS_STATUS),
                "updateId": optional(string()),
                "userId": optional(string()),
                "actAs": optional(array(string())),
                "submissionId": optional(string()),
                "offset": integer(),
            },
            unknown="passthrough",
        )
    },
    unknown="passthrough",
)

COMPLETION_RESPONSE = union(
    obj({"Completion": COMPLETION}, unknown="passthrough"),
    obj({"Empty": mapping(json_value())}, unknown="passthrough"),
    obj(
        {"OffsetCheckpoint": obj({"value": obj({"offset": integer()}, unknown="passthrough")})},
        unknown="passthrough",
    ),
)

COMPLETION_MESSAGE = obj({"completionResponse": COMPLETION_RESPONSE}, unknown="passthrough")

UPDATE_MESSAGE = obj({"update": mapping(json_value())}, unknown="passthrough")

# -----------------------------------------------------------------------------
# Request builders
# -----------------------------------------------------------------------------


def _paging_query(params: Mapping[str, Any]) -> dict[str, Any]:
    return {"pageSize": params.get("pageSize"), "pageToken": params.get("pageToken")}


def _without_none(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _grant_rights_body(params: Mapping[str, Any], client: LedgerClient) -> dict[str, Any]:
    return _without_none(
        {
            "userId": params["userId"],
            "rights": params.get("rights"),
            "identityProviderId": params.get("identityProviderId"),
        }
    )


def _submit_body(params: Mapping[str, Any], client: LedgerClient) -> dict[str, Any]:
    """Fill ``actAs``, ``readAs`` and ``userId`` from the client defaults."""
    act_as = params.get("actAs") or ([client.party_id] if client.party_id else [])
    if not act_as:
        raise ConfigurationError("submit_and_wait requires actAs or a client party_id")
    read_as = list(
        dict.fromkeys(p for p in (client.party_id, *params.get("readAs", ())) if p)
    )
    body = {**params, "actAs": act_as}
    if read_as:
        body["readAs"] = read_as
    user_id = params.get("userId") or client.user_id
    if user_id:
        body["userId"] = user_id
    return body


def build_event_format(
    parties: Iterable[str],
    *,
    template_ids: Iterable[str] = (),
    include_created_event_blob: bool = False,
) -> dict[str, Any]:
    """Build an ``eventFormat`` filtering by party and optionally by template.

    An empty template list selects every template visible to the party.
    """
    templates = list(template_ids)
    cumulative = [
        {
            "identifierFilter": {
                "TemplateFilter": {
                    "value": {
                        "templateId": template_id,
                        "includeCreatedEventBlob": include_created_event_blob,
                    }
                }
            }
        }
        for template_id in templates
    ]
    return {
        "verbose": False,
        "filtersByParty": {party: {"cumulative": list(cumulative)} for party in parties},
    }


def _completions_request(params: Mapping[str, Any], client: LedgerClient) -> dict[str, Any]:
    return _without_none(
        {
            "userId": params.get("userId") or client.user_id,
            "parties": params.get("parties") or client.build_party_list(),
            "beginExclusive": params.get("beginExclusive"),
        }
    )


async def _updates_request(params: Mapping[str, Any], client: LedgerClient) -> dict[str, Any]:
    begin = params.get("beginExclusive")
    if begin is None:
        ledger_end = await client.call(GET_LEDGER_END)
        begin = ledger_end["offset"]

    parties = params.get("parties") or client.build_party_list()
    if not parties:
        raise ConfigurationError("subscribe_to_updates requires parties or a client party_id")

    event_format = build_event_format(
        parties,
        template_ids=params.get("templateIds") or (),
        include_created_event_blob=params.get("includeCreatedEventBlob", False),
    )
    update_format: dict[str, Any] = {
        "includeTransactions": {
            "eventFormat": event_format,
            "transactionShape": params.get("transactionShape", TRANSACTION_SHAPE_LEDGER_EFFECTS),
        }
    }
    if params.get("includeReassignments", True):
        update_format["includeReassignments"] = {
            "filtersByParty": event_format["filtersByParty"],
            "verbose": False,
        }
    if params.get("includeTopologyEvents", False):
        update_format["includeTopologyEvents"] = {
            "includeParticipantAuthorizationEvents": {"parties": list(parties)}
        }

    return _without_none(
        {
            "beginExclusive": begin,
            "endInclusive": params.get("endInclusive"),
            "verbose": False,
            "updateFormat": update_format,
        }
    )


# -----------------------------------------------------------------------------
# Operations
# -----------------------------------------------------------------------------

GET_VERSION = ApiOperation(
    name="get_version",
    method="GET",
    path="/v2/version",
    params_schema=EMPTY,
    response_schema=obj(
        {"version": string(), "features": optional(mapping(json_value()))},
        unknown="passthrough",
    ),
    description="Ledger API version and supported features",
)

GET_AUTHENTICATED_USER = ApiOperation(
    name="get_authenticated_user",
    method="GET",
    path="/v2/authenticated-user",
    params_schema=obj({"identityProviderId": optional(string())}),
    response_schema=obj({"user": USER}, unknown="passthrough"),
    build_query=lambda p: {"identity-provider-id": p.get("identityProviderId")},
    description="User the current token belongs to",
)

LIST_USERS = ApiOperation(
    name="list_users",
    method="GET",
    path="/v2/users",
    params_schema=obj(
        {"pageSize": optional(integer(minimum=1)), "pageToken": optional(string())}
    ),
    response_schema=obj(
        {"users": array(USER), "nextPageToken": optional(string())},
        unknown="passthrough",
    ),
    build_query=_paging_query,
    description="List users on the participant",
)

GET_USER = ApiOperation(
    name="get_user",
    method="GET",
    path="/v2/users/{userId}",
    params_schema=obj({"userId": _NON_EMPTY, "identityProviderId": optional(string())}),
    response_schema=obj({"user": USER}, unknown="passthrough"),
    build_query=lambda p: {"identity-provider-id": p.get("identityProviderId")},
    description="Details of one user",
)

CREATE_USER = ApiOperation(
    name="create_user",
    method="POST",
    path="/v2/users",
    params_schema=obj(
        {
            "user": obj(
                {
                    "id": _NON_EMPTY,
                    "primaryParty": optional(string()),
                    "isDeactivated": boolean(),
                    "identityProviderId": string(),
                    "metadata": optional(OBJECT_META),
                }
            ),
            "rights": optional(array(json_value())),
        }
    ),
    response_schema=obj({"user": USER}, unknown="passthrough"),
    build_body=lambda p, _client: _without_none({"user": p["user"], "rights": p.get("rights")}),
    description="Create a user with optional initial rights",
)

LIST_USER_RIGHTS = ApiOperation(
    name="list_user_rights",
    method="GET",
    path="/v2/users/{userId}/rights",
    params_schema=obj({"userId": _NON_EMPTY}),
    response_schema=obj({"rights": optional(array(json_value()))}, unknown="passthrough"),
    description="Rights granted to a user",
)

GRANT_USER_RIGHTS = ApiOperation(
    name="grant_user_rights",
    method="POST",
    path="/v2/users/{userId}/rights",
    params_schema=obj(
        {
            "userId": _NON_EMPTY,
            "rights": optional(array(json_value())),
            "identityProviderId": optional(string()),
        }
    ),
    response_schema=obj(
        {"newlyGrantedRights": optional(array(json_value()))}, unknown="passthrough"
    ),
    build_body=_grant_rights_body,
    description="Grant rights to a user",
)

LIST_PARTIES = ApiOperation(
    name="list_parties",
    method="GET",
    path="/v2/parties",
    params_schema=obj(
        {"pageSize": optional(integer(minimum=1)), "pageToken": optional(string())}
    ),
    response_schema=obj(
        {"partyDetails": array(PARTY_DETAILS), "nextPageToken": optional(string())},
        unknown="passthrough",
    ),
    build_query=_paging_query,
    description="List parties known to the participant",
)

ALLOCATE_PARTY = ApiOperation(
    name="allocate_party",
    method="POST",
    path="/v2/parties",
    params_schema=obj(
        {
            "partyIdHint": _NON_EMPTY,
            "identityProviderId": string(),
            "localMetadata": optional(OBJECT_META),
        }
    ),
    response_schema=obj({"partyDetails": PARTY_DETAILS}, unknown="passthrough"),
    description="Allocate a new party on the participant",
)

GET_LEDGER_END = ApiOperation(
    name="get_ledger_end",
    method="GET",
    path="/v2/state/ledger-end",
    params_schema=EMPTY,
    response_schema=obj({"offset": _OFFSET}, unknown="passthrough"),
    description="Current ledger end offset",
)

SUBMIT_AND_WAIT = ApiOperation(
    name="submit_and_wait",
    method="POST",
    path="/v2/commands/submit-and-wait",
    params_schema=obj(
        {
            "commands": array(json_value(), min_length=1),
            "commandId": _NON_EMPTY,
            "actAs": optional(_PARTIES),
            "userId": optional(string()),
            "readAs": optional(_PARTIES),
            "workflowId": optional(string()),
            "deduplicationPeriod": optional(json_value()),
            "minLedgerTimeAbs": optional(string()),
            "minLedgerTimeRel": optional(json_value()),
            "submissionId": optional(string()),
            "disclosedContracts": optional(array(json_value())),
            "synchronizerId": optional(string()),
            "packageIdSelectionPreference": optional(array(string())),
        }
    ),
    response_schema=obj(
        {"updateId": string(), "completionOffset": _OFFSET}, unknown="passthrough"
    ),
    build_body=_submit_body,
    description="Submit a batch of commands and wait for the result",
)

SUBSCRIBE_TO_COMPLETIONS = WebSocketOperation(
    name="subscribe_to_completions",
    path="/v2/commands/completions",
    params_schema=obj(
        {
            "userId": optional(string()),
            "parties": optional(_PARTIES),
            "beginExclusive": optional(_OFFSET),
        }
    ),
    message_schema=COMPLETION_MESSAGE,
    build_request_message=_completions_request,
    error_schema=STREAM_ERROR,
    description="Stream command completions for a user and parties",
)

SUBSCRIBE_TO_UPDATES = WebSocketOperation(
    name="subscribe_to_updates",
    path="/v2/updates",
    params_schema=obj(
        {
            "parties": optional(_PARTIES),
            "templateIds": optional(array(_NON_EMPTY)),
            "includeCreatedEventBlob": optional(boolean()),
            "beginExclusive": optional(_OFFSET),
            "endInclusive": optional(_OFFSET),
            "includeReassignments": optional(boolean()),
            "includeTopologyEvents": optional(boolean()),
            "transactionShape": optional(
                literal(TRANSACTION_SHAPE_ACS_DELTA, TRANSACTION_SHAPE_LEDGER_EFFECTS)
            ),
        }
    ),
    message_schema=UPDATE_MESSAGE,
    build_request_message=_updates_request,
    error_schema=STREAM_ERROR,
    description=(
        "Stream ledger updates. Bounded when endInclusive is set, otherwise "
        "stays open until closed. Starts at the ledger end by default."
    ),
)

LEDGER_JSON_API_OPERATIONS: tuple[ApiOperation[Any, Any] | WebSocketOperation[Any, Any], ...] = (
    GET_VERSION,
    GET_AUTHENTICATED_USER,
    LIST_USERS,
    GET_USER,
    CREATE_USER,
    LIST_USER_RIGHTS,
    GRANT_USER_RIGHTS,
    LIST_PARTIES,
    ALLOCATE_PARTY,
    GET_LEDGER_END,
    SUBMIT_AND_WAIT,
    SUBSCRIBE_TO_COMPLETIONS,
    SUBSCRIBE_TO_UPDATES,
)

# -----------------------------------------------------------------------------
# Completion helpers
# -----------------------------------------------------------------------------


def extract_completion(message: Mapping[str, Any]) -> dict[str, Any] | None:
    """Return the completion record of a completions-stream message, if any."""
    response = message.get("completionResponse")
    if not isinstance(response, Mapping):
        return None
    completion = response.get("Completion")
    if not isinstance(completion, Mapping):
        return None
    value = completion.get("value")
    return dict(value) if isinstance(value, Mapping) else None


async def wait_for_completion(
    client: LedgerClient,
    *,
    submission_id: str | None = None,
    command_id: str | None = None,
    parties: Iterable[str] | None = None,
    user_id: str | None = None,
    begin_exclusive: int | None = None,
    timeout: float = DEFAULT_COMPLETION_TIMEOUT,
) -> str:
    """Wait on the completions stream for one command and return its update id.

    Match on ``submission_id`` or ``command_id``. Pass the ledger end read
    before submitting as ``begin_exclusive`` so the completion cannot be
    missed.

    Raises:
        CompletionError: Command completed with a non-zero status, or without
            an update id
        SubscriptionError: Stream failed or closed before the completion
        RequestTimeout: Nothing arrived within ``timeout`` seconds
    """
    if submission_id is None and command_id is None:
        raise ConfigurationError("wait_for_completion requires submission_id or command_id")
    label = submission_id or command_id
    result: asyncio.Future[str] = asyncio.get_running_loop().create_future()

    def settle(error: BaseException | None = None, update_id: str | None = None) -> None:
        if result.done():
            return
        if error is not None:
            result.set_exception(error)
        else:
            result.set_result(update_id or "")

    def on_message(message: dict[str, Any]) -> None:
        completion = extract_completion(message)
        if completion is None:
            return
        if submission_id is not None and completion.get("submissionId") != submission_id:
            return
        if command_id is not None and completion.get("commandId") != command_id:
            return

        status = completion.get("status") or {}
        if status.get("code", 0) != 0:
            settle(
                CompletionError(
                    status.get("message") or "Command failed",
                    submission_id=completion.get("submissionId"),
                    status_code=status.get("code"),
                )
            )
        elif not completion.get("updateId"):
            settle(
                CompletionError(
                    "Completion did not include updateId",
                    submission_id=completion.get("submissionId"),
                )
            )
        else:
            settle(update_id=completion["updateId"])

    def on_close(code: int | None, reason: str) -> None:
        settle(SubscriptionError("Completion stream closed before the command completed"))

    params = _without_none(
        {
            "userId": user_id,
            "parties": list(parties) if parties is not None else None,
            "beginExclusive": begin_exclusive,
        }
    )
    _LOGGER.debug("Waiting up to %.0fs for completion of %s", timeout, label)
    subscription = await client.subscribe(
        SUBSCRIBE_TO_COMPLETIONS,
        params,
        SubscriptionHandlers(on_message=on_message, on_error=settle, on_close=on_close),
    )
    try:
        return await asyncio.wait_for(result, timeout=timeout)
    except TimeoutError as err:
        raise RequestTimeout(f"Timed out waiting for completion of {label}") from err
    finally:
        if not result.done():
            result.cancel()
        await subscription.close()


class LedgerJsonApiClient(LedgerClient):
    """Client for the Ledger JSON API v2.

    Usage:
        async with LedgerJsonApiClient.from_env() as client:
            end = await client.get_ledger_end()
            await client.submit_and_wait({"commands": [...], "commandId": "c-1"})
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        auth_provider: AuthProvider | None = None,
        transport: HttpTransport | None = None,
    ) -> None:
        super().__init__(
            config,
            LEDGER_JSON_API_OPERATIONS,
            session=session,
            auth_provider=auth_provider,
            transport=transport,
        )

    @classmethod
    def from_env(
        cls,
        *,
        network: str | None = None,
        provider: str | None = None,
        environ: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> LedgerJsonApiClient:
        """Create a client from ``CANTON_*`` environment variables."""
        config = config_from_env(
            "LEDGER_JSON_API", network=network, provider=provider, environ=environ
        )
        return cls(config, **kwargs)

    async def wait_for_completion(self, **kwargs: Any) -> str:
        """See :func:`wait_for_completion`."""
        return await wait_for_completion(self, **kwargs)
