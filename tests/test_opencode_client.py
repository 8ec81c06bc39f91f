import json

import httpx
import pytest

from oh_my_telegram.agents.opencode.client import OpenCodeClient, OpenCodeProtocolError
from oh_my_telegram.agents.opencode.runtime import (
    format_permission_summary,
    parse_message_response,
    parse_pending_permission,
    parse_pending_question,
)


def make_client(handler) -> OpenCodeClient:
    return OpenCodeClient("http://opencode.test", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_list_sessions_passes_filters() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "s1", "title": "bot-1"}, "junk"])

    client = make_client(handler)
    try:
        sessions = await client.list_sessions(
            "/work", roots=True, search="bot-1", limit=50
        )
    finally:
        await client.close()

    assert sessions == [{"id": "s1", "title": "bot-1"}]
    params = seen[0].url.params
    assert seen[0].url.path == "/session"
    assert params["directory"] == "/work"
    assert params["roots"] == "true"
    assert params["search"] == "bot-1"
    assert params["limit"] == "50"


@pytest.mark.asyncio
async def test_create_session_requires_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"title": "bot-1"}
        return httpx.Response(200, json={"title": "bot-1"})

    client = make_client(handler)
    try:
        with pytest.raises(OpenCodeProtocolError):
            await client.create_session(title="bot-1")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_question_and_permission_replies() -> None:
    seen: list[tuple[str, str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        seen.append((request.method, request.url.path, body))
        return httpx.Response(200, json=True)

    client = make_client(handler)
    try:
        await client.reply_question(request_id="q1", answers=[["a"], ["b"]])
        await client.reject_question(request_id="q2")
        await client.respond_permission(request_id="p1", reply="once")
        await client.delete_session("s1", directory="/work")
    finally:
        await client.close()

    assert seen == [
        ("POST", "/question/q1/reply", {"answers": [["a"], ["b"]]}),
        ("POST", "/question/q2/reject", None),
        ("POST", "/permission/p1/reply", {"reply": "once"}),
        ("DELETE", "/session/s1", None),
    ]


@pytest.mark.asyncio
async def test_http_errors_propagate() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "down"})

    client = make_client(handler)
    try:
        with pytest.raises(httpx.HTTPStatusError):
            await client.get_session("s1")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_list_endpoint_with_object_payload_is_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"not": "a list"})

    client = make_client(handler)
    try:
        with pytest.raises(OpenCodeProtocolError):
            await client.list_permissions()
    finally:
        await client.close()


def test_parse_message_response_joins_text_parts() -> None:
    result = parse_message_response(
        {
            "info": {"error": {"data": {"message": "rate limited"}}},
            "parts": [
                {"type": "text", "text": "hello"},
                {"type": "tool", "text": "ignored"},
                {"type": "text", "text": "world"},
            ],
        }
    )
    assert result.text == "hello\nworld"
    assert result.error == "rate limited"
    assert parse_message_response(None).text == ""


def test_pending_payload_normalization() -> None:
    permission = parse_pending_permission(
        {
            "id": "p1",
            "sessionID": "s1",
            "permission": "bash",
            "patterns": ["ls"],
            "metadata": {"command": "ls -la"},
        }
    )
    assert permission is not None
    assert format_permission_summary(permission) == [
        "Permission: bash",
        "Patterns:",
        "- ls",
        "Command: ls -la",
    ]
    assert parse_pending_permission({"id": "p1"}) is None

    question = parse_pending_question(
        {
            "id": "q1",
            "sessionID": "s1",
            "questions": [{"question": "Pick", "options": ["a", {"label": "b"}]}],
        }
    )
    assert question is not None
    assert [option.label for option in question.questions[0].options] == ["a", "b"]
    assert parse_pending_question({"id": "q1", "sessionID": "s1", "questions": []}) is None
