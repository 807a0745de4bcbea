"""Tests for the HTTP API."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import pytest
from fastapi.testclient import TestClient

from galaxy_chat.api import create_app
from galaxy_chat.constants import PLACEHOLDER_TITLE
from galaxy_chat.errors import ServiceOverloaded, StreamInterrupted
from galaxy_chat.history.memory import InMemoryHistoryStore
from galaxy_chat.services.attachments import LocalAttachmentStore
from galaxy_chat.services.memory import InMemoryMemoryOracle

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from conftest import ScriptedCompletion

ALICE = {"X-User-ID": "alice"}
BOB = {"X-User-ID": "bob"}


@pytest.fixture
def client(completion: ScriptedCompletion, tmp_path: Path) -> Iterator[TestClient]:
    files_dir = tmp_path / "files"
    app = create_app(
        history=InMemoryHistoryStore(),
        completion=completion,
        memory=InMemoryMemoryOracle(),
        attachments=LocalAttachmentStore(files_dir),
        files_dir=files_dir,
        model_timeout=2.0,
    )
    with TestClient(app) as test_client:
        yield test_client


def _chat(client: TestClient, payload: dict[str, Any], headers: dict[str, str] = ALICE) -> Any:
    return client.post("/api/chat", json=payload, headers=headers)


def _wait_for_title(client: TestClient, conversation_id: str) -> str:
    deadline = time.monotonic() + 2
    while True:
        title = client.get(f"/api/conversations/{conversation_id}", headers=ALICE).json()["title"]
        if title != PLACEHOLDER_TITLE or time.monotonic() > deadline:
            return title
        time.sleep(0.01)


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "history": "InMemoryHistoryStore"}


def test_chat_requires_identity(client: TestClient) -> None:
    resp = _chat(client, {"query": "hi"}, headers={})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


def test_malformed_body(client: TestClient) -> None:
    resp = _chat(client, {"query": {"nested": True}})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid request format"}

    resp = _chat(client, {"query": "  "})
    assert resp.status_code == 400


def test_first_turn_streams_and_titles(client: TestClient) -> None:
    resp = _chat(client, {"query": "Explain recursion"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text == "Hello, world"
    cid = resp.headers["X-Conversation-ID"]

    messages = client.get(f"/api/messages/{cid}", headers=ALICE).json()
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["content"] == resp.text
    assert messages[0]["conversationId"] == cid

    assert _wait_for_title(client, cid) == "Recursion Basics"
    listed = client.get("/api/conversations", headers=ALICE).json()
    assert [c["id"] for c in listed] == [cid]
    assert client.get("/api/conversations", headers=BOB).json() == []


def test_overloaded_model_returns_503(
    client: TestClient,
    completion: ScriptedCompletion,
) -> None:
    completion.replies = [[ServiceOverloaded()]]
    resp = _chat(client, {"query": "Explain recursion"})

    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "5"
    body = resp.json()
    assert body["retriable"] is True
    assert "overloaded" in body["error"]

    cid = resp.headers["X-Conversation-ID"]
    messages = client.get(f"/api/messages/{cid}", headers=ALICE).json()
    assert [m["role"] for m in messages] == ["user"]


def test_other_owner_gets_404(client: TestClient) -> None:
    cid = _chat(client, {"query": "secret"}).headers["X-Conversation-ID"]
    message_id = client.get(f"/api/messages/{cid}", headers=ALICE).json()[0]["id"]

    assert client.get(f"/api/messages/{cid}", headers=BOB).status_code == 404
    assert _chat(client, {"conversationId": cid, "query": "peek"}, headers=BOB).status_code == 404
    resp = client.put(f"/api/messages/{cid}/{message_id}", json={"content": "x"}, headers=BOB)
    assert resp.status_code == 404
    assert resp.json() == {"error": "Message not found"}
    resp = client.post(f"/api/messages/{cid}/{message_id}/reask", headers=BOB)
    assert resp.status_code == 404


def test_edit_delete_after_and_reask(
    client: TestClient,
    completion: ScriptedCompletion,
) -> None:
    cid = _chat(client, {"query": "first"}).headers["X-Conversation-ID"]
    _chat(client, {"conversationId": cid, "query": "second"})
    messages = client.get(f"/api/messages/{cid}", headers=ALICE).json()
    assert len(messages) == 4
    first_id = messages[0]["id"]

    resp = client.put(f"/api/messages/{cid}/{first_id}", json={"content": "first!"}, headers=ALICE)
    assert resp.status_code == 200
    assert resp.json()["edited"] is True
    assert resp.json()["content"] == "first!"

    resp = client.request(
        "DELETE",
        f"/api/messages/{cid}/delete-after",
        json={"afterMessageId": messages[1]["id"]},
        headers=ALICE,
    )
    assert resp.json() == {"success": True, "deletedCount": 2}

    completion.replies = [["Regenerated"]]
    resp = client.post(
        f"/api/messages/{cid}/{first_id}/reask",
        json={"content": "first, reworded"},
        headers=ALICE,
    )
    assert resp.status_code == 200
    assert resp.text == "Regenerated"
    assert resp.headers["X-Conversation-ID"] == cid

    messages = client.get(f"/api/messages/{cid}", headers=ALICE).json()
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "first, reworded"),
        ("assistant", "Regenerated"),
    ]

    resp = client.post(f"/api/messages/{cid}/{messages[1]['id']}/reask", headers=ALICE)
    assert resp.status_code == 409


def test_conversation_crud(client: TestClient) -> None:
    resp = client.post("/api/conversations", json={}, headers=ALICE)
    assert resp.status_code == 201
    conversation = resp.json()
    assert conversation["title"] == PLACEHOLDER_TITLE
    cid = conversation["id"]

    resp = client.put(f"/api/conversations/{cid}", json={"title": "Renamed"}, headers=ALICE)
    assert resp.json()["title"] == "Renamed"
    resp = client.put(f"/api/conversations/{cid}", json={"title": " "}, headers=ALICE)
    assert resp.status_code == 400

    resp = client.post(
        "/api/conversations/generate-title",
        json={"conversationId": cid, "firstMessage": "Explain recursion"},
        headers=ALICE,
    )
    assert resp.json() == {"title": "Recursion Basics", "success": True}

    _chat(client, {"conversationId": cid, "query": "hello"})
    message_id = client.get(f"/api/messages/{cid}", headers=ALICE).json()[0]["id"]
    resp = client.delete(f"/api/messages/{cid}/{message_id}", headers=ALICE)
    assert resp.json() == {"success": True, "messageId": message_id}

    assert client.delete(f"/api/conversations/{cid}", headers=BOB).status_code == 404
    resp = client.delete(f"/api/conversations/{cid}", headers=ALICE)
    assert resp.json() == {"success": True, "deletedCount": 1}
    assert client.get(f"/api/conversations/{cid}", headers=ALICE).status_code == 404


def test_check_duplicate(client: TestClient) -> None:
    cid = _chat(client, {"query": "Same thing"}).headers["X-Conversation-ID"]
    payload = {"conversationId": cid, "content": "Same thing"}
    resp = client.post("/api/messages/check-duplicate", json=payload, headers=ALICE)
    assert resp.json() == {"isDuplicate": True}
    resp = client.post(
        "/api/messages/check-duplicate",
        json={**payload, "content": "Different"},
        headers=ALICE,
    )
    assert resp.json() == {"isDuplicate": False}
    resp = client.post("/api/messages/check-duplicate", json=payload, headers=BOB)
    assert resp.json() == {"isDuplicate": False}


def test_upload_and_attach(client: TestClient, completion: ScriptedCompletion) -> None:
    resp = client.post(
        "/api/upload",
        files={"file": ("notes.txt", b"remember the milk", "text/plain")},
        headers=ALICE,
    )
    assert resp.status_code == 200
    attachment = resp.json()["attachment"]
    assert attachment["type"] == "file"
    assert attachment["mimeType"] == "text/plain"
    assert attachment["size"] == 17
    assert attachment["url"].endswith("/notes.txt")
    assert client.get(attachment["url"]).content == b"remember the milk"

    resp = _chat(client, {"query": "", "attachments": [attachment]})
    assert resp.status_code == 200
    prompt_turn = completion.calls[-1][-1]["content"]
    assert prompt_turn[0]["type"] == "text"
    assert "notes.txt" in prompt_turn[0]["text"]


def test_upload_rejects_unsupported_type(client: TestClient) -> None:
    resp = client.post(
        "/api/upload",
        files={"file": ("tool.exe", b"MZ", "application/x-msdownload")},
        headers=ALICE,
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "File type not supported"}


def _exception_chain(exc: BaseException | None) -> Iterator[BaseException]:
    while exc is not None:
        yield exc
        if isinstance(exc, BaseExceptionGroup):
            for inner in exc.exceptions:
                yield from _exception_chain(inner)
        exc = exc.__cause__ or exc.__context__


def test_mid_stream_failure_aborts_response(
    client: TestClient,
    completion: ScriptedCompletion,
) -> None:
    completion.replies = [["part one ", RuntimeError("upstream reset")]]
    with pytest.raises(Exception) as excinfo:  # noqa: PT011
        _chat(client, {"query": "hi"})
    interrupted = [e for e in _exception_chain(excinfo.value) if isinstance(e, StreamInterrupted)]
    assert interrupted
    assert interrupted[0].persisted

    [conversation] = client.get("/api/conversations", headers=ALICE).json()
    messages = client.get(f"/api/messages/{conversation['id']}", headers=ALICE).json()
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "hi"),
        ("assistant", "part one "),
    ]

    # Seen from the wire: headers already went out, the body stops at the partial reply.
    completion.replies = [["part two ", RuntimeError("upstream reset")]]
    lenient = TestClient(client.app, raise_server_exceptions=False)
    resp = lenient.post(
        "/api/chat",
        json={"conversationId": conversation["id"], "query": "again"},
        headers=ALICE,
    )
    assert resp.status_code == 200
    assert resp.text == "part two "
    messages = client.get(f"/api/messages/{conversation['id']}", headers=ALICE).json()
    assert messages[-1]["content"] == "part two "
