"""
End-to-end API tests for the chat endpoints.

Tests the full stack: HTTP request → JWT auth → schema validation → session
resolution → LangGraph pipeline (real FAISS + BM25 over the conftest corpus,
mocked Mistral) → SQLite persistence → HTTP response.

Run from the project root:
    pytest brain/tests/test_api_chat.py -v
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient

from brain.chat.blocking import BLOCKED_MESSAGES, NO_RELEVANT_SOURCES
from conftest import (
    AGENT_ID,
    EMPTY_AGENT_ID,
    EXACT_MATCH_QUESTION,
    INACTIVE_AGENT_ID,
    OTHER_USER_ID,
    STRICT_AGENT_ID,
    ZERO_MATCH_QUESTION,
    auth_headers,
    make_echo_mistral,
)

HEADERS = auth_headers()
OTHER_HEADERS = auth_headers(OTHER_USER_ID)
MISSING_SESSION = "00000000-0000-4000-8000-000000000000"


async def _new_session(client: AsyncClient, agent_id: str = AGENT_ID, headers: dict = HEADERS) -> str:
    response = await client.post("/chat/sessions", json={"agentId": agent_id}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["id"]


async def _send(client: AsyncClient, question: str, session_id: str | None = None,
                agent_id: str = AGENT_ID, headers: dict = HEADERS, **extra):
    body = {"messages": [{"role": "user", "content": question}], **extra}
    if session_id is not None:
        body["sessionId"] = session_id
    return await client.post(f"/chat/agents/{agent_id}", json=body, headers=headers)


async def _history(client: AsyncClient, session_id: str, headers: dict = HEADERS) -> list[dict]:
    response = await client.get(f"/chat/sessions/{session_id}/history", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["messages"]


# ---------------------------------------------------------------------------
# Test Group 1: chat turns
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_exact_match_answers_with_one_source(client: AsyncClient, mistral_client) -> None:
    session_id = await _new_session(client)

    response = await _send(client, EXACT_MATCH_QUESTION, session_id)
    assert response.status_code == 200, response.text
    result = response.json()

    assert result["blocked"] is False
    assert result["reason"] is None
    assert result["contextUsed"] is True
    assert result["contextLength"] == len(EXACT_MATCH_QUESTION)
    assert [s["chunkId"] for s in result["contextSources"]] == ["security_handbook_chunk_000"]
    assert result["contextSources"][0]["documentTitle"] == "Security Handbook"
    assert result["message"] == "Report phishing to the security team [Source 1]."
    assert result["sessionId"] == session_id
    assert result["provider"] == "mistral"
    assert result["strategy"] == "hybrid"
    assert result["performance"]["totalTime"] >= 0
    mistral_client.chat.complete_async.assert_awaited_once()

    messages = await _history(client, session_id)
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["content"] == EXACT_MATCH_QUESTION
    assert messages[1]["id"] == result["messageId"]
    assert messages[1]["content"] == result["message"]


@pytest.mark.asyncio
async def test_performance_reports_stage_timings(client: AsyncClient) -> None:
    response = await _send(client, EXACT_MATCH_QUESTION)
    assert response.status_code == 200, response.text
    perf = response.json()["performance"]

    assert set(perf) == {"totalTime", "vectorSearchTime", "contextProcessingTime", "generationTime"}
    assert all(value >= 0 for value in perf.values())

    blocked = (await _send(client, ZERO_MATCH_QUESTION)).json()["performance"]
    assert blocked["generationTime"] == 0.0
    assert "totalTime" in blocked


@pytest.mark.asyncio
async def test_zero_match_is_blocked_and_persists_notice(client: AsyncClient, mistral_client) -> None:
    session_id = await _new_session(client)

    response = await _send(client, ZERO_MATCH_QUESTION, session_id)
    assert response.status_code == 200, response.text
    result = response.json()

    assert result["blocked"] is True
    assert result["reason"] == NO_RELEVANT_SOURCES
    assert result["contextUsed"] is False
    assert result["contextLength"] == 0
    assert result["contextSources"] == []
    assert result["message"] == BLOCKED_MESSAGES[NO_RELEVANT_SOURCES]
    mistral_client.chat.complete_async.assert_not_awaited()

    messages = await _history(client, session_id)
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", ZERO_MATCH_QUESTION),
        ("assistant", BLOCKED_MESSAGES[NO_RELEVANT_SOURCES]),
    ]


@pytest.mark.asyncio
async def test_agent_without_index_blocks(client: AsyncClient) -> None:
    response = await _send(client, EXACT_MATCH_QUESTION, agent_id=EMPTY_AGENT_ID)
    assert response.status_code == 200, response.text
    assert response.json()["reason"] == NO_RELEVANT_SOURCES


@pytest.mark.asyncio
async def test_turn_without_session_creates_one(client: AsyncClient) -> None:
    response = await _send(client, EXACT_MATCH_QUESTION)
    assert response.status_code == 200, response.text
    session_id = response.json()["sessionId"]

    listed = await client.get("/chat/sessions", headers=HEADERS)
    assert listed.status_code == 200
    summaries = listed.json()
    assert [s["id"] for s in summaries] == [session_id]
    assert summaries[0]["agentName"] == "Handbook"
    assert summaries[0]["messageCount"] == 2
    assert summaries[0]["lastMessage"] == response.json()["message"]
    assert summaries[0]["lastMessageTime"] is not None


@pytest.mark.asyncio
async def test_strategy_override_is_echoed(client: AsyncClient) -> None:
    response = await _send(client, EXACT_MATCH_QUESTION, searchStrategy="semantic_only", enableReranking=False)
    assert response.status_code == 200, response.text
    assert response.json()["strategy"] == "semantic_only"
    assert response.json()["rerankDegraded"] is False


@pytest.mark.asyncio
async def test_concurrent_turns_on_one_session_do_not_interleave(client: AsyncClient, mistral_client) -> None:
    mistral_client.chat.complete_async = make_echo_mistral().chat.complete_async
    session_id = await _new_session(client)
    first = f"{EXACT_MATCH_QUESTION} (first)"
    second = f"{EXACT_MATCH_QUESTION} (second)"

    responses = await asyncio.gather(
        _send(client, first, session_id),
        _send(client, second, session_id),
    )
    assert [r.status_code for r in responses] == [200, 200]

    messages = await _history(client, session_id)
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
    assert messages[1]["content"] == f"answer to: {messages[0]['content']}"
    assert messages[3]["content"] == f"answer to: {messages[2]['content']}"
    assert {messages[0]["content"], messages[2]["content"]} == {first, second}
    ids = [m["id"] for m in messages]
    assert ids == sorted(ids)


# ---------------------------------------------------------------------------
# Test Group 2: failures leave no trace
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generation_failure_persists_nothing(client: AsyncClient, mistral_client) -> None:
    mistral_client.chat.complete_async.side_effect = ConnectionError("provider down")
    session_id = await _new_session(client)

    response = await _send(client, EXACT_MATCH_QUESTION, session_id)
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "GENERATION_FAILED"
    assert await _history(client, session_id) == []

    fresh = await _send(client, EXACT_MATCH_QUESTION)
    assert fresh.status_code == 502
    listed = (await client.get("/chat/sessions", headers=HEADERS)).json()
    assert [s["id"] for s in listed] == [session_id]


# ---------------------------------------------------------------------------
# Test Group 3: request errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_missing_or_bad_token_is_401(client: AsyncClient) -> None:
    no_token = await client.get("/chat/sessions")
    assert no_token.status_code == 401
    assert no_token.json()["error"]["code"] == "UNAUTHORIZED"

    bad_token = await client.get("/chat/sessions", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad_token.status_code == 401


@pytest.mark.asyncio
async def test_other_users_session_is_401(client: AsyncClient) -> None:
    session_id = await _new_session(client)

    history = await client.get(f"/chat/sessions/{session_id}/history", headers=OTHER_HEADERS)
    assert history.status_code == 401

    send = await _send(client, EXACT_MATCH_QUESTION, session_id, headers=OTHER_HEADERS)
    assert send.status_code == 401
    assert await _history(client, session_id) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "session_id, status",
    [(MISSING_SESSION, 404), ("not-a-uuid", 400)],
)
async def test_unknown_and_malformed_session_ids(client: AsyncClient, session_id: str, status: int) -> None:
    history = await client.get(f"/chat/sessions/{session_id}/history", headers=HEADERS)
    assert history.status_code == status
    send = await _send(client, EXACT_MATCH_QUESTION, session_id)
    assert send.status_code == status


@pytest.mark.asyncio
async def test_agent_errors(client: AsyncClient) -> None:
    unknown = await _send(client, EXACT_MATCH_QUESTION, agent_id="agent-unknown")
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "NOT_FOUND"

    inactive = await _send(client, EXACT_MATCH_QUESTION, agent_id=INACTIVE_AGENT_ID)
    assert inactive.status_code == 400

    create_inactive = await client.post("/chat/sessions", json={"agentId": INACTIVE_AGENT_ID}, headers=HEADERS)
    assert create_inactive.status_code == 400


@pytest.mark.asyncio
async def test_session_must_belong_to_requested_agent(client: AsyncClient) -> None:
    session_id = await _new_session(client, AGENT_ID)
    response = await _send(client, EXACT_MATCH_QUESTION, session_id, agent_id=STRICT_AGENT_ID)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_turn_shape_validation(client: AsyncClient) -> None:
    unknown_strategy = await _send(client, EXACT_MATCH_QUESTION, searchStrategy="keyword_magic")
    assert unknown_strategy.status_code == 400
    assert unknown_strategy.json()["error"]["code"] == "INVALID_ARGUMENT"

    last_not_user = await client.post(
        f"/chat/agents/{AGENT_ID}",
        json={"messages": [{"role": "assistant", "content": "hello"}]},
        headers=HEADERS,
    )
    assert last_not_user.status_code == 400

    blank = await _send(client, "   ")
    assert blank.status_code == 400

    no_messages = await client.post(f"/chat/agents/{AGENT_ID}", json={"messages": []}, headers=HEADERS)
    assert no_messages.status_code == 422
    assert no_messages.json()["error"]["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Test Group 4: sessions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_session_returns_new_id_each_time(client: AsyncClient) -> None:
    first = await client.post("/chat/sessions", json={"agentId": AGENT_ID}, headers=HEADERS)
    second = await client.post("/chat/sessions", json={"agentId": AGENT_ID}, headers=HEADERS)
    assert first.status_code == second.status_code == 201
    assert first.json()["id"] != second.json()["id"]
    assert first.json()["agentName"] == "Handbook"
    assert await _history(client, first.json()["id"]) == []


@pytest.mark.asyncio
async def test_list_sessions_filters_by_agent_and_owner(client: AsyncClient) -> None:
    handbook = await _new_session(client, AGENT_ID)
    strict = await _new_session(client, STRICT_AGENT_ID)
    await _new_session(client, AGENT_ID, headers=OTHER_HEADERS)

    mine = (await client.get("/chat/sessions", headers=HEADERS)).json()
    assert {s["id"] for s in mine} == {handbook, strict}
    assert mine[0]["id"] == strict  # newest first
    assert mine[0]["messageCount"] == 0
    assert mine[0]["lastMessage"] is None

    filtered = (await client.get("/chat/sessions", params={"agentId": STRICT_AGENT_ID}, headers=HEADERS)).json()
    assert [s["id"] for s in filtered] == [strict]


@pytest.mark.asyncio
async def test_delete_session(client: AsyncClient) -> None:
    session_id = await _new_session(client)
    await _send(client, EXACT_MATCH_QUESTION, session_id)

    forbidden = await client.delete(f"/chat/sessions/{session_id}", headers=OTHER_HEADERS)
    assert forbidden.status_code == 401

    deleted = await client.delete(f"/chat/sessions/{session_id}", headers=HEADERS)
    assert deleted.status_code == 204
    gone = await client.get(f"/chat/sessions/{session_id}/history", headers=HEADERS)
    assert gone.status_code == 404


# ---------------------------------------------------------------------------
# Test Group 5: ratings
# ---------------------------------------------------------------------------

async def _answered_turn(client: AsyncClient) -> tuple[str, int]:
    response = await _send(client, EXACT_MATCH_QUESTION)
    assert response.status_code == 200, response.text
    return response.json()["sessionId"], response.json()["messageId"]


@pytest.mark.asyncio
async def test_rating_is_idempotent_and_last_write_wins(client: AsyncClient) -> None:
    session_id, message_id = await _answered_turn(client)
    url = f"/chat/messages/{message_id}/rating"

    for _ in range(2):
        up = await client.put(url, json={"rating": "up"}, headers=HEADERS)
        assert up.status_code == 200, up.text
        assert up.json() == {"messageId": message_id, "rating": "up", "comment": None}
    assert (await _history(client, session_id))[1]["rating"] == "up"

    down = await client.put(url, json={"rating": "down", "comment": "Outdated policy"}, headers=HEADERS)
    assert down.status_code == 200
    assistant = (await _history(client, session_id))[1]
    assert assistant["rating"] == "down"
    assert assistant["ratingComment"] == "Outdated policy"

    cleared = await client.put(url, json={"rating": None}, headers=HEADERS)
    assert cleared.status_code == 200
    assert (await _history(client, session_id))[1]["rating"] is None


@pytest.mark.asyncio
async def test_rating_errors(client: AsyncClient) -> None:
    session_id, message_id = await _answered_turn(client)
    user_message_id = (await _history(client, session_id))[0]["id"]

    other_user = await client.put(f"/chat/messages/{message_id}/rating", json={"rating": "up"}, headers=OTHER_HEADERS)
    assert other_user.status_code == 401

    user_message = await client.put(f"/chat/messages/{user_message_id}/rating", json={"rating": "up"}, headers=HEADERS)
    assert user_message.status_code == 400

    missing = await client.put("/chat/messages/999999/rating", json={"rating": "up"}, headers=HEADERS)
    assert missing.status_code == 404

    malformed = await client.put("/chat/messages/abc/rating", json={"rating": "up"}, headers=HEADERS)
    assert malformed.status_code == 400

    bad_value = await client.put(f"/chat/messages/{message_id}/rating", json={"rating": "meh"}, headers=HEADERS)
    assert bad_value.status_code == 422

    assert (await _history(client, session_id))[1]["rating"] is None


# ---------------------------------------------------------------------------
# Test Group 6: vector search + health
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_vector_search(client: AsyncClient) -> None:
    response = await client.post(
        "/vectors/search",
        json={"query": "vacation days and travel expenses", "agentId": AGENT_ID, "searchStrategy": "semantic_only"},
        headers=HEADERS,
    )
    assert response.status_code == 200, response.text
    hits = response.json()
    assert hits, "expected at least one hit"
    scores = [h["score"] for h in hits]
    assert scores == sorted(scores, reverse=True)
    assert set(hits[0]) == {"text", "score", "sourceId", "documentTitle", "chunkId"}


@pytest.mark.asyncio
async def test_vector_search_validation(client: AsyncClient) -> None:
    bad_strategy = await client.post(
        "/vectors/search",
        json={"query": "vacation", "agentId": AGENT_ID, "searchStrategy": "nope"},
        headers=HEADERS,
    )
    assert bad_strategy.status_code == 400

    unknown_agent = await client.post(
        "/vectors/search", json={"query": "vacation", "agentId": "agent-unknown"}, headers=HEADERS
    )
    assert unknown_agent.status_code == 404


@pytest.mark.asyncio
async def test_index_value_error_is_upstream_failure(client: AsyncClient) -> None:
    from brain.main import app

    broken = MagicMock()
    broken.asearch = AsyncMock(side_effect=ValueError("Embedding dimension mismatch: query 3 vs index 4"))
    app.state.retriever = broken

    response = await client.post("/vectors/search", json={"query": "vacation", "agentId": AGENT_ID}, headers=HEADERS)
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "RETRIEVAL_FAILED"


@pytest.mark.asyncio
async def test_routing_errors_use_envelope(client: AsyncClient) -> None:
    missing = await client.get("/no-such-route")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"

    wrong_method = await client.put("/chat/sessions", headers=HEADERS)
    assert wrong_method.status_code == 405
    assert wrong_method.json()["error"]["code"] == "METHOD_NOT_ALLOWED"


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
