"""Tests for bluesky_gate: facet serialization and ordered, fail-fast posting."""
from __future__ import annotations

import datetime as dt

import pytest

import bluesky_gate
from post_builder import AnnotationBuilder, PostCandidate

NOW = dt.datetime(2024, 1, 15, 3, 30, tzinfo=dt.timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text="{}"):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


class FakeBluesky:
    """Stands in for requests.post against the XRPC endpoints."""

    def __init__(self, fail_on_post=None):
        self.calls = []
        self.fail_on_post = fail_on_post
        self.posts = 0

    def __call__(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        if url.endswith("com.atproto.server.createSession"):
            return FakeResponse(payload={"accessJwt": "jwt-123", "did": "did:plc:bot"})
        self.posts += 1
        if self.fail_on_post == self.posts:
            return FakeResponse(status_code=500, text="boom")
        return FakeResponse(payload={"uri": f"at://did:plc:bot/app.bsky.feed.post/{self.posts}"})


def _candidate(text: str) -> PostCandidate:
    post = AnnotationBuilder()
    post.append(f"{text}\nFrom ")
    post.append_tag("CFA")
    post.append("\n")
    post.append_link("Find on Map >", "https://www.google.com/maps/search/?api=1&query=-37.5,145.0")
    return post.build(created_at=NOW)


def test_post_record_serializes_facets():
    record = bluesky_gate.post_record(_candidate("Grass Fire"))

    assert record["$type"] == "app.bsky.feed.post"
    assert record["createdAt"] == "2024-01-15T03:30:00.000Z"
    tag, link = record["facets"]
    assert tag == {
        "index": {"byteStart": len(b"Grass Fire\nFrom "), "byteEnd": len(b"Grass Fire\nFrom #CFA")},
        "features": [{"$type": "app.bsky.richtext.facet#tag", "tag": "CFA"}],
    }
    assert link["features"] == [{
        "$type": "app.bsky.richtext.facet#link",
        "uri": "https://www.google.com/maps/search/?api=1&query=-37.5,145.0",
    }]


def test_post_record_without_annotations_has_no_facets():
    record = bluesky_gate.post_record(PostCandidate(text="hello", annotations=(), created_at=NOW))
    assert "facets" not in record


def test_post_candidates_logs_in_once_and_keeps_order(monkeypatch):
    fake = FakeBluesky()
    monkeypatch.setattr(bluesky_gate.requests, "post", fake)

    posted = bluesky_gate.post_candidates(
        [_candidate("first"), PostCandidate(text="", annotations=(), created_at=NOW), _candidate("second")],
        session=bluesky_gate.login("bot.example", "app-password", service="https://pds.test"),
    )

    assert posted == 2
    urls = [c["url"] for c in fake.calls]
    assert urls == [
        "https://pds.test/xrpc/com.atproto.server.createSession",
        "https://pds.test/xrpc/com.atproto.repo.createRecord",
        "https://pds.test/xrpc/com.atproto.repo.createRecord",
    ]
    texts = [c["json"]["record"]["text"] for c in fake.calls[1:]]
    assert texts[0].startswith("first") and texts[1].startswith("second")
    assert fake.calls[1]["json"]["repo"] == "did:plc:bot"
    assert fake.calls[1]["headers"]["Authorization"] == "Bearer jwt-123"


def test_post_candidates_fails_fast(monkeypatch):
    fake = FakeBluesky(fail_on_post=1)
    monkeypatch.setattr(bluesky_gate.requests, "post", fake)
    session = bluesky_gate.BlueskySession(did="did:plc:bot", access_jwt="jwt", service="https://pds.test")

    with pytest.raises(RuntimeError, match="createRecord failed 500"):
        bluesky_gate.post_candidates([_candidate("one"), _candidate("two")], session=session)
    assert fake.posts == 1


def test_empty_batch_never_logs_in(monkeypatch):
    fake = FakeBluesky()
    monkeypatch.setattr(bluesky_gate.requests, "post", fake)
    assert bluesky_gate.post_candidates([]) == 0
    assert fake.calls == []


def test_login_requires_credentials():
    with pytest.raises(RuntimeError, match="BLUESKY_PASSWORD"):
        bluesky_gate.login("bot.example", "")


def test_login_rejects_session_without_token(monkeypatch):
    monkeypatch.setattr(
        bluesky_gate.requests,
        "post",
        lambda url, json=None, headers=None, timeout=None: FakeResponse(payload={"did": "did:plc:bot"}),
    )
    with pytest.raises(RuntimeError, match="No accessJwt"):
        bluesky_gate.login("bot.example", "pw", service="https://pds.test")


def test_post_candidates_reports_each_delivered_candidate(monkeypatch):
    fake = FakeBluesky(fail_on_post=2)
    monkeypatch.setattr(bluesky_gate.requests, "post", fake)
    session = bluesky_gate.BlueskySession(did="did:plc:bot", access_jwt="jwt", service="https://pds.test")
    first, second = _candidate("one"), _candidate("two")
    delivered = []

    with pytest.raises(RuntimeError):
        bluesky_gate.post_candidates([first, second], session=session, on_posted=delivered.append)
    assert delivered == [first]


def test_send_test_post_uses_env_credentials(monkeypatch):
    fake = FakeBluesky()
    monkeypatch.setattr(bluesky_gate.requests, "post", fake)
    monkeypatch.setattr(bluesky_gate, "BLUESKY_USERNAME", "bot.example")
    monkeypatch.setattr(bluesky_gate, "BLUESKY_PASSWORD", "app-password")
    monkeypatch.setattr(bluesky_gate, "BLUESKY_SERVICE", "https://pds.test")

    result = bluesky_gate.send_test_post("hello from the bot")

    assert result == {"uri": "at://did:plc:bot/app.bsky.feed.post/1"}
    session_call, post_call = fake.calls
    assert session_call["json"] == {"identifier": "bot.example", "password": "app-password"}
    assert post_call["url"] == "https://pds.test/xrpc/com.atproto.repo.createRecord"
    assert post_call["json"]["record"]["text"] == "hello from the bot"
    assert "facets" not in post_call["json"]["record"]
