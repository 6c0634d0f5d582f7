# bluesky_gate.py
#
# Bluesky posting helpers
# - Logs in once per batch (com.atproto.server.createSession)
# - Posts each candidate in order (com.atproto.repo.createRecord)
# - Serializes AnnotationBuilder annotations as app.bsky.richtext facets
#
# SECURITY
# - Never logs the password or session tokens
# - Fails fast: the first failed post aborts the rest of the batch
#
from __future__ import annotations

import datetime as dt
import os
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from dotenv import load_dotenv

from post_builder import LINK, TAG, Annotation, PostCandidate, now_utc

# ---------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------
load_dotenv()

BLUESKY_SERVICE = os.getenv("BLUESKY_SERVICE", "https://bsky.social").strip().rstrip("/")
BLUESKY_USERNAME = os.getenv("BLUESKY_USERNAME", "").strip()
BLUESKY_PASSWORD = os.getenv("BLUESKY_PASSWORD", "").strip()

USER_AGENT = "emv-alert-bot/1.0"

POST_COLLECTION = "app.bsky.feed.post"
FACET_TYPES = {
    TAG: ("app.bsky.richtext.facet#tag", "tag"),
    LINK: ("app.bsky.richtext.facet#link", "uri"),
}


# ---------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------
def _xrpc(method: str, service: Optional[str] = None) -> str:
    return f"{service or BLUESKY_SERVICE}/xrpc/{method}"


def _raise_bsky(label: str, resp: requests.Response) -> None:
    if resp.ok:
        return
    raise RuntimeError(f"Bluesky {label} failed {resp.status_code}: {resp.text[:500]}")


def _iso_z(ts: dt.datetime) -> str:
    return ts.astimezone(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def facet_for(annotation: Annotation) -> Dict[str, Any]:
    ftype, key = FACET_TYPES[annotation.kind]
    return {
        "index": {"byteStart": annotation.start, "byteEnd": annotation.end},
        "features": [{"$type": ftype, key: annotation.value}],
    }


def post_record(candidate: PostCandidate) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "$type": POST_COLLECTION,
        "text": candidate.text,
        "createdAt": _iso_z(candidate.created_at),
    }
    if candidate.annotations:
        record["facets"] = [facet_for(a) for a in candidate.annotations]
    return record


# ---------------------------------------------------------------------
# Session + posting
# ---------------------------------------------------------------------
class BlueskySession:
    def __init__(self, did: str, access_jwt: str, service: Optional[str] = None) -> None:
        self.did = did
        self.access_jwt = access_jwt
        self.service = service or BLUESKY_SERVICE

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_jwt}",
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json",
        }

    def create_post(self, candidate: PostCandidate) -> Dict[str, Any]:
        r = requests.post(
            _xrpc("com.atproto.repo.createRecord", self.service),
            json={"repo": self.did, "collection": POST_COLLECTION, "record": post_record(candidate)},
            headers=self._headers(),
            timeout=20,
        )
        print("Bluesky createRecord:", r.status_code, r.text[:300])
        _raise_bsky("createRecord", r)
        return r.json()


def login(
    username: Optional[str] = None,
    password: Optional[str] = None,
    service: Optional[str] = None,
) -> BlueskySession:
    username = (username if username is not None else BLUESKY_USERNAME).strip()
    password = (password if password is not None else BLUESKY_PASSWORD).strip()
    missing = [k for k, v in [
        ("BLUESKY_USERNAME", username),
        ("BLUESKY_PASSWORD", password),
    ] if not v]
    if missing:
        raise RuntimeError(f"Missing required Bluesky env vars: {', '.join(missing)}")

    service = service or BLUESKY_SERVICE
    r = requests.post(
        _xrpc("com.atproto.server.createSession", service),
        json={"identifier": username, "password": password},
        headers={"User-Agent": USER_AGENT},
        timeout=30,
    )
    # Body carries tokens; only the status is printed
    print("Bluesky createSession:", r.status_code)
    _raise_bsky("createSession", r)

    payload = r.json()
    access = payload.get("accessJwt")
    did = payload.get("did")
    if not access or not did:
        raise RuntimeError("No accessJwt/did returned from createSession.")
    return BlueskySession(did=did, access_jwt=access, service=service)


def post_candidates(
    candidates: Iterable[PostCandidate],
    session: Optional[BlueskySession] = None,
    on_posted: Optional[Callable[[PostCandidate], None]] = None,
) -> int:
    """Post candidates in order. Returns the number posted.

    `on_posted` fires after each successful post. Any failure raises and
    leaves the remaining candidates unposted.
    """
    batch: List[PostCandidate] = [c for c in candidates if c is not None and c.text]
    if not batch:
        return 0
    session = session or login()
    for candidate in batch:
        session.create_post(candidate)
        if on_posted is not None:
            on_posted(candidate)
    return len(batch)


def send_test_post(text: str = "Test post from EMV alert bot") -> Dict[str, Any]:
    candidate = PostCandidate(text=text, annotations=(), created_at=now_utc())
    return login().create_post(candidate)
