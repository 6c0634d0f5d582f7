# emv_alert_bot.py
#
# EMV Alert Bot
# - Polls the VicEmergency "last modified" stub every UPDATE_TIME seconds
# - Only pulls the full GeoJSON feed when the stub says it changed
# - Posts incidents/warnings that are new, or whose status changed, to Bluesky
# - Keeps seen state in memory only (restart = fresh start, no backlog replay)
#
# REQUIRED env vars (or .env):
#   DATA_URL            full GeoJSON feed
#   DELTA_URL           last-modified stub
#   BLUESKY_USERNAME    only when POST_TO_BSKY is on
#   BLUESKY_PASSWORD    only when POST_TO_BSKY is on
#
# OPTIONAL env vars:
#   UPDATE_TIME=60      poll interval (seconds)
#   PURGE_DAYS=4        forget records not updated for this many days
#   POST_TO_BSKY=Y|N    N = dry run, post text is only printed in DEBUG mode
#   DEBUG=Y|N
#   TEST_POST=Y         send one test post and exit
#
from __future__ import annotations

import os
import time
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from dotenv import load_dotenv

import bluesky_gate
from post_builder import Feature, FeedProperties, PostCandidate, now_utc, parse_ts, render

load_dotenv()


def env_flag(name: str, default: str = "N") -> bool:
    return os.getenv(name, default).strip().lower() in {"y", "yes", "true", "1"}


def safe_int(x: Any, default: int) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


# ----------------------------
# Feature toggles / config
# ----------------------------
DATA_URL = os.getenv("DATA_URL", "").strip()
DELTA_URL = os.getenv("DELTA_URL", "").strip()

UPDATE_TIME = safe_int(os.getenv("UPDATE_TIME"), 60)
PURGE_DAYS = safe_int(os.getenv("PURGE_DAYS"), 4)

VERBOSE = env_flag("DEBUG")
POST_TO_BSKY = env_flag("POST_TO_BSKY")
TEST_POST = env_flag("TEST_POST")

USER_AGENT = "emv-alert-bot/1.0"


def debug(msg: Any) -> None:
    if VERBOSE:
        print(msg)


# ----------------------------
# Feed collaborators
# ----------------------------
def fetch_modified_stub(url: Optional[str] = None) -> dt.datetime:
    r = requests.get(url or DELTA_URL, headers={"User-Agent": USER_AGENT}, timeout=20)
    r.raise_for_status()
    return parse_ts(r.json().get("lastModified"))


def fetch_feed(url: Optional[str] = None) -> List[Feature]:
    r = requests.get(url or DATA_URL, headers={"User-Agent": USER_AGENT}, timeout=30)
    if r.status_code >= 400:
        raise RuntimeError(f"Feed GET failed {r.status_code}: {r.text[:300]}")
    payload = r.json()
    return [Feature.from_dict(f) for f in payload.get("features") or []]


# ----------------------------
# Change detection
# ----------------------------
ObservedMap = Dict[str, FeedProperties]


def is_changed(props: FeedProperties, observed: ObservedMap) -> bool:
    previous = observed.get(props.id)
    if previous is None:
        return True
    return bool(props.status) and previous.status != props.status


def detect_changes(features: Iterable[Feature], cutoff: dt.datetime, observed: ObservedMap) -> List[Feature]:
    """Features updated after `cutoff` that are new or changed status, in feed order.

    Each changed feature replaces its entry in `observed`.
    """
    changed: List[Feature] = []
    for feature in features:
        props = feature.properties
        try:
            updated = props.updated_at
        except ValueError:
            debug(f"Skipping {props.id}: bad updated {props.updated!r}")
            continue
        if updated <= cutoff:
            continue
        debug(f"{props.feed_type} {props.category1} {props.category2} {props.location}")
        if is_changed(props, observed):
            observed[props.id] = props
            changed.append(feature)
    return changed


# ----------------------------
# Cutoff / staleness
# ----------------------------
@dataclass
class Watermark:
    last_processed: Optional[dt.datetime] = None
    last_upstream_modified: Optional[dt.datetime] = None


class CutoffController:
    def __init__(
        self,
        fetch_stub: Callable[[], dt.datetime],
        now: Callable[[], dt.datetime] = now_utc,
    ) -> None:
        self.fetch_stub = fetch_stub
        self.now = now
        self.watermark = Watermark()

    @property
    def cutoff(self) -> dt.datetime:
        if self.watermark.last_processed is None:
            self.watermark.last_processed = self.now()
        return self.watermark.last_processed

    def probe(self) -> bool:
        """True when upstream changed since the last pass that posted anything."""
        try:
            modified = self.fetch_stub()
        except Exception as e:
            # Never stall the loop on the stub; assume something changed
            print("Modified stub unavailable, assuming modified:", e)
            modified = self.now()
        self.watermark.last_upstream_modified = modified
        last_processed = self.cutoff
        debug(self.watermark)
        return modified > last_processed

    def advance(self) -> None:
        self.watermark.last_processed = self.now()

    def purge(self, observed: ObservedMap, retention_days: int = PURGE_DAYS) -> int:
        cutoff = self.now() - dt.timedelta(days=retention_days)
        stale = []
        for key, props in observed.items():
            try:
                if props.updated_at < cutoff:
                    stale.append(key)
            except ValueError:
                stale.append(key)
        for key in stale:
            del observed[key]
        return len(stale)


# ----------------------------
# Pass runner
# ----------------------------
@dataclass
class BotContext:
    controller: CutoffController
    observed: ObservedMap = field(default_factory=dict)


def dry_run_post(
    candidates: List[PostCandidate],
    on_posted: Optional[Callable[[PostCandidate], None]] = None,
) -> int:
    for candidate in candidates:
        debug(candidate.text)
        if on_posted is not None:
            on_posted(candidate)
    return len(candidates)


PostFn = Callable[..., Any]


def run_pass(
    ctx: BotContext,
    fetch: Callable[[], List[Feature]] = fetch_feed,
    post: PostFn = bluesky_gate.post_candidates,
    retention_days: int = PURGE_DAYS,
) -> int:
    """One poll cycle. Returns the number of changed records.

    `post(candidates, on_posted=...)` reports each delivered candidate; only
    those records are committed to `ctx.observed`. Fetch/post errors
    propagate, leaving the watermark alone and unposted changes due again
    next cycle.
    """
    if not ctx.controller.probe():
        return 0

    features = fetch()
    debug("processing")
    pending = dict(ctx.observed)
    changes = detect_changes(features, ctx.controller.cutoff, pending)
    if not changes:
        return 0

    candidates: List[PostCandidate] = []
    owners: Dict[int, FeedProperties] = {}
    for feature in changes:
        candidate = render(feature)
        if candidate is None:
            # Nothing to post; remember it so it isn't re-rendered every cycle
            ctx.observed[feature.properties.id] = feature.properties
            continue
        owners[id(candidate)] = feature.properties
        candidates.append(candidate)

    def commit(candidate: PostCandidate) -> None:
        props = owners[id(candidate)]
        ctx.observed[props.id] = props

    post(candidates, on_posted=commit)

    purged = ctx.controller.purge(ctx.observed, retention_days)
    ctx.controller.advance()
    print(
        "Pass summary:",
        f"changes={len(changes)}",
        f"posts={len(candidates)}",
        f"purged={purged}",
        f"tracked={len(ctx.observed)}",
    )
    return len(changes)


def run_forever(
    ctx: BotContext,
    interval: int = UPDATE_TIME,
    fetch: Callable[[], List[Feature]] = fetch_feed,
    post: PostFn = bluesky_gate.post_candidates,
    retention_days: int = PURGE_DAYS,
    sleep: Callable[[float], None] = time.sleep,
    max_cycles: Optional[int] = None,
) -> None:
    # Sets the watermark to "now" so the first pass skips the backlog
    ctx.controller.probe()

    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        sleep(interval)
        cycles += 1
        try:
            run_pass(ctx, fetch=fetch, post=post, retention_days=retention_days)
        except Exception as e:
            print("Pass failed:", e)


# ----------------------------
# Main
# ----------------------------
def main() -> None:
    if TEST_POST:
        print("TEST_POST enabled.")
        bluesky_gate.send_test_post()
        return

    missing = [k for k, v in [("DATA_URL", DATA_URL), ("DELTA_URL", DELTA_URL)] if not v]
    if missing:
        raise RuntimeError(f"Missing required env vars: {', '.join(missing)}")

    post = bluesky_gate.post_candidates if POST_TO_BSKY else dry_run_post
    ctx = BotContext(controller=CutoffController(fetch_stub=fetch_modified_stub))
    print(f"Polling every {UPDATE_TIME}s, posting={'on' if POST_TO_BSKY else 'off'}")
    run_forever(ctx, interval=UPDATE_TIME, post=post)


if __name__ == "__main__":
    main()
