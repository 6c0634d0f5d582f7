# post_builder.py
#
# Turns one EMV feed feature into a Bluesky post candidate.
# - Time helpers: ISO parsing, Melbourne display time, "open for" durations
# - AnnotationBuilder: grows the post text and records byte-indexed facets
# - render(): picks the incident / warning layout from the feature's feedType
#
# Facet offsets are UTF-8 byte offsets (Bluesky richtext), never str indexes.
#
from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo


# ----------------------------
# Display constants
# ----------------------------
DISPLAY_TZ = "Australia/Melbourne"

WARNING_LOCATION_MAX_BYTES = 160
ELLIPSIS = "..."

MAP_LINK_TEXT = "Find on Map >"
DETAIL_LINK_TEXT = "Full Details >"
MAP_SEARCH_URL = "https://www.google.com/maps/search/?api=1&query={lat},{lon}"
WARNING_DETAIL_URL = "http://emergency.vic.gov.au/respond/#!/warning/{source_id}/moreinfo"

ALERT_TAG = "EMVAlert"

TAG = "tag"
LINK = "link"


# ----------------------------
# Time & formatting helpers
# ----------------------------
# Python < 3.11 fromisoformat only takes 3 or 6 fractional digits
_FRACTION_RE = re.compile(r"\.(\d+)(?=(?:[+-]\d{2}:?\d{2})?$)")


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_ts(value: Any) -> dt.datetime:
    """Parse an ISO-8601 feed timestamp. Naive values are taken as UTC."""
    if isinstance(value, dt.datetime):
        d = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Not a timestamp: {value!r}")
        text = value.strip().replace("Z", "+00:00")
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
        d = dt.datetime.fromisoformat(text)
    if d.tzinfo is None:
        d = d.replace(tzinfo=dt.timezone.utc)
    return d


def format_local(ts: dt.datetime, tz_name: str = DISPLAY_TZ) -> str:
    """Medium date + time, e.g. 'Oct 14, 1983, 1:30 PM'."""
    d = ts.astimezone(ZoneInfo(tz_name))
    hour = d.hour % 12 or 12
    ampm = "AM" if d.hour < 12 else "PM"
    return f"{d:%b} {d.day}, {d.year}, {hour}:{d:%M} {ampm}"


def format_duration(seconds: float) -> str:
    total = max(int(seconds), 0)
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    mins, secs = divmod(rem, 60)

    parts = []
    for value, unit in ((days, "d"), (hours, "h"), (mins, "m"), (secs, "s")):
        if value:
            parts.append(f"{value}{unit}")
    return " ".join(parts)


def truncate_bytes(text: str, limit: int = WARNING_LOCATION_MAX_BYTES, suffix: str = ELLIPSIS) -> str:
    raw = text.encode("utf-8")
    if len(raw) <= limit:
        return text
    # errors="ignore" drops a multi-byte char cut in half at the boundary
    return raw[:limit].decode("utf-8", errors="ignore") + suffix


# ----------------------------
# Feed record types
# ----------------------------
class FeedType(str, Enum):
    INCIDENT = "incident"
    WARNING = "warning"


_KNOWN_FIELDS = {
    "id": "id",
    "feedType": "feed_type",
    "status": "status",
    "updated": "updated",
    "created": "created",
    "category1": "category1",
    "category2": "category2",
    "location": "location",
    "sourceOrg": "source_org",
    "sourceId": "source_id",
    "sizeFmt": "size_fmt",
    "resources": "resources",
    "source": "source",
    "action": "action",
    "name": "name",
}


@dataclass(frozen=True)
class FeedProperties:
    """The `properties` block of one feed feature.

    Fields the bot reads are explicit; anything else lands in `extra`.
    A field set to None was absent from the feed.
    """
    id: str
    feed_type: Optional[str] = None
    status: Optional[str] = None
    updated: Optional[str] = None
    created: Optional[str] = None
    category1: Optional[str] = None
    category2: Optional[str] = None
    location: Optional[str] = None
    source_org: Optional[str] = None
    source_id: Optional[str] = None
    size_fmt: Any = None
    resources: Any = None
    source: Optional[str] = None
    action: Optional[str] = None
    name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "FeedProperties":
        known: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in raw.items():
            if key in _KNOWN_FIELDS:
                known[_KNOWN_FIELDS[key]] = value
            else:
                extra[key] = value
        known["id"] = str(known.get("id") or "")
        return cls(extra=extra, **known)

    @property
    def updated_at(self) -> dt.datetime:
        return parse_ts(self.updated)


@dataclass(frozen=True)
class Feature:
    geometry: Dict[str, Any]
    properties: FeedProperties

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Feature":
        return cls(
            geometry=raw.get("geometry") or {},
            properties=FeedProperties.from_dict(raw.get("properties") or {}),
        )


@dataclass(frozen=True)
class Annotation:
    start: int
    end: int
    kind: str
    value: str


@dataclass(frozen=True)
class PostCandidate:
    text: str
    annotations: Tuple[Annotation, ...]
    created_at: dt.datetime


# ----------------------------
# Annotation builder
# ----------------------------
class AnnotationBuilder:
    def __init__(self) -> None:
        self._parts: List[str] = []
        self._byte_length = 0
        self._annotations: List[Annotation] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def byte_length(self) -> int:
        return self._byte_length

    @property
    def annotations(self) -> Tuple[Annotation, ...]:
        return tuple(self._annotations)

    def append(self, text: str) -> "AnnotationBuilder":
        self._parts.append(text)
        self._byte_length += len(text.encode("utf-8"))
        return self

    def append_annotated(self, text: str, kind: str, value: str) -> "AnnotationBuilder":
        start = self._byte_length
        self.append(text)
        self._annotations.append(Annotation(start=start, end=self._byte_length, kind=kind, value=value))
        return self

    def append_tag(self, name: str) -> "AnnotationBuilder":
        return self.append_annotated(f"#{name}", TAG, name)

    def append_link(self, text: str, uri: str) -> "AnnotationBuilder":
        return self.append_annotated(text, LINK, uri)

    def build(self, created_at: Optional[dt.datetime] = None) -> PostCandidate:
        return PostCandidate(
            text=self.text,
            annotations=self.annotations,
            created_at=created_at or now_utc(),
        )


# ----------------------------
# Geometry
# ----------------------------
def resolve_point(geometry: Optional[Dict[str, Any]]) -> Optional[List[float]]:
    """GeoJSON [lon, lat] of a Point, or of the first Point in a collection."""
    if not geometry:
        return None
    gtype = geometry.get("type")
    if gtype == "Point":
        coords = geometry.get("coordinates")
    elif gtype == "GeometryCollection":
        points = [g for g in geometry.get("geometries") or [] if g.get("type") == "Point"]
        coords = points[0].get("coordinates") if points else None
    else:
        coords = None
    if not coords or len(coords) < 2:
        return None
    return coords


# ----------------------------
# Renderers
# ----------------------------
def _open_for(props: FeedProperties) -> str:
    if not props.updated or not props.created:
        return ""
    try:
        elapsed = (parse_ts(props.updated) - parse_ts(props.created)).total_seconds()
    except ValueError:
        return ""
    return format_duration(elapsed)


def _size_text(size_fmt: Any) -> str:
    if isinstance(size_fmt, (list, tuple)):
        return str(size_fmt[0]) if size_fmt else ""
    return str(size_fmt)


def _append_source(props: FeedProperties, post: AnnotationBuilder, via: Optional[str] = None) -> None:
    if not props.source_org and not via:
        return
    post.append("\nFrom ")
    if props.source_org:
        post.append_tag(props.source_org)
        if via:
            post.append(f" via {via}")
    else:
        post.append(via)


def render_incident(feature: Feature, post: AnnotationBuilder) -> None:
    props = feature.properties
    post.append(f"{props.category2 or ''} {props.location or ''}\n\nStatus: {props.status or ''}")
    if props.size_fmt is not None:
        post.append(f"\nSize: {_size_text(props.size_fmt)}")
    if props.resources is not None:
        post.append(f"\nResources: {props.resources}")

    post.append(f"\n{format_local(props.updated_at)}")
    open_for = _open_for(props)
    if open_for:
        post.append(f" - open {open_for}")

    via = None
    if props.source is not None and not str(props.source).startswith("ERROR"):
        via = str(props.source)
    _append_source(props, post, via)
    post.append("\n")

    point = resolve_point(feature.geometry)
    if point:
        post.append_link(MAP_LINK_TEXT, MAP_SEARCH_URL.format(lat=point[1], lon=point[0]))


def render_warning(feature: Feature, post: AnnotationBuilder) -> None:
    props = feature.properties
    location = truncate_bytes(props.location or "")
    post.append(f"{props.name or ''}\n{props.action or ''}\n{location}\n{format_local(props.updated_at)}\n")
    post.append_link(DETAIL_LINK_TEXT, WARNING_DETAIL_URL.format(source_id=props.source_id or ""))
    _append_source(props, post)


RENDERERS: Dict[FeedType, Callable[[Feature, AnnotationBuilder], None]] = {
    FeedType.INCIDENT: render_incident,
    FeedType.WARNING: render_warning,
}


def _strip_spaces(value: Optional[str]) -> str:
    return (value or "").replace(" ", "")


def append_trailer(props: FeedProperties, post: AnnotationBuilder) -> None:
    post.append("\n")
    post.append_tag(ALERT_TAG)
    tags = [props.feed_type or "", _strip_spaces(props.category1)]
    if props.category2 != props.category1:
        tags.append(_strip_spaces(props.category2))
    for tag in tags:
        if tag:
            post.append(" ")
            post.append_tag(tag)


def render(feature: Feature, now: Optional[dt.datetime] = None) -> Optional[PostCandidate]:
    props = feature.properties
    try:
        kind = FeedType(props.feed_type)
    except ValueError:
        print(f"Unknown feed type {props.feed_type}")
        return None

    post = AnnotationBuilder()
    RENDERERS[kind](feature, post)
    if not post.text:
        return None
    append_trailer(props, post)
    return post.build(created_at=now)
