import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import settings
from .models import ContentItem, ContentSequence, FieldTrace, ItemTag, RemoteDeviceConfig, SourceKind

logger = logging.getLogger(__name__)

_MISSING = object()

ONLINE_PROBES: List[Tuple[str, str]] = [
    ("player_status.is_online", "bool"),
    ("player_status.online", "bool"),
    ("player_status.status", "string_online"),
    ("state.is_online", "bool"),
    ("state.online", "bool"),
    ("state.status", "string_online"),
    ("state.status_text", "string_contains_online"),
    ("status", "string_online"),
    ("is_online", "bool"),
    ("online", "bool"),
]

LAST_SEEN_PROBES = [
    "last_seen_online",
    "lastSeenOnline",
    "last_online",
    "last_seen",
    "player_status.last_seen",
    "state.last_seen",
]

SOURCE_KIND_PROBES = [
    "screen_content.source_type",
    "screen_content.default_playlist_type",
    "screen_content.content_type",
    "screen_content.type",
    "screen_content.mode",
    "state.default_playlist_type",
    "state.content_type",
    "state.mode",
    "default_playlist_type",
    "content_type",
    "playlist_type",
    "mode",
    "display_mode",
]

SOURCE_ID_PROBES = [
    "screen_content.source_id",
    "screen_content.default_playlist",
    "screen_content.playlist",
    "screen_content.layout",
    "screen_content.schedule",
    "screen_content.item",
    "state.default_playlist",
    "default_playlist",
    "playlist_id",
    "playlist",
    "assigned_playlist",
    "layout",
    "current_layout",
    "assigned_layout",
]

EMPTY_CONTENT_PROBES = [
    "screen_content.is_empty",
    "player_status.no_content",
    "state.no_content",
    "content_empty",
]

SCREENSHOT_PROBES = [
    "screenshot_url",
    "last_screenshot_url",
    "player_status.screenshot_url",
    "screenshot.url",
]

_KIND_VALUES = {
    "playlist": SourceKind.SEQUENCE,
    "playlists": SourceKind.SEQUENCE,
    "sequence": SourceKind.SEQUENCE,
    "layout": SourceKind.LAYOUT,
    "layouts": SourceKind.LAYOUT,
    "schedule": SourceKind.SCHEDULE,
    "schedules": SourceKind.SCHEDULE,
    "media": SourceKind.OTHER,
    "single_media": SourceKind.OTHER,
    "app": SourceKind.OTHER,
    "apps": SourceKind.OTHER,
    "none": SourceKind.NONE,
    "empty": SourceKind.NONE,
    "": SourceKind.NONE,
}

# Values seen in mode-ish fields that describe the player, not its content
_PLAYER_TYPE_VALUES = {"raspberry_pi", "android", "webplayer", "other"}

def get_path(obj: Any, path: str) -> Any:
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current

def extract_id(val: Any) -> Optional[str]:
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, dict):
        return extract_id(val.get("id"))
    if isinstance(val, (int, str)):
        s = str(val).strip()
        return s or None
    return None

def _short(val: Any, limit: int = 120) -> str:
    s = repr(val)
    return s if len(s) <= limit else s[:limit] + "..."

def _first_present(raw: Dict, probes: List[str]) -> Tuple[Optional[str], Any]:
    for path in probes:
        val = get_path(raw, path)
        if val is not _MISSING and val is not None:
            return path, val
    return None, None

def parse_timestamp(val: Any) -> Optional[float]:
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        # Millisecond epochs are common
        return val / 1000.0 if val > 1e11 else float(val)
    if isinstance(val, str):
        try:
            dt = datetime.fromisoformat(val.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    return None

def infer_online(raw: Dict, now: Optional[float] = None) -> Tuple[Optional[bool], Optional[str], FieldTrace]:
    """Returns (online, last_seen_at, trace). online is None when unknown."""
    trace = FieldTrace()
    for path, kind in ONLINE_PROBES:
        val = get_path(raw, path)
        if val is _MISSING or val is None:
            continue
        if kind == "bool":
            if isinstance(val, bool):
                online = val
            elif isinstance(val, (int, str)) and str(val).strip().lower() in ("1", "0", "true", "false", "yes", "no"):
                online = str(val).strip().lower() in ("1", "true", "yes")
                trace.warnings.append(f"{path} is {type(val).__name__}, coerced to bool")
            else:
                trace.warnings.append(f"{path} has unusable value {_short(val)}")
                continue
        elif kind == "string_online":
            if not isinstance(val, str):
                trace.warnings.append(f"{path} expected string, got {type(val).__name__}")
                continue
            online = val.strip().lower() == "online"
        else:
            online = "online" in str(val).lower() and "offline" not in str(val).lower()
        trace.raw_field = path
        trace.raw_value = _short(val)
        break
    else:
        online = None

    seen_path, seen_val = _first_present(raw, LAST_SEEN_PROBES)
    last_seen_at = str(seen_val) if seen_val is not None else None

    if online is None:
        seen_ts = parse_timestamp(seen_val)
        if seen_ts is not None:
            now = now if now is not None else time.time()
            online = (now - seen_ts) < settings.ONLINE_THRESHOLD_SECONDS
            trace.raw_field = f"{seen_path} (inferred)"
            trace.raw_value = _short(seen_val)
        else:
            trace.warnings.append(
                "No online status field found. Checked: " + ", ".join(p for p, _ in ONLINE_PROBES)
            )
    return online, last_seen_at, trace

def infer_source_kind(raw: Dict) -> Tuple[SourceKind, FieldTrace]:
    trace = FieldTrace()
    for path in SOURCE_KIND_PROBES:
        val = get_path(raw, path)
        if val is _MISSING:
            continue
        if val is None:
            # Explicit null content source means nothing is assigned
            if path.startswith("screen_content."):
                trace.raw_field, trace.raw_value = path, "None"
                return SourceKind.NONE, trace
            continue
        value = str(val).strip().lower()
        if value in _PLAYER_TYPE_VALUES:
            trace.warnings.append(f"{path}={value!r} describes the player, ignored")
            continue
        trace.raw_field = path
        trace.raw_value = _short(val)
        kind = _KIND_VALUES.get(value)
        if kind is None:
            trace.warnings.append(f"Unknown content mode value {value!r} from field {path}")
            return SourceKind.UNKNOWN, trace
        return kind, trace

    default_playlist = get_path(raw, "default_playlist")
    if isinstance(default_playlist, dict):
        if default_playlist.get("type"):
            value = str(default_playlist["type"]).strip().lower()
            kind = _KIND_VALUES.get(value)
            if kind is not None:
                trace.raw_field, trace.raw_value = "default_playlist.type", _short(value)
                return kind, trace
        if "is_layout" in default_playlist:
            trace.raw_field = "default_playlist.is_layout"
            trace.raw_value = _short(default_playlist["is_layout"])
            return (SourceKind.LAYOUT if default_playlist["is_layout"] else SourceKind.SEQUENCE), trace
    elif default_playlist is not _MISSING and default_playlist is not None:
        trace.warnings.append(f"default_playlist is id only ({_short(default_playlist)}), cannot infer type")

    for path in ("layout", "current_layout", "assigned_layout"):
        if get_path(raw, path) not in (_MISSING, None):
            trace.raw_field, trace.raw_value = f"{path} (presence inferred)", "layout"
            return SourceKind.LAYOUT, trace

    keys = ", ".join(sorted(raw.keys())[:15])
    trace.warnings.append(f"No content mode field found. Top-level keys: {keys}")
    return SourceKind.UNKNOWN, trace

def infer_source_id(raw: Dict) -> Tuple[Optional[str], FieldTrace]:
    trace = FieldTrace()
    for path in SOURCE_ID_PROBES:
        val = get_path(raw, path)
        if val is _MISSING or val is None:
            continue
        sid = extract_id(val)
        if sid:
            trace.raw_field = f"{path}.id" if isinstance(val, dict) else path
            trace.raw_value = _short(val)
            return sid, trace
        trace.warnings.append(f"{path} present but has no usable id: {_short(val)}")
    return None, trace

def infer_vendor_empty(raw: Dict) -> Tuple[Optional[bool], FieldTrace]:
    trace = FieldTrace()
    path, val = _first_present(raw, EMPTY_CONTENT_PROBES)
    if path is None:
        return None, trace
    trace.raw_field, trace.raw_value = path, _short(val)
    if isinstance(val, bool):
        return val, trace
    trace.warnings.append(f"{path} is {type(val).__name__}, coerced to bool")
    return str(val).strip().lower() in ("1", "true", "yes"), trace

def extract_screenshot_url(raw: Any) -> Optional[str]:
    if isinstance(raw, str):
        return raw if raw.startswith(("http://", "https://")) else None
    if not isinstance(raw, dict):
        return None
    for path in ("url", "image", "image_url", *SCREENSHOT_PROBES):
        val = get_path(raw, path)
        if isinstance(val, str) and val.startswith(("http://", "https://")):
            return val
    return None

def normalize_screen(device_id: str, raw: Any, now: Optional[float] = None) -> RemoteDeviceConfig:
    if not isinstance(raw, dict):
        return RemoteDeviceConfig(
            device_id=device_id,
            warnings=[f"Screen payload is {type(raw).__name__}, not an object"],
        )

    online, last_seen_at, online_trace = infer_online(raw, now)
    kind, kind_trace = infer_source_kind(raw)
    source_id, id_trace = infer_source_id(raw)
    empty, empty_trace = infer_vendor_empty(raw)
    if kind == SourceKind.NONE:
        source_id = None

    name = raw.get("name") or raw.get("screen_name")
    config = RemoteDeviceConfig(
        device_id=device_id,
        name=str(name) if name is not None else None,
        online=online,
        last_seen_at=last_seen_at,
        source_kind=kind,
        source_id=source_id,
        screenshot_url=extract_screenshot_url(raw),
        vendor_reports_empty=empty,
        traces={
            "online": online_trace,
            "source_kind": kind_trace,
            "source_id": id_trace,
            "vendor_reports_empty": empty_trace,
        },
    )
    for field, trace in config.traces.items():
        config.warnings.extend(f"{field}: {w}" for w in trace.warnings)
    return config

def normalize_sequence(sequence_id: str, raw: Any) -> ContentSequence:
    """Vendor sequence payload -> ContentSequence, ordered by priority then list order."""
    if not isinstance(raw, dict):
        return ContentSequence(sequence_id=sequence_id)
    raw_items = raw.get("items")
    if not isinstance(raw_items, list):
        raw_items = []

    keyed = []
    for idx, item in enumerate(raw_items):
        if isinstance(item, dict):
            media_id = extract_id(item.get("id") if "id" in item else item.get("media"))
            duration = item.get("duration")
            priority = item.get("priority")
        else:
            media_id, duration, priority = extract_id(item), None, None
        if not media_id:
            logger.debug(f"Sequence {sequence_id}: skipping item without id at index {idx}")
            continue
        try:
            duration = int(duration)
        except (TypeError, ValueError):
            duration = settings.DEFAULT_ITEM_DURATION_SECONDS
        sort_key = priority if isinstance(priority, (int, float)) and not isinstance(priority, bool) else float("inf")
        keyed.append((sort_key, idx, media_id, duration))

    keyed.sort(key=lambda k: (k[0], k[1]))
    items = [
        ContentItem(media_id=media_id, duration_seconds=duration, position=pos, tag=ItemTag.UNKNOWN)
        for pos, (_, _, media_id, duration) in enumerate(keyed)
    ]
    name = raw.get("name")
    return ContentSequence(
        sequence_id=extract_id(raw.get("id")) or sequence_id,
        name=str(name) if name is not None else None,
        items=items,
    )
