#!/usr/bin/env python3
# cu_task_viewer: Terminal ClickUp board and weekly timesheet
#
# Hotkeys
#   tab        switch between the Kanban board and the timesheet
#   arrows     move selection (timesheet wraps to the previous/next week)
#   [ / ]      previous / next week (timesheet)
#   enter      open task detail (board) or edit the selected cell (timesheet)
#   /          search tasks by name (timesheet)
#   r          refresh the current screen (drops its cached collection)
#   t          cycle theme presets (themes/*.yml)
#   y          copy the task custom id to the clipboard (board, detail)
#   q          quit (or close the detail popup)
#
# Cell input accepts "2.5", "2h", "30m", "1h 30m" or "1h30m".
#
# Files (under $CLICKUP_TUI_HOME or ~/.config/clickup-tui)
#   config.json   token, team, user, view, initial view, timesheet filter
#   cache.json    last fetched collections, expires one hour after a fetch
#   themes/*.yml  optional style presets
#
# Environment
# - CLICKUP_TOKEN (personal API token; overrides config.json)

from __future__ import annotations

import argparse
import asyncio
import base64
import datetime as dt
import json
import math
import os
from pathlib import Path
import sys
import tempfile
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

import pyperclip
import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.clipboard.pyperclip import PyperclipClipboard
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.containers import Float, FloatContainer
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame
import logging
from logging.handlers import RotatingFileHandler


LOG = logging.getLogger('cu_task_viewer')

DEFAULT_BASE_URL = "https://api.clickup.com"
DEFAULT_TIMESHEET_FILTER = "tags[]=timesheet"
INITIAL_VIEWS = ("kanban", "timesheet")
CACHE_TTL_SECONDS = 3600
PAGE_BATCH_SIZE = 3
MS_PER_HOUR = 3_600_000
TRACKING_ANCHOR_HOUR = 6
WEEK_DAYS = 5
FULL_DAY_HOURS = 8.0


def config_dir() -> str:
    return os.environ.get("CLICKUP_TUI_HOME") or os.path.expanduser("~/.config/clickup-tui")


# -----------------------------
# Errors
# -----------------------------
class ClickUpError(RuntimeError):
    """Base class for failures talking to ClickUp or persisting local state."""


class NetworkError(ClickUpError):
    pass


class ProtocolError(ClickUpError):
    def __init__(self, operation: str, status_code: int, reason: str = ""):
        self.operation = operation
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"failed to {operation}: {status_code} {reason}".rstrip())


class DecodeError(ClickUpError):
    pass


class NotFoundError(ClickUpError):
    pass


class PersistenceError(ClickUpError):
    pass


# -----------------------------
# Config models
# -----------------------------
@dataclass
class Config:
    clickup_token: str = ""
    team_id: str = ""
    user_id: str = ""
    view_id: str = ""
    initial_view: str = "kanban"
    timesheet_filter: str = ""

    @property
    def effective_timesheet_filter(self) -> str:
        return self.timesheet_filter or DEFAULT_TIMESHEET_FILTER


def default_config_path() -> str:
    return os.path.join(config_dir(), "config.json")


def default_cache_path() -> str:
    return os.path.join(config_dir(), "cache.json")


def load_config(path: Optional[str] = None) -> Config:
    """Read config.json; a missing or unreadable file yields defaults."""
    path = path or default_config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        return Config()
    except (OSError, ValueError) as exc:
        LOG.warning("Ignoring unreadable config %s: %s", path, exc)
        return Config()
    if not isinstance(raw, dict):
        return Config()
    initial_view = str(raw.get("initial_view") or "kanban")
    if initial_view not in INITIAL_VIEWS:
        initial_view = "kanban"
    return Config(
        clickup_token=str(raw.get("clickup_token") or ""),
        team_id=str(raw.get("team_id") or ""),
        user_id=normalize_user_id(raw.get("user_id")) or "",
        view_id=str(raw.get("view_id") or ""),
        initial_view=initial_view,
        timesheet_filter=str(raw.get("timesheet_filter") or ""),
    )


def save_config(cfg: Config, path: Optional[str] = None) -> None:
    path = path or default_config_path()
    payload = {
        "clickup_token": cfg.clickup_token,
        "team_id": cfg.team_id,
        "user_id": cfg.user_id,
        "view_id": cfg.view_id,
        "initial_view": cfg.initial_view,
        "timesheet_filter": cfg.timesheet_filter,
    }
    try:
        _write_json_atomic(path, payload)
    except OSError as exc:
        raise PersistenceError(f"Unable to write config {path}: {exc}") from exc


def load_dotenv_token() -> Optional[str]:
    """Load TOKEN or CLICKUP_TOKEN from a .env file (current dir or script dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("TOKEN", "CLICKUP_TOKEN") and v:
                        return v
        except OSError:
            continue
    return None


def _write_json_atomic(path: str, payload: object) -> None:
    directory = os.path.dirname(path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory or None)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=1)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# -----------------------------
# Themes
# -----------------------------
@dataclass
class ThemePreset:
    name: str
    style: Dict[str, str]
    description: Optional[str] = None


BASE_THEME_STYLE: Dict[str, str] = {
    'title': 'bold #ffd75f',
    'status': 'bg:#303030 #f0f0f0',
    'status.error': 'bg:#5f0000 bold #ffffff',
    'help': '#888888',
    'loading': 'bold #874bfd',
    'board.header': 'bold',
    'board.task': '#d0d0d0',
    'board.task.selected': 'reverse bold',
    'board.meta': '#87afff',
    'board.custom_id': '#ffa500',
    'sheet.header': 'bold #ff87d7',
    'sheet.cell': '#d0d0d0',
    'sheet.cell.selected': 'bold #5fd7af',
    'sheet.cell.editing': 'reverse bold #ff87d7',
    'sheet.row.selected': 'bold #ffffff',
    'sheet.total': '#ff8700',
    'sheet.total.ok': '#5faf87',
    'sheet.total.over': '#af5fd7',
    'detail.frame': 'bg:#1c1c1c #f0f0f0',
    'detail.title': 'bold #ffd75f',
    'detail.meta': '#87d7ff',
    'detail.text': '#f0f0f0',
    'detail.comment.author': 'bold #ffffff',
    'detail.comment.age': '#666666',
    'detail.link': 'underline #0087ff',
    'detail.badge': 'bold bg:#ff5f87 #ffffff',
}


def _load_theme_presets(theme_dir: Path) -> List[ThemePreset]:
    presets: List[ThemePreset] = [ThemePreset(name="Default", style=dict(BASE_THEME_STYLE))]
    seen = {presets[0].name.lower()}
    if not theme_dir.is_dir():
        return presets
    candidates = sorted(theme_dir.glob("*.yml")) + sorted(theme_dir.glob("*.yaml"))
    for path in candidates:
        try:
            with path.open('r', encoding='utf-8') as fh:
                raw = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError):
            LOG.warning('Failed to load theme preset %s', path, exc_info=True)
            continue
        if not isinstance(raw, dict):
            continue
        name = str(raw.get('name') or path.stem).strip()
        if not name or name.lower() in seen:
            continue
        style_raw = raw.get('style') or {}
        if not isinstance(style_raw, dict):
            continue
        style = dict(BASE_THEME_STYLE)
        style.update({str(k): str(v) for k, v in style_raw.items()})
        desc = raw.get('description')
        presets.append(ThemePreset(name=name, style=style, description=str(desc) if desc else None))
        seen.add(name.lower())
    return presets


# -----------------------------
# Wire models
# -----------------------------
def to_int(value: object) -> int:
    """Lenient integer parse used for the API's stringly typed numbers."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def normalize_user_id(value: object) -> Optional[str]:
    """User ids arrive as strings or JSON numbers; return the decimal string form."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return f"{value:.0f}"
    return None


def task_ref_id(raw: object) -> Optional[str]:
    """Extract the task id from a time entry's loosely shaped ``task`` field."""
    if not isinstance(raw, dict):
        return None
    value = raw.get("id")
    if isinstance(value, str) and value:
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _list(value: object) -> list:
    return value if isinstance(value, list) else []


def _str(value: object) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass
class User:
    id: str = ""
    username: str = ""
    initials: str = ""
    color: str = ""
    profile_picture: str = ""

    @classmethod
    def from_json(cls, raw: object) -> "User":
        d = _dict(raw)
        return cls(
            id=normalize_user_id(d.get("id")) or "",
            username=_str(d.get("username")),
            initials=_str(d.get("initials")),
            color=_str(d.get("color")),
            profile_picture=_str(d.get("profilePicture")),
        )

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "initials": self.initials,
            "color": self.color,
            "profilePicture": self.profile_picture,
        }


@dataclass
class Team:
    id: str
    name: str = ""
    color: str = ""

    @classmethod
    def from_json(cls, raw: object) -> "Team":
        d = _dict(raw)
        return cls(id=_str(d.get("id")), name=_str(d.get("name")), color=_str(d.get("color")))


@dataclass
class Status:
    status: str = ""
    color: str = ""
    orderindex: int = 0

    @classmethod
    def from_json(cls, raw: object) -> "Status":
        d = _dict(raw)
        return cls(status=_str(d.get("status")), color=_str(d.get("color")), orderindex=to_int(d.get("orderindex")))

    def to_json(self) -> dict:
        return {"status": self.status, "color": self.color, "orderindex": self.orderindex}


@dataclass
class TaskList:
    id: str = ""
    name: str = ""


@dataclass
class Tag:
    name: str
    tag_bg: str = ""
    tag_fg: str = ""


@dataclass
class Task:
    id: str
    name: str = ""
    custom_id: str = ""
    url: str = ""
    description: str = ""
    status: Status = field(default_factory=Status)
    assignees: List[User] = field(default_factory=list)
    task_list: TaskList = field(default_factory=TaskList)
    tags: List[Tag] = field(default_factory=list)
    subtasks_count: int = 0

    @classmethod
    def from_json(cls, raw: object) -> "Task":
        d = _dict(raw)
        task_id = _str(d.get("id"))
        if not task_id:
            raise DecodeError(f"Task without id: {raw!r:.200}")
        lst = _dict(d.get("list"))
        return cls(
            id=task_id,
            name=_str(d.get("name")),
            custom_id=_str(d.get("custom_id")),
            url=_str(d.get("url")),
            description=_str(d.get("markdown_description")),
            status=Status.from_json(d.get("status")),
            assignees=[User.from_json(u) for u in _list(d.get("assignees")) if isinstance(u, dict)],
            task_list=TaskList(id=_str(lst.get("id")), name=_str(lst.get("name"))),
            tags=[
                Tag(name=_str(t.get("name")), tag_bg=_str(t.get("tag_bg")), tag_fg=_str(t.get("tag_fg")))
                for t in _list(d.get("tags")) if isinstance(t, dict)
            ],
            subtasks_count=to_int(d.get("subtasks_count")),
        )

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "custom_id": self.custom_id,
            "url": self.url,
            "markdown_description": self.description,
            "status": self.status.to_json(),
            "assignees": [u.to_json() for u in self.assignees],
            "list": {"id": self.task_list.id, "name": self.task_list.name},
            "tags": [{"name": t.name, "tag_bg": t.tag_bg, "tag_fg": t.tag_fg} for t in self.tags],
            "subtasks_count": self.subtasks_count,
        }


@dataclass
class TimeEntry:
    id: str
    task: object = None          # loose wire object, read through task_id
    duration: str = "0"          # milliseconds
    start: str = "0"             # unix milliseconds
    end: str = ""

    @classmethod
    def from_json(cls, raw: object) -> "TimeEntry":
        d = _dict(raw)
        entry_id = _str(d.get("id"))
        if not entry_id:
            raise DecodeError(f"Time entry without id: {raw!r:.200}")
        return cls(
            id=entry_id,
            task=d.get("task"),
            duration=_str(d.get("duration")) or "0",
            start=_str(d.get("start")) or "0",
            end=_str(d.get("end")),
        )

    def to_json(self) -> dict:
        return {"id": self.id, "task": self.task, "duration": self.duration, "start": self.start, "end": self.end}

    @property
    def task_id(self) -> Optional[str]:
        return task_ref_id(self.task)

    @property
    def duration_ms(self) -> int:
        return to_int(self.duration)

    @property
    def hours(self) -> float:
        return self.duration_ms / MS_PER_HOUR

    def start_datetime(self, tz: Optional[dt.tzinfo] = None) -> dt.datetime:
        return ms_to_datetime(self.start, tz)


@dataclass
class CommentPart:
    text: str = ""
    type: str = ""
    attributes: Dict[str, object] = field(default_factory=dict)
    bookmark: Optional[Dict[str, object]] = None

    @classmethod
    def from_json(cls, raw: object) -> "CommentPart":
        d = _dict(raw)
        bookmark = d.get("bookmark")
        return cls(
            text=_str(d.get("text")),
            type=_str(d.get("type")),
            attributes=dict(_dict(d.get("attributes"))),
            bookmark=dict(bookmark) if isinstance(bookmark, dict) else None,
        )

    def to_json(self) -> dict:
        out: Dict[str, object] = {"text": self.text, "attributes": self.attributes}
        if self.type:
            out["type"] = self.type
        if self.bookmark is not None:
            out["bookmark"] = self.bookmark
        return out


@dataclass
class Comment:
    id: str
    parts: List[CommentPart] = field(default_factory=list)
    comment_text: str = ""
    user: User = field(default_factory=User)
    date: str = ""
    reply_count: int = 0

    @classmethod
    def from_json(cls, raw: object) -> "Comment":
        d = _dict(raw)
        return cls(
            id=_str(d.get("id")),
            parts=[CommentPart.from_json(p) for p in _list(d.get("comment")) if isinstance(p, dict)],
            comment_text=_str(d.get("comment_text")),
            user=User.from_json(d.get("user")),
            date=_str(d.get("date")),
            reply_count=to_int(d.get("reply_count")),
        )

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "comment": [p.to_json() for p in self.parts],
            "comment_text": self.comment_text,
            "user": self.user.to_json(),
            "date": self.date,
            "reply_count": self.reply_count,
        }


def ms_to_datetime(ms: object, tz: Optional[dt.tzinfo] = None) -> dt.datetime:
    """Unix-millisecond string to a datetime in ``tz`` (naive local time when None)."""
    return dt.datetime.fromtimestamp(to_int(ms) // 1000, tz)


def datetime_to_ms(value: dt.datetime) -> int:
    return int(value.timestamp()) * 1000


# -----------------------------
# Cache
# -----------------------------
def _decode_records(items: object, decoder: Callable[[object], object], label: str) -> list:
    out = []
    for item in _list(items):
        try:
            out.append(decoder(item))
        except DecodeError as exc:
            LOG.warning("Dropping cached %s record: %s", label, exc)
    return out


class TaskCache:
    """Most recently fetched collections plus a single expiry instant.

    Owned by one ``ClickUpClient``; callers are expected to drive it from a
    single thread at a time.
    """

    def __init__(self, path: Optional[str] = None, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock
        self.timesheet_tasks: Optional[List[Task]] = None
        self.timesheet_filter: str = ""
        self.view_tasks: Optional[List[Task]] = None
        self.view_id: str = ""
        self.time_entries: Optional[List[TimeEntry]] = None
        self.time_entries_user: str = ""
        self.task_by_id: Dict[str, Task] = {}
        self.comments_by_task_id: Dict[str, List[Comment]] = {}
        self.expired_at: int = 0

    @classmethod
    def load(cls, path: str, clock: Callable[[], float] = time.time) -> "TaskCache":
        cache = cls(path, clock=clock)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except FileNotFoundError:
            return cache
        except (OSError, ValueError) as exc:
            LOG.warning("Ignoring unreadable cache %s: %s", path, exc)
            return cache
        if not isinstance(raw, dict):
            return cache
        if isinstance(raw.get("timesheet_tasks"), list):
            cache.timesheet_tasks = _decode_records(raw["timesheet_tasks"], Task.from_json, "task")
            cache.timesheet_filter = _str(raw.get("timesheet_filter"))
        if isinstance(raw.get("view_tasks"), list):
            cache.view_tasks = _decode_records(raw["view_tasks"], Task.from_json, "task")
            cache.view_id = _str(raw.get("view_id"))
        if isinstance(raw.get("time_entries"), list):
            cache.time_entries = _decode_records(raw["time_entries"], TimeEntry.from_json, "time entry")
            cache.time_entries_user = _str(raw.get("time_entries_user"))
        for task_id, task_raw in _dict(raw.get("task_by_id")).items():
            try:
                cache.task_by_id[str(task_id)] = Task.from_json(task_raw)
            except DecodeError as exc:
                LOG.warning("Dropping cached task %s: %s", task_id, exc)
        for task_id, comments_raw in _dict(raw.get("comments_by_task_id")).items():
            if isinstance(comments_raw, list):
                cache.comments_by_task_id[str(task_id)] = [Comment.from_json(c) for c in comments_raw]
        cache.expired_at = to_int(raw.get("expired_at"))
        return cache

    def to_json(self) -> dict:
        def tasks(items: Optional[List[Task]]) -> Optional[list]:
            return None if items is None else [t.to_json() for t in items]

        return {
            "timesheet_tasks": tasks(self.timesheet_tasks),
            "timesheet_filter": self.timesheet_filter,
            "time_entries": None if self.time_entries is None else [e.to_json() for e in self.time_entries],
            "time_entries_user": self.time_entries_user,
            "view_tasks": tasks(self.view_tasks),
            "view_id": self.view_id,
            "task_by_id": {k: v.to_json() for k, v in self.task_by_id.items()},
            "comments_by_task_id": {k: [c.to_json() for c in v] for k, v in self.comments_by_task_id.items()},
            "expired_at": self.expired_at,
        }

    def save(self, path: Optional[str] = None) -> bool:
        """Persist a full snapshot. Failures are logged; the in-memory copy stays authoritative."""
        target = path or self.path
        if not target:
            return False
        try:
            _write_json_atomic(target, self.to_json())
        except (OSError, TypeError, ValueError):
            LOG.warning("Unable to write cache %s", target, exc_info=True)
            return False
        return True

    def is_expired(self) -> bool:
        if self.expired_at == 0:
            return True
        return self.expired_at < int(self.clock())

    def bump_expiry(self, seconds: int = CACHE_TTL_SECONDS) -> None:
        self.expired_at = int(self.clock()) + seconds

    def clear(self) -> None:
        self.timesheet_tasks = None
        self.timesheet_filter = ""
        self.view_tasks = None
        self.view_id = ""
        self.time_entries = None
        self.time_entries_user = ""
        self.task_by_id = {}
        self.comments_by_task_id = {}
        self.expired_at = 0

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.task_by_id.get(task_id)

    def get_comments(self, task_id: str) -> Optional[List[Comment]]:
        return self.comments_by_task_id.get(task_id)

    def get_timesheet_tasks(self, filter_qs: str) -> Optional[List[Task]]:
        if self.timesheet_tasks is not None and self.timesheet_filter == filter_qs:
            return self.timesheet_tasks
        return None

    def get_view_tasks(self, view_id: str) -> Optional[List[Task]]:
        if self.view_tasks is not None and self.view_id == view_id:
            return self.view_tasks
        return None

    def get_time_entries(self, user_id: str) -> Optional[List[TimeEntry]]:
        if self.time_entries is not None and self.time_entries_user == user_id:
            return self.time_entries
        return None

    def invalidate_time_entries(self) -> bool:
        self.time_entries = None
        self.time_entries_user = ""
        return self.save()

    def invalidate_timesheet_tasks(self) -> bool:
        self.timesheet_tasks = None
        self.timesheet_filter = ""
        return self.save()

    def invalidate_view_tasks(self) -> bool:
        self.view_tasks = None
        self.view_id = ""
        return self.save()


# -----------------------------
# Timesheet reconciliation
# -----------------------------
@dataclass(frozen=True)
class DeleteEntry:
    entry_id: str


@dataclass(frozen=True)
class CreateEntry:
    start: dt.datetime
    duration_ms: int


TrackingOp = Union[DeleteEntry, CreateEntry]


@dataclass
class ReconcileResult:
    deleted: List[str] = field(default_factory=list)
    failed_deletes: List[str] = field(default_factory=list)
    created_ms: int = 0


def tracking_anchor(day: dt.date, tz: Optional[dt.tzinfo] = None) -> dt.datetime:
    return dt.datetime(day.year, day.month, day.day, TRACKING_ANCHOR_HOUR, 0, 0, tzinfo=tz)


def entries_for_day(entries: List[TimeEntry], task_id: str, day: dt.date,
                    tz: Optional[dt.tzinfo] = None) -> List[TimeEntry]:
    return [
        e for e in entries
        if e.task_id == task_id and e.start_datetime(tz).date() == day
    ]


def plan_tracking_update(entries: List[TimeEntry], task_id: str, day: dt.date, target_hours: float,
                         tz: Optional[dt.tzinfo] = None) -> List[TrackingOp]:
    """Operations that make (task, day) total ``target_hours``.

    Every existing entry of the task on that day is deleted and, for a
    positive target, a single entry is recreated at 06:00 of the day.
    """
    if not math.isfinite(target_hours) or target_hours < 0:
        raise ValueError(f"Hours must be >= 0, got {target_hours}")
    ops: List[TrackingOp] = [DeleteEntry(e.id) for e in entries_for_day(entries, task_id, day, tz)]
    if target_hours > 0:
        ops.append(CreateEntry(start=tracking_anchor(day, tz), duration_ms=int(round(target_hours * MS_PER_HOUR))))
    return ops


# -----------------------------
# HTTP client
# -----------------------------
def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = token
    s.headers["Content-Type"] = "application/json"
    return s


@dataclass
class TaskPage:
    tasks: List[Task]
    last_page: bool


class ClickUpClient:
    """ClickUp API v2 client bound to one token and team, with a read-through disk cache."""

    def __init__(self, token: str, team_id: str, base_url: str = DEFAULT_BASE_URL,
                 cache_path: Optional[str] = None, timeout: Optional[float] = None,
                 cache: Optional[TaskCache] = None):
        self.token = token
        self.team_id = team_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache = cache if cache is not None else TaskCache.load(cache_path or default_cache_path())
        self.session = _session(token)

    # -- transport --------------------------------------------------------

    def _request(self, method: str, path: str, operation: str, *,
                 session: Optional[requests.Session] = None, body: Optional[dict] = None,
                 expect_json: bool = True) -> object:
        url = f"{self.base_url}{path}"
        sess = session or self.session
        LOG.debug("%s %s", method, url)
        try:
            resp = sess.request(method, url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"failed to {operation}: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            LOG.warning("%s %s -> HTTP %s", method, url, resp.status_code)
            raise ProtocolError(operation, resp.status_code, getattr(resp, "reason", "") or "")
        if not expect_json:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise DecodeError(f"failed to {operation}: invalid JSON ({exc})") from exc

    # -- setup-time discovery --------------------------------------------

    def current_user(self, token: Optional[str] = None) -> User:
        data = self._request("GET", "/api/v2/user", "get current user", session=_session(token or self.token))
        user = User.from_json(_dict(data).get("user"))
        if not user.id:
            raise NotFoundError("failed to get current user: response carried no user id")
        return user

    def teams(self, token: Optional[str] = None) -> List[Team]:
        data = self._request("GET", "/api/v2/team", "get teams", session=_session(token or self.token))
        return [Team.from_json(t) for t in _list(_dict(data).get("teams")) if isinstance(t, dict)]

    # -- cached reads -----------------------------------------------------

    def _expire_if_needed(self) -> None:
        if self.cache.is_expired():
            LOG.info("Cache expired; clearing all collections")
            self.cache.clear()

    def _store(self) -> None:
        self.cache.bump_expiry()
        self.cache.save()

    def get_task(self, task_id: str) -> Task:
        self._expire_if_needed()
        cached = self.cache.get_task(task_id)
        if cached is not None:
            return cached
        data = self._request("GET", f"/api/v2/task/{task_id}?include_markdown_description=true", "get task")
        task = Task.from_json(data)
        self.cache.task_by_id[task_id] = task
        self._store()
        return task

    def get_task_comments(self, task_id: str) -> List[Comment]:
        self._expire_if_needed()
        cached = self.cache.get_comments(task_id)
        if cached is not None:
            return cached
        data = self._request("GET", f"/api/v2/task/{task_id}/comment", "get comments")
        comments = [Comment.from_json(c) for c in _list(_dict(data).get("comments")) if isinstance(c, dict)]
        self.cache.comments_by_task_id[task_id] = comments
        self._store()
        return comments

    def get_timesheet_tasks(self, filter_qs: str = DEFAULT_TIMESHEET_FILTER) -> List[Task]:
        self._expire_if_needed()
        cached = self.cache.get_timesheet_tasks(filter_qs)
        if cached is not None:
            return cached
        prefix = f"{filter_qs}&" if filter_qs else ""

        def fetch_page(page: int) -> TaskPage:
            return self._task_page(f"/api/v2/team/{self.team_id}/task?{prefix}page={page}")

        tasks = self._fetch_all_pages(fetch_page, f"timesheet tasks ({filter_qs or 'no filter'})")
        self.cache.timesheet_tasks = tasks
        self.cache.timesheet_filter = filter_qs
        self._store()
        return tasks

    def get_view_tasks(self, view_id: str) -> List[Task]:
        self._expire_if_needed()
        cached = self.cache.get_view_tasks(view_id)
        if cached is not None:
            return cached

        def fetch_page(page: int) -> TaskPage:
            return self._task_page(f"/api/v2/view/{view_id}/task?page={page}")

        tasks = self._fetch_all_pages(fetch_page, f"view {view_id}")
        self.cache.view_tasks = tasks
        self.cache.view_id = view_id
        self._store()
        return tasks

    def get_timesheet_entries(self, user_id: str) -> List[TimeEntry]:
        self._expire_if_needed()
        cached = self.cache.get_time_entries(user_id)
        if cached is not None:
            return cached
        data = self._request("GET", f"/api/v2/team/{self.team_id}/time_entries?assignee={user_id}",
                             "get timesheets")
        entries = [TimeEntry.from_json(e) for e in _list(_dict(data).get("data")) if isinstance(e, dict)]
        self.cache.time_entries = entries
        self.cache.time_entries_user = user_id
        self._store()
        return entries

    # -- pagination -------------------------------------------------------

    def _task_page(self, path: str) -> TaskPage:
        # Each worker thread gets its own session.
        data = _dict(self._request("GET", path, "get tasks", session=_session(self.token)))
        tasks = [Task.from_json(t) for t in _list(data.get("tasks")) if isinstance(t, dict)]
        return TaskPage(tasks=tasks, last_page=bool(data.get("last_page")))

    def _fetch_all_pages(self, fetch_page: Callable[[int], TaskPage], label: str) -> List[Task]:
        """Fetch pages in concurrent batches of PAGE_BATCH_SIZE, keeping page order.

        Stops after the batch containing the first ``last_page`` page; pages
        after it are dropped. A batch of only empty pages also ends the fetch
        when the server never flags a last page. The first failure aborts the
        whole fetch; results still in flight are discarded.
        """
        out: List[Task] = []
        page = 0
        executor = ThreadPoolExecutor(max_workers=PAGE_BATCH_SIZE)
        try:
            while True:
                futures = [executor.submit(fetch_page, page + i) for i in range(PAGE_BATCH_SIZE)]
                done, _pending = wait(futures, return_when=FIRST_EXCEPTION)
                for future in futures:
                    if future in done and future.exception() is not None:
                        LOG.error("Fetching %s failed at page batch %d: %s", label, page, future.exception())
                        raise future.exception()
                results = [f.result() for f in futures]
                finished = False
                for offset, result in enumerate(results):
                    out.extend(result.tasks)
                    if result.last_page:
                        LOG.debug("Last page of %s is %d", label, page + offset)
                        finished = True
                        break
                if finished:
                    break
                if not any(result.tasks for result in results):
                    LOG.warning("No last_page flag for %s; stopping at empty pages %d-%d",
                                label, page, page + PAGE_BATCH_SIZE - 1)
                    break
                page += PAGE_BATCH_SIZE
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        LOG.info("Fetched %d tasks for %s", len(out), label)
        return out

    # -- writes -----------------------------------------------------------

    def create_time_entry(self, task_id: str, start: dt.datetime, duration_ms: int, user_id: str = "") -> None:
        body = {"start": datetime_to_ms(start), "time": int(duration_ms)}
        self._request("POST", f"/api/v2/task/{task_id}/time", "create time entry", body=body, expect_json=False)

    def delete_time_entry(self, task_id: str, entry_id: str) -> None:
        self._request("DELETE", f"/api/v2/task/{task_id}/time/{entry_id}", f"delete time entry {entry_id}",
                      expect_json=False)

    def update_tracking(self, user_id: str, task_id: str, day: dt.date, hours: float,
                        tz: Optional[dt.tzinfo] = None) -> ReconcileResult:
        """Make the user's logged time for (task, day) equal ``hours``.

        Deletes are best effort; a failed create is raised. The cached time
        entries are dropped either way so the next read shows the server state.
        """
        entries = self.get_timesheet_entries(user_id)
        ops = plan_tracking_update(entries, task_id, day, hours, tz)
        result = ReconcileResult()
        try:
            for op in ops:
                if isinstance(op, DeleteEntry):
                    try:
                        self.delete_time_entry(task_id, op.entry_id)
                    except ClickUpError as exc:
                        LOG.warning("Failed to delete entry %s for task %s on %s: %s",
                                    op.entry_id, task_id, day.isoformat(), exc)
                        result.failed_deletes.append(op.entry_id)
                    else:
                        result.deleted.append(op.entry_id)
                else:
                    self.create_time_entry(task_id, op.start, op.duration_ms, user_id)
                    result.created_ms = op.duration_ms
        finally:
            self.cache.invalidate_time_entries()
        LOG.info("Tracking for %s on %s set to %.2fh (deleted %d, failed %d)", task_id, day.isoformat(),
                 hours, len(result.deleted), len(result.failed_deletes))
        return result


def discover_settings(client: ClickUpClient, token: str, team_id: str = "", view_id: str = "",
                      timesheet_filter: str = "", initial_view: str = "kanban") -> Config:
    """Resolve team and user for ``token`` and return a ready-to-save Config."""
    if not token:
        raise ValueError("A ClickUp API token is required")
    if not team_id:
        teams = client.teams(token)
        if not teams:
            raise NotFoundError("No teams visible to this token")
        if len(teams) > 1:
            LOG.info("Token sees %d teams; using the first (%s)", len(teams), teams[0].name)
        team_id = teams[0].id
    user = client.current_user(token)
    return Config(
        clickup_token=token,
        team_id=team_id,
        user_id=user.id,
        view_id=view_id,
        initial_view=initial_view if initial_view in INITIAL_VIEWS else "kanban",
        timesheet_filter=timesheet_filter,
    )


# -----------------------------
# Timesheet & board shaping
# -----------------------------
@dataclass
class TimesheetRow:
    task_id: str
    task_name: str
    hours: Dict[str, float] = field(default_factory=dict)   # ISO date -> hours


@dataclass
class KanbanColumn:
    status: str
    color: str = ""
    tasks: List[Task] = field(default_factory=list)


def week_start(day: dt.date) -> dt.date:
    return day - dt.timedelta(days=day.weekday())


def week_dates(week_from: dt.date) -> List[dt.date]:
    return [week_from + dt.timedelta(days=i) for i in range(WEEK_DAYS)]


def build_timesheet_rows(tasks: List[Task], entries: List[TimeEntry],
                         tz: Optional[dt.tzinfo] = None) -> List[TimesheetRow]:
    by_task: Dict[str, Dict[str, float]] = {}
    for entry in entries:
        tid = entry.task_id
        if tid is None:
            continue
        day_key = entry.start_datetime(tz).date().isoformat()
        per_day = by_task.setdefault(tid, {})
        per_day[day_key] = per_day.get(day_key, 0.0) + entry.hours
    return [TimesheetRow(task_id=t.id, task_name=t.name, hours=dict(by_task.get(t.id, {}))) for t in tasks]


def _week_hours(row: TimesheetRow, week_from: dt.date) -> float:
    lo = week_from.isoformat()
    hi = (week_from + dt.timedelta(days=7)).isoformat()
    return sum(h for d, h in row.hours.items() if lo <= d < hi)


def sort_timesheet_rows(rows: List[TimesheetRow], week_from: dt.date) -> List[TimesheetRow]:
    """Rows with time in the week first, then by task name."""
    return sorted(rows, key=lambda r: (0 if _week_hours(r, week_from) > 0 else 1, r.task_name))


def filter_timesheet_rows(rows: List[TimesheetRow], query: str) -> List[TimesheetRow]:
    if not query:
        return list(rows)
    q = query.lower()
    return [r for r in rows if q in r.task_name.lower()]


def day_totals(rows: List[TimesheetRow], week_from: dt.date) -> List[float]:
    keys = [d.isoformat() for d in week_dates(week_from)]
    return [sum(r.hours.get(k, 0.0) for r in rows) for k in keys]


def total_style(total: float) -> str:
    if abs(total - FULL_DAY_HOURS) < 1e-9:
        return 'class:sheet.total.ok'
    if total > FULL_DAY_HOURS:
        return 'class:sheet.total.over'
    return 'class:sheet.total'


def _finite_hours(value: float, text: str) -> float:
    if not math.isfinite(value):
        raise ValueError(f"hours must be a finite number: {text!r}")
    return value


def parse_hours_input(text: str) -> float:
    """Parse "2.5", "2h", "45m", "1h 30m" or "1h30m" into hours."""
    raw = (text or "").strip().lower()
    if not raw:
        raise ValueError("empty hours value")
    if 'h' not in raw and 'm' not in raw:
        return _finite_hours(float(raw), text)
    hours = 0.0
    minutes = 0.0
    for part in raw.split():
        if 'h' in part and 'm' in part:
            h_part, rest = part.split('h', 1)
            hours = float(h_part)
            minutes = float(rest.split('m', 1)[0])
        elif part.endswith('h'):
            hours = float(part[:-1])
        elif part.endswith('m'):
            minutes = float(part[:-1])
        else:
            raise ValueError(f"unrecognised hours token: {part!r}")
    return _finite_hours(hours + minutes / 60.0, text)


def format_hours_hm(hours: float) -> str:
    if hours <= 0:
        return "-"
    total_minutes = int(round(hours * 60))
    h, m = divmod(total_minutes, 60)
    if h == 0:
        return f"{m}m"
    if m == 0:
        return f"{h}h"
    return f"{h}h {m}m"


def group_tasks_by_status(tasks: List[Task]) -> List[KanbanColumn]:
    """Board columns ordered by the highest orderindex seen for each status name."""
    order: Dict[str, int] = {}
    columns: Dict[str, KanbanColumn] = {}
    for task in tasks:
        name = task.status.status
        if name not in order or task.status.orderindex > order[name]:
            order[name] = task.status.orderindex
        col = columns.setdefault(name, KanbanColumn(status=name, color=task.status.color))
        col.tasks.append(task)
    return [columns[name] for name in sorted(order, key=lambda n: (order[n], n))]


def decode_bookmark_title(raw: str) -> Optional[str]:
    """Title from a bookmark's base64 JSON blob (``preview.title``), if any."""
    if not raw:
        return None
    try:
        payload = json.loads(base64.b64decode(raw, validate=True))
    except (ValueError, TypeError):
        return None
    preview = _dict(_dict(payload).get("preview"))
    title = preview.get("title")
    return title if isinstance(title, str) and title else None


def comment_fragments(parts: List[CommentPart]) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    for part in parts:
        if part.type == "bookmark":
            url = _str(_dict(part.bookmark).get("url"))
            title = decode_bookmark_title(_str(part.attributes.get("raw")))
            frags.append(('class:detail.link', title or url))
            if title:
                frags.append(('class:detail.text', f" → {url}"))
            frags.append(('', '\n'))
        elif part.type == "" and part.attributes.get("badge-class"):
            frags.append(('class:detail.badge', f" {part.text} "))
            frags.append(('', ' '))
        else:
            frags.append(('class:detail.text', part.text))
    return frags


def render_comment_text(parts: List[CommentPart]) -> str:
    out = []
    for style, text in comment_fragments(parts):
        out.append(f"[{text.strip()}]" if style == 'class:detail.badge' else text)
    return "".join(out)


def elapsed_label(ms: object, now: Optional[dt.datetime] = None) -> str:
    then = ms_to_datetime(ms)
    now = now or dt.datetime.now()
    seconds = max(0, int((now - then).total_seconds()))
    days = seconds // 86400
    if days:
        return f"{days}d"
    hours = seconds // 3600
    if hours:
        return f"{hours}h"
    return f"{seconds // 60}m"


def lighten_color(color: str, percentage: float) -> str:
    raw = (color or "").lstrip('#')
    if len(raw) != 6:
        return color
    try:
        r, g, b = (int(raw[i:i + 2], 16) for i in (0, 2, 4))
    except ValueError:
        return color
    r = int(r + (255 - r) * percentage)
    g = int(g + (255 - g) * percentage)
    b = int(b + (255 - b) * percentage)
    return f"#{r:02x}{g:02x}{b:02x}"


# -----------------------------
# UI helpers (fragments only)
# -----------------------------
def _truncate(s: str, maxlen: int) -> str:
    if maxlen <= 0:
        return ""
    if len(s) <= maxlen:
        return s
    if maxlen <= 1:
        return s[:maxlen]
    return s[:maxlen - 1] + "…"


def build_board_fragments(columns: List[KanbanColumn], selected_col: int, selected_task: int,
                          col_width: int = 36, max_columns: int = 4) -> List[Tuple[str, str]]:
    if not columns:
        return [("bold", "Nothing to show."), ("", " Press "), ("bold", "r"), ("", " to fetch.")]
    first = max(0, min(selected_col - max_columns + 1, len(columns) - max_columns)) if selected_col >= max_columns else 0
    visible = columns[first:first + max_columns]
    frags: List[Tuple[str, str]] = []
    for col in visible:
        header_style = f"class:board.header fg:{col.color}" if col.color.startswith('#') else 'class:board.header'
        frags.append((header_style, f"{_truncate(col.status.upper() + f' ({len(col.tasks)})', col_width):<{col_width}} "))
    frags.append(('', '\n'))
    depth = max((len(c.tasks) for c in visible), default=0)
    for row in range(depth):
        for idx, col in enumerate(visible, start=first):
            if row >= len(col.tasks):
                frags.append(('', ' ' * (col_width + 1)))
                continue
            task = col.tasks[row]
            label = _truncate(task.name, col_width)
            style = 'class:board.task.selected' if (idx == selected_col and row == selected_task) else 'class:board.task'
            frags.append((style, f"{label:<{col_width}}"))
            frags.append(('', ' '))
        frags.append(('', '\n'))
    return frags


def build_timesheet_fragments(rows: List[TimesheetRow], week_from: dt.date, cursor_row: int, cursor_col: int,
                              edit_buffer: Optional[str] = None, task_width: int = 40,
                              cell_width: int = 10) -> List[Tuple[str, str]]:
    days = week_dates(week_from)
    frags: List[Tuple[str, str]] = [('class:sheet.header', f"{week_from.strftime('%B %Y'):<{task_width}}")]
    for d in days:
        frags.append(('class:sheet.header', f"{d.strftime('%a %d'):^{cell_width}}"))
    frags.append(('', '\n'))
    frags.append(('class:sheet.total.ok', f"{'Total':<{task_width}}"))
    for total in day_totals(rows, week_from):
        frags.append((total_style(total), f"{format_hours_hm(total):^{cell_width}}"))
    frags.append(('', '\n'))
    if not rows:
        frags.append(('class:help', 'No timesheet tasks.'))
        return frags
    for r_idx, row in enumerate(rows):
        is_row = r_idx == cursor_row
        frags.append(('class:sheet.row.selected' if is_row else 'class:sheet.cell',
                      f"{_truncate(row.task_name, task_width - 1):<{task_width}}"))
        for c_idx, d in enumerate(days):
            text = format_hours_hm(row.hours.get(d.isoformat(), 0.0))
            style = 'class:sheet.cell'
            if is_row and c_idx == cursor_col:
                if edit_buffer is not None:
                    style, text = 'class:sheet.cell.editing', edit_buffer + '_'
                else:
                    style = 'class:sheet.cell.selected'
            frags.append((style, f"{text:^{cell_width}}"))
        frags.append(('', '\n'))
    return frags


def build_detail_fragments(task: Task, comments: List[Comment],
                           now: Optional[dt.datetime] = None) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = [('class:detail.title', task.name)]
    if task.custom_id:
        frags.append(('class:board.custom_id', f"   {task.custom_id}"))
    frags.append(('', '\n'))
    meta = [f"List: {task.task_list.name or '-'}", f"Status: {task.status.status or '-'}"]
    if task.assignees:
        meta.append("Assignees: " + ", ".join(u.username or u.initials for u in task.assignees))
    if task.tags:
        meta.append("Tags: " + ", ".join(t.name for t in task.tags))
    if task.subtasks_count:
        meta.append(f"Subtasks: {task.subtasks_count}")
    frags.append(('class:detail.meta', "  ".join(meta) + '\n'))
    if task.url:
        frags.append(('class:detail.link', task.url))
        frags.append(('', '\n'))
    frags.append(('', '\n'))
    frags.append(('class:detail.text', (task.description or "(no description)") + '\n\n'))
    frags.append(('class:board.header', f"Comments ({len(comments)})\n"))
    for comment in comments:
        frags.append(('class:detail.comment.author', f"{comment.user.initials or '?'} {comment.user.username}"))
        if comment.date:
            frags.append(('class:detail.comment.age', f"  {elapsed_label(comment.date, now)}"))
        frags.append(('', '\n'))
        frags.extend(comment_fragments(comment.parts))
        frags.append(('', '\n'))
    return frags


# -----------------------------
# UI
# -----------------------------
def run_ui(client: ClickUpClient, cfg: Config, tz: Optional[dt.tzinfo] = None) -> None:
    """Full-screen board/timesheet browser.

    Network calls run in the default executor one at a time; a second
    request while one is running is refused with a status message.
    """
    screen = cfg.initial_view if cfg.initial_view in INITIAL_VIEWS else "kanban"
    status_line = ""
    status_error = False
    busy = False

    columns: List[KanbanColumn] = []
    sel_col = 0
    sel_task = 0
    detail: Optional[Tuple[Task, List[Comment]]] = None

    all_rows: List[TimesheetRow] = []
    today = dt.date.today()
    week_from = week_start(today)
    cursor_row = 0
    cursor_col = min(today.weekday(), WEEK_DAYS - 1)
    edit_buffer: Optional[str] = None
    in_search = False
    search_query = ""

    theme_presets = _load_theme_presets(Path(config_dir()) / "themes")
    current_theme_index = 0
    style = Style.from_dict(theme_presets[current_theme_index].style)

    def visible_rows() -> List[TimesheetRow]:
        return filter_timesheet_rows(all_rows, search_query)

    def resort() -> None:
        nonlocal all_rows, cursor_row
        all_rows = sort_timesheet_rows(all_rows, week_from)
        cursor_row = max(0, min(cursor_row, len(visible_rows()) - 1))

    def set_status(msg: str, error: bool = False) -> None:
        nonlocal status_line, status_error
        status_line = msg
        status_error = error

    def build_body() -> List[Tuple[str, str]]:
        if busy and not (columns or all_rows):
            return [('class:loading', 'Loading…')]
        if screen == "kanban":
            return build_board_fragments(columns, sel_col, sel_task)
        return build_timesheet_fragments(visible_rows(), week_from, cursor_row, cursor_col, edit_buffer)

    def build_title() -> List[Tuple[str, str]]:
        name = "Kanban board" if screen == "kanban" else "Weekly timesheet"
        return [('class:title', f" {name} "), ('class:help', f"  team {cfg.team_id}")]

    def build_status_bar() -> List[Tuple[str, str]]:
        if in_search:
            return [('class:status', f"Search: {search_query}_   [esc] exit search")]
        help_text = ("[←↑→↓] move  [enter] detail  [y] copy id  [tab] timesheet  [r] refresh  [t] theme  [q] quit"
                     if screen == "kanban" else
                     "[←↑→↓] move  [enter] edit  [ ] ] week  [/] search  [tab] board  [r] refresh  [t] theme  [q] quit")
        if status_line:
            return [('class:status.error' if status_error else 'class:status', f" {status_line} "), ('', '  '),
                    ('class:help', help_text)]
        return [('class:help', help_text)]

    body_control = FormattedTextControl(text=build_body)
    detail_control = FormattedTextControl(text=lambda: build_detail_fragments(*detail) if detail else [])
    detail_window = Frame(Window(content=detail_control, wrap_lines=True), title="Task", style='class:detail.frame')
    floats: List[Float] = []
    root = HSplit([
        Window(content=FormattedTextControl(text=build_title), height=1),
        Window(content=body_control, wrap_lines=False),
        Window(content=FormattedTextControl(text=build_status_bar), height=1),
    ])
    container = FloatContainer(content=root, floats=floats)
    app: Optional[Application] = None

    def invalidate() -> None:
        if app is not None:
            app.invalidate()

    async def run_core(label: str, fn: Callable[[], object], on_done: Callable[[object], None]) -> None:
        nonlocal busy
        if busy:
            set_status("Busy; wait for the current request")
            invalidate()
            return
        busy = True
        set_status(label)
        invalidate()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, fn)
        except (ClickUpError, ValueError) as exc:
            LOG.exception("%s failed", label)
            set_status(str(exc), error=True)
        else:
            set_status("")
            on_done(result)
        finally:
            busy = False
            invalidate()

    def load_board(refresh: bool = False) -> None:
        def fetch():
            if refresh:
                client.cache.invalidate_view_tasks()
            return client.get_view_tasks(cfg.view_id)

        def done(tasks):
            nonlocal columns, sel_col, sel_task
            columns = group_tasks_by_status(tasks)
            sel_col = min(sel_col, max(0, len(columns) - 1))
            sel_task = 0

        if not cfg.view_id:
            set_status("No view_id configured; run with --setup --view-id ID", error=True)
            return
        app.create_background_task(run_core("Loading tasks…", fetch, done))

    def load_timesheet(refresh: bool = False) -> None:
        def fetch():
            if refresh:
                client.cache.invalidate_timesheet_tasks()
                client.cache.invalidate_time_entries()
            tasks = client.get_timesheet_tasks(cfg.effective_timesheet_filter)
            entries = client.get_timesheet_entries(cfg.user_id)
            return build_timesheet_rows(tasks, entries, tz)

        def done(rows):
            nonlocal all_rows
            all_rows = rows
            resort()

        if not cfg.user_id:
            set_status("No user_id configured; run with --setup", error=True)
            return
        app.create_background_task(run_core("Loading timesheet…", fetch, done))

    def load_current(refresh: bool = False) -> None:
        if screen == "kanban":
            load_board(refresh)
        else:
            load_timesheet(refresh)

    def open_detail() -> None:
        if not columns or sel_task >= len(columns[sel_col].tasks):
            return
        task_id = columns[sel_col].tasks[sel_task].id

        def fetch():
            task = client.get_task(task_id)
            try:
                comments = client.get_task_comments(task_id)
            except ClickUpError:
                LOG.warning("Comments unavailable for %s", task_id, exc_info=True)
                comments = []
            return task, comments

        def done(result):
            nonlocal detail
            detail = result
            floats.clear()
            floats.append(Float(content=detail_window, top=2, left=4, right=4, bottom=2))

        app.create_background_task(run_core("Loading task…", fetch, done))

    def close_detail() -> None:
        nonlocal detail
        detail = None
        floats.clear()

    def commit_edit() -> None:
        nonlocal edit_buffer
        raw = edit_buffer or ""
        edit_buffer = None
        rows = visible_rows()
        if not rows:
            return
        try:
            hours = parse_hours_input(raw)
        except ValueError:
            set_status(f"Invalid hours: {raw!r}", error=True)
            return
        if hours < 0:
            set_status("Hours must be >= 0", error=True)
            return
        row = rows[cursor_row]
        day = week_dates(week_from)[cursor_col]

        def write():
            return client.update_tracking(cfg.user_id, row.task_id, day, hours, tz)

        def done(_result):
            if hours > 0:
                row.hours[day.isoformat()] = hours
            else:
                row.hours.pop(day.isoformat(), None)
            resort()

        app.create_background_task(run_core(f"Saving {format_hours_hm(hours)}…", write, done))

    kb = KeyBindings()
    is_detail = Condition(lambda: detail is not None)
    is_editing = Condition(lambda: edit_buffer is not None)
    is_search = Condition(lambda: in_search)
    is_board = Condition(lambda: screen == "kanban" and detail is None)
    is_sheet = Condition(lambda: screen == "timesheet" and edit_buffer is None)
    is_normal = Condition(lambda: detail is None and edit_buffer is None and not in_search)

    @kb.add('q', filter=is_normal)
    @kb.add('c-c')
    def _(event):
        event.app.exit()

    @kb.add('escape', filter=is_detail)
    @kb.add('q', filter=is_detail)
    @kb.add('enter', filter=is_detail)
    def _(event):
        close_detail()

    @kb.add('tab', filter=is_normal)
    def _(event):
        nonlocal screen
        screen = "timesheet" if screen == "kanban" else "kanban"
        if (screen == "kanban" and not columns) or (screen == "timesheet" and not all_rows):
            load_current()

    def apply_theme(index: int) -> None:
        nonlocal current_theme_index, style
        current_theme_index = index % len(theme_presets)
        preset = theme_presets[current_theme_index]
        style = Style.from_dict(preset.style)
        if app is not None:
            app.style = style
        set_status(f"Theme: {preset.name}")

    @kb.add('t', filter=is_normal)
    def _(event):
        apply_theme(current_theme_index + 1)

    @kb.add('r', filter=is_normal)
    def _(event):
        load_current(refresh=True)

    def selected_task() -> Optional[Task]:
        if detail is not None:
            return detail[0]
        if columns and sel_task < len(columns[sel_col].tasks):
            return columns[sel_col].tasks[sel_task]
        return None

    def copy_custom_id() -> None:
        task = selected_task()
        if task is None or not task.custom_id:
            set_status("Task has no custom id")
            return
        try:
            app.clipboard.set_text(task.custom_id)
        except pyperclip.PyperclipException as exc:
            LOG.warning("Clipboard unavailable: %s", exc)
            set_status("Clipboard unavailable", error=True)
            return
        set_status(f"Copied {task.custom_id}")

    @kb.add('y', filter=is_board & is_normal)
    @kb.add('y', filter=is_detail)
    def _(event):
        copy_custom_id()

    @kb.add('left', filter=is_board)
    def _(event):
        nonlocal sel_col, sel_task
        if sel_col > 0:
            sel_col -= 1
            sel_task = 0

    @kb.add('right', filter=is_board)
    def _(event):
        nonlocal sel_col, sel_task
        if sel_col < len(columns) - 1:
            sel_col += 1
            sel_task = 0

    @kb.add('up', filter=is_board)
    def _(event):
        nonlocal sel_task
        sel_task = max(0, sel_task - 1)

    @kb.add('down', filter=is_board)
    def _(event):
        nonlocal sel_task
        if columns and sel_task < len(columns[sel_col].tasks) - 1:
            sel_task += 1

    @kb.add('enter', filter=is_board)
    def _(event):
        open_detail()

    @kb.add('up', filter=is_sheet)
    def _(event):
        nonlocal cursor_row
        cursor_row = max(0, cursor_row - 1)

    @kb.add('down', filter=is_sheet)
    def _(event):
        nonlocal cursor_row
        cursor_row = min(max(0, len(visible_rows()) - 1), cursor_row + 1)

    @kb.add('left', filter=is_sheet)
    def _(event):
        nonlocal cursor_col, week_from
        if cursor_col > 0:
            cursor_col -= 1
        else:
            week_from -= dt.timedelta(days=7)
            cursor_col = WEEK_DAYS - 1
            resort()

    @kb.add('right', filter=is_sheet)
    def _(event):
        nonlocal cursor_col, week_from
        if cursor_col < WEEK_DAYS - 1:
            cursor_col += 1
        else:
            week_from += dt.timedelta(days=7)
            cursor_col = 0
            resort()

    @kb.add('[', filter=is_sheet & ~is_search)
    def _(event):
        nonlocal week_from
        week_from -= dt.timedelta(days=7)
        resort()

    @kb.add(']', filter=is_sheet & ~is_search)
    def _(event):
        nonlocal week_from
        week_from += dt.timedelta(days=7)
        resort()

    @kb.add('/', filter=is_sheet & ~is_search)
    def _(event):
        nonlocal in_search, search_query, cursor_row
        in_search = True
        search_query = ""
        cursor_row = 0

    @kb.add('enter', filter=is_sheet)
    def _(event):
        nonlocal edit_buffer, in_search
        rows = visible_rows()
        if not rows:
            return
        in_search = False
        current = rows[cursor_row].hours.get(week_dates(week_from)[cursor_col].isoformat(), 0.0)
        edit_buffer = f"{current:.2f}" if current else ""

    @kb.add('escape', filter=is_search)
    def _(event):
        nonlocal in_search, search_query
        in_search = False
        search_query = ""
        resort()

    @kb.add('backspace', filter=is_search)
    def _(event):
        nonlocal search_query, cursor_row
        search_query = search_query[:-1]
        cursor_row = 0

    @kb.add(Keys.Any, filter=is_search)
    def _(event):
        nonlocal search_query, cursor_row
        search_query += event.data
        cursor_row = 0

    @kb.add('escape', filter=is_editing)
    def _(event):
        nonlocal edit_buffer
        edit_buffer = None

    @kb.add('backspace', filter=is_editing)
    def _(event):
        nonlocal edit_buffer
        edit_buffer = (edit_buffer or "")[:-1]

    @kb.add('enter', filter=is_editing)
    def _(event):
        commit_edit()

    @kb.add(Keys.Any, filter=is_editing)
    def _(event):
        nonlocal edit_buffer
        if event.data and (event.data.isdigit() or event.data in ".,hm "):
            edit_buffer = (edit_buffer or "") + event.data.replace(',', '.')

    app = Application(layout=Layout(container), key_bindings=kb, full_screen=True, style=style,
                      clipboard=PyperclipClipboard())
    app.run(pre_run=load_current)


# -----------------------------
# CLI
# -----------------------------
def _configure_logging(log_level: str) -> None:
    log_path = os.path.join(config_dir(), 'cu_task_viewer.log')
    for h in list(LOG.handlers):
        LOG.removeHandler(h)
        h.close()
    LOG.setLevel(logging.DEBUG)
    try:
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    except OSError as exc:
        print(f"Logging disabled: {exc}", file=sys.stderr)
        LOG.addHandler(logging.NullHandler())
        return
    lvl = getattr(logging, str(log_level).upper(), logging.ERROR)
    if not isinstance(lvl, int):
        lvl = logging.ERROR
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    LOG.addHandler(fh)


def _resolve_tz(name: Optional[str]) -> Optional[dt.tzinfo]:
    if not name:
        return None
    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise SystemExit(f"Unknown time zone {name!r}: {exc}")


def _print_summary(client: ClickUpClient, cfg: Config, tz: Optional[dt.tzinfo]) -> None:
    if cfg.view_id:
        columns = group_tasks_by_status(client.get_view_tasks(cfg.view_id))
        print(f"View {cfg.view_id}: {sum(len(c.tasks) for c in columns)} tasks")
        for col in columns:
            print(f"  {col.status or '(no status)'}: {len(col.tasks)}")
    if cfg.user_id:
        tasks = client.get_timesheet_tasks(cfg.effective_timesheet_filter)
        entries = client.get_timesheet_entries(cfg.user_id)
        week_from = week_start(dt.date.today())
        rows = sort_timesheet_rows(build_timesheet_rows(tasks, entries, tz), week_from)
        totals = day_totals(rows, week_from)
        print(f"Week of {week_from.isoformat()}: " + "  ".join(
            f"{d.strftime('%a')} {format_hours_hm(t)}" for d, t in zip(week_dates(week_from), totals)))


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="ClickUp board and timesheet viewer")
    ap.add_argument("--config-dir", help="Directory for config.json/cache.json (default ~/.config/clickup-tui)")
    ap.add_argument("--token", help="ClickUp API token (overrides CLICKUP_TOKEN and config)")
    ap.add_argument("--view", choices=list(INITIAL_VIEWS), help="Screen to open first")
    ap.add_argument("--setup", action="store_true", help="Discover team/user for the token and write config.json")
    ap.add_argument("--team-id", help="Team id (with --setup)")
    ap.add_argument("--view-id", help="View id for the Kanban board (with --setup)")
    ap.add_argument("--timesheet-filter", help="Raw query string selecting timesheet tasks (with --setup)")
    ap.add_argument("--clear-cache", action="store_true", help="Drop every cached collection and exit")
    ap.add_argument("--log-hours", nargs=3, metavar=("TASK_ID", "DATE", "HOURS"),
                    help="Set the hours logged on TASK_ID for DATE (YYYY-MM-DD) and exit")
    ap.add_argument("--tz", help="IANA time zone for day boundaries (default: local)")
    ap.add_argument("--no-ui", action="store_true", help="Print a non-interactive summary")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    args = ap.parse_args(argv)

    if args.config_dir:
        os.environ["CLICKUP_TUI_HOME"] = os.path.abspath(os.path.expanduser(args.config_dir))
    _configure_logging(args.log_level)

    cfg = load_config()
    token = args.token or os.environ.get("CLICKUP_TOKEN") or load_dotenv_token() or cfg.clickup_token
    tz = _resolve_tz(args.tz)

    if args.setup:
        if not token:
            print("A token is required for --setup (use --token or CLICKUP_TOKEN).", file=sys.stderr)
            sys.exit(1)
        client = ClickUpClient(token, args.team_id or cfg.team_id)
        try:
            new_cfg = discover_settings(
                client, token,
                team_id=args.team_id or "",
                view_id=args.view_id if args.view_id is not None else cfg.view_id,
                timesheet_filter=args.timesheet_filter if args.timesheet_filter is not None else cfg.timesheet_filter,
                initial_view=args.view or cfg.initial_view,
            )
            save_config(new_cfg)
        except ClickUpError as exc:
            print(f"Setup failed: {exc}", file=sys.stderr)
            sys.exit(2)
        if new_cfg.view_id != cfg.view_id or new_cfg.team_id != cfg.team_id:
            client.cache.clear()
            client.cache.save()
        print(f"Saved {default_config_path()} (team {new_cfg.team_id}, user {new_cfg.user_id})")
        return

    if not token or not cfg.team_id:
        print("Not configured; run with --setup --token TOKEN first.", file=sys.stderr)
        sys.exit(1)
    if args.view:
        cfg.initial_view = args.view

    client = ClickUpClient(token, cfg.team_id)

    if args.clear_cache:
        client.cache.clear()
        if not client.cache.save():
            sys.exit(2)
        print("Cache cleared")
        return

    if args.log_hours:
        task_id, day_raw, hours_raw = args.log_hours
        try:
            day = dt.date.fromisoformat(day_raw)
            hours = parse_hours_input(hours_raw)
            result = client.update_tracking(cfg.user_id, task_id, day, hours, tz)
        except ValueError as exc:
            print(f"Invalid input: {exc}", file=sys.stderr)
            sys.exit(2)
        except ClickUpError as exc:
            print(f"Update failed: {exc}", file=sys.stderr)
            sys.exit(2)
        print(f"{task_id} on {day.isoformat()}: {format_hours_hm(hours)} "
              f"(removed {len(result.deleted)} entries, {len(result.failed_deletes)} failed)")
        return

    if args.no_ui:
        try:
            _print_summary(client, cfg, tz)
        except ClickUpError as exc:
            print(f"Fetch failed: {exc}", file=sys.stderr)
            sys.exit(2)
        return

    run_ui(client, cfg, tz)


if __name__ == "__main__":
    main()
