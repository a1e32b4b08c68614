"""
The admin-gated entity store behind the profile page.

Everything here is plain Python over a single SQLite key/value table:
no Flask, no request context.  ``folio.site`` builds one :class:`Folio`
per database file and re-queries it after every mutating call.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import sqlite3
import uuid
from contextlib import closing
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from secrets import compare_digest
from typing import Any, Callable, ClassVar, Generic, Iterator, Mapping, TypeVar

from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

log = logging.getLogger(__name__)

################################################################################
# Constants
################################################################################

VIEW, ADMIN = "view", "admin"
MODES = (VIEW, ADMIN)

DEFAULT_PASSPHRASE = "admin"  # accepted until a credential is stored
MIN_PASSPHRASE_LEN = 4
_SHA256_HEX_RE = re.compile(r"^[0-9a-f]{64}$")

CONTACT_TYPES = (
    "email",
    "phone",
    "telegram",
    "linkedin",
    "twitter",
    "github",
    "website",
    "other",
)
CONTACT_ICONS = {
    "email": "📧",
    "phone": "📞",
    "telegram": "✈️",
    "linkedin": "💼",
    "twitter": "🐦",
    "github": "💻",
    "website": "🌐",
    "other": "🔗",
}

SKILL_EMOJI = "⚡"
PROJECT_EMOJI = "🚀"
MAX_TAGS = 4
LINK_SORTS = ("custom", "az", "za", "clicks")
IMAGE_KINDS = ("avatar", "background")


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


################################################################################
# Errors
################################################################################
class FolioError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(FolioError):
    """A missing or invalid field on add/update.  Nothing was changed."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class AuthError(FolioError):
    """Wrong credential, or a mutation attempted outside admin mode."""


class CredentialError(AuthError):
    MESSAGES = {
        "wrong-current-credential": "Wrong current password.",
        "too-short": f"Password must be at least {MIN_PASSPHRASE_LEN} characters.",
        "mismatch": "Passwords don't match.",
    }

    def __init__(self, reason: str):
        super().__init__(self.MESSAGES[reason])
        self.reason = reason


class BoundsError(FolioError, IndexError):
    """A position outside the current sequence (a caller bug, not user error)."""

    def __init__(self, collection: str, position: Any, size: int):
        super().__init__(
            f"{collection}: position {position!r} out of range (size {size})"
        )
        self.position = position
        self.size = size


class PersistenceError(FolioError):
    """
    The key/value store refused a write.  The in-memory state already
    holds the change; only the persisted copy lags behind.
    """


################################################################################
# Durable key/value store
################################################################################
class KVStore:
    """
    JSON values in a one-table SQLite file::

        kv(key TEXT PRIMARY KEY, value TEXT NOT NULL)

    Reads never raise: a missing, unreadable or corrupted entry yields
    *default*.  Writes either store the whole value or raise
    :class:`PersistenceError`.
    """

    def __init__(self, path: str | Path):
        self.path = str(path)
        try:
            with closing(sqlite3.connect(self.path)) as db, db:
                db.execute(
                    "CREATE TABLE IF NOT EXISTS kv ("
                    " key   TEXT PRIMARY KEY,"
                    " value TEXT NOT NULL)"
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open {self.path}: {exc}") from exc

    def get(self, key: str, default: Any = None) -> Any:
        try:
            with closing(sqlite3.connect(self.path)) as db:
                row = db.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        except sqlite3.Error:
            log.warning("kv read of %r failed, using default", key, exc_info=True)
            return default
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            log.warning("kv entry %r is corrupted, using default", key)
            return default

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        try:
            with closing(sqlite3.connect(self.path)) as db, db:
                db.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (key, payload),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot write {key!r}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with closing(sqlite3.connect(self.path)) as db, db:
                db.execute("DELETE FROM kv WHERE key=?", (key,))
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot delete {key!r}: {exc}") from exc

    def keys(self) -> list[str]:
        try:
            with closing(sqlite3.connect(self.path)) as db:
                return [r[0] for r in db.execute("SELECT key FROM kv ORDER BY key")]
        except sqlite3.Error:
            log.warning("kv key listing failed", exc_info=True)
            return []


################################################################################
# Session + auth gate
################################################################################
class Session:
    """
    The current authorization state, passed explicitly to every
    mutating operation.  Persisted under ``sessionMode`` so an admin
    session survives a restart.
    """

    KEY = "sessionMode"

    def __init__(self, kv: KVStore):
        self._kv = kv

    @property
    def mode(self) -> str:
        # read through: another process (``flask logout``, a second worker)
        # may have changed it
        mode = self._kv.get(self.KEY, VIEW)
        return mode if mode in MODES else VIEW

    @property
    def is_admin(self) -> bool:
        return self.mode == ADMIN

    def set_mode(self, mode: str) -> None:
        if mode not in MODES:
            raise ValueError(f"unknown session mode {mode!r}")
        self._kv.set(self.KEY, mode)

    def require_admin(self, action: str = "edit") -> None:
        if not self.is_admin:
            raise AuthError(f"Admin mode required to {action}.")

    def __repr__(self) -> str:
        return f"<Session {self.mode}>"


def password_strength(value: str) -> str:
    """'' | weak | medium | strong – the hint shown under a new password."""
    if not value:
        return ""
    if len(value) < 6:
        return "weak"
    if len(value) < 10:
        return "medium"
    return "strong"


class AuthGate:
    """
    Checks a passphrase against the stored one-way hash.

    This locks content for a single operator; the hash only keeps the
    passphrase out of plain sight in the database file.
    """

    KEY = "credentialHash"

    def __init__(self, kv: KVStore):
        self._kv = kv

    def _stored(self) -> str | None:
        value = self._kv.get(self.KEY)
        return value if isinstance(value, str) and value else None

    @property
    def has_credential(self) -> bool:
        return self._stored() is not None

    def verify(self, passphrase: str | None) -> bool:
        if not isinstance(passphrase, str):
            return False
        stored = self._stored()
        if stored is None:
            return compare_digest(passphrase.encode(), DEFAULT_PASSPHRASE.encode())
        if _SHA256_HEX_RE.fullmatch(stored):
            # bare sha256 hex digest written by the browser-only version
            digest = hashlib.sha256(passphrase.encode()).hexdigest()
            return compare_digest(digest, stored)
        try:
            return verify_token(stored, passphrase)
        except ValueError:
            log.warning("stored credential hash is unreadable")
            return False

    def can(self, session: Session, action: str | None = None) -> bool:
        return session.is_admin

    def login(self, session: Session, passphrase: str | None) -> bool:
        if not self.verify(passphrase):
            log.warning("admin login rejected")
            return False
        session.set_mode(ADMIN)
        log.info("admin login")
        return True

    def logout(self, session: Session) -> None:
        session.set_mode(VIEW)
        log.info("admin logout")

    def change_credential(self, current: str, new: str, confirm: str) -> None:
        """Raise :class:`CredentialError` unless all three checks pass."""
        if not self.verify(current):
            raise CredentialError("wrong-current-credential")
        if len(new or "") < MIN_PASSPHRASE_LEN:
            raise CredentialError("too-short")
        if new != confirm:
            raise CredentialError("mismatch")
        self._kv.set(self.KEY, hash_token(new))
        log.info("admin credential changed")

    def reset_credential(self, new: str) -> None:
        """Operator recovery from the command line: no current check."""
        if len(new or "") < MIN_PASSPHRASE_LEN:
            raise CredentialError("too-short")
        self._kv.set(self.KEY, hash_token(new))
        log.info("admin credential reset")


################################################################################
# Records
################################################################################
def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value).strip()


def _require(name: str, value: str, label: str | None = None) -> None:
    if not value:
        raise ValidationError(name, f"{label or name.capitalize()} required")


def _cap(name: str, value: str, limit: int) -> None:
    if len(value) > limit:
        raise ValidationError(
            name, f"{name.capitalize()} is limited to {limit} characters"
        )


def split_tags(raw: Any) -> list[str]:
    """'a, b,,c' or ['a', 'b'] → trimmed, non-empty, at most MAX_TAGS."""
    if raw is None:
        return []
    parts = raw.split(",") if isinstance(raw, str) else [str(t) for t in raw]
    return [t.strip() for t in parts if t.strip()][:MAX_TAGS]


@dataclass
class Record:
    """
    One element of an ordered collection.  ``id`` is assigned once and
    never reused; it is not part of the element's content and is ignored
    by equality.
    """

    key: ClassVar[str] = ""
    legacy_keys: ClassVar[dict[str, str]] = {}

    id: str = field(default_factory=new_id, compare=False, kw_only=True)

    @classmethod
    def build(cls, data: Mapping[str, Any]):
        raise NotImplementedError

    @classmethod
    def from_stored(cls, data: Mapping[str, Any]):
        """Lenient loader for persisted dicts (accepts pre-id layouts)."""
        data = dict(data)
        for old, new in cls.legacy_keys.items():
            if old in data and new not in data:
                data[new] = data.pop(old)
        rec = cls.build(data)
        if isinstance(data.get("id"), str) and data["id"]:
            rec.id = data["id"]
        return rec

    def content(self) -> dict[str, Any]:
        """User-visible fields only (what an export contains)."""
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "id"}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Contact(Record):
    key: ClassVar[str] = "contacts"

    type: str = "other"
    value: str = ""

    @classmethod
    def build(cls, data):
        ctype = _text(data, "type").lower()
        value = _text(data, "value")
        if ctype not in CONTACT_TYPES:
            raise ValidationError("type", f"Unknown contact type {ctype!r}")
        _require("value", value)
        return cls(type=ctype, value=value)

    @property
    def icon(self) -> str:
        return CONTACT_ICONS.get(self.type, CONTACT_ICONS["other"])


@dataclass
class Skill(Record):
    key: ClassVar[str] = "skills"
    legacy_keys: ClassVar[dict[str, str]] = {"cat": "category"}

    name: str = ""
    emoji: str = SKILL_EMOJI
    category: str = ""
    level: int = 80

    @classmethod
    def build(cls, data):
        name = _text(data, "name")
        _require("name", name)
        _cap("name", name, 40)
        emoji = _text(data, "emoji") or SKILL_EMOJI
        _cap("emoji", emoji, 4)
        category = _text(data, "category")
        _cap("category", category, 28)

        raw = data.get("level", 80)
        if raw is None or raw == "":
            raw = 80
        try:
            level = int(raw)
        except (TypeError, ValueError):
            raise ValidationError("level", "Level must be a whole number") from None
        if not 0 <= level <= 100 or level % 5:
            raise ValidationError("level", "Level must be 0–100 in steps of 5")
        return cls(name=name, emoji=emoji, category=category, level=level)


@dataclass
class Link(Record):
    key: ClassVar[str] = "links"

    name: str = ""
    url: str = ""

    @classmethod
    def build(cls, data):
        name = _text(data, "name")
        url = _text(data, "url")
        _require("name", name)
        _cap("name", name, 40)
        _require("url", url, "URL")
        return cls(name=name, url=url)


@dataclass
class Project(Record):
    key: ClassVar[str] = "projects"
    legacy_keys: ClassVar[dict[str, str]] = {"desc": "description"}

    title: str = ""
    emoji: str = PROJECT_EMOJI
    description: str = ""
    url: str = ""
    tags: list[str] = field(default_factory=list)

    @classmethod
    def build(cls, data):
        title = _text(data, "title")
        _require("title", title)
        _cap("title", title, 60)
        emoji = _text(data, "emoji") or PROJECT_EMOJI
        _cap("emoji", emoji, 4)
        return cls(
            title=title,
            emoji=emoji,
            description=_text(data, "description"),
            url=_text(data, "url"),
            tags=split_tags(data.get("tags")),
        )


RECORD_TYPES: dict[str, type[Record]] = {
    r.key: r for r in (Contact, Skill, Link, Project)
}


################################################################################
# Entity stores
################################################################################
R = TypeVar("R", bound=Record)


class EntityStore(Generic[R]):
    """
    The canonical ordered sequence for one record type.

    Every successful mutation writes the full sequence back to the
    key/value store before returning (write-through).  Elements are
    addressed by position; positions after a removed element shift
    down by one, and side tables keyed by position are *not* renumbered
    here.
    """

    def __init__(self, kv: KVStore, record: type[R]):
        self._kv = kv
        self.record = record
        self.key = record.key
        self._listeners: list[Callable[[EntityStore], None]] = []
        self._items: list[R] = self._load()

    # ── loading / persistence ────────────────────────────────────────
    def _load(self) -> list[R]:
        raw = self._kv.get(self.key, [])
        if not isinstance(raw, list):
            log.warning("%s: stored value is not a list, starting empty", self.key)
            return []
        items: list[R] = []
        missing_ids = False
        for n, data in enumerate(raw):
            if not isinstance(data, dict):
                log.warning("%s: dropping malformed entry #%d", self.key, n)
                continue
            try:
                items.append(self.record.from_stored(data))
            except ValidationError as exc:
                log.warning("%s: dropping invalid entry #%d (%s)", self.key, n, exc)
                continue
            missing_ids = missing_ids or not data.get("id")
        if missing_ids:
            # pin the freshly minted ids so side tables can refer to them
            try:
                self._kv.set(self.key, [r.to_dict() for r in items])
            except PersistenceError:
                log.warning("%s: could not store assigned ids", self.key)
        return items

    def reload(self) -> None:
        self._items = self._load()
        self._notify()

    def _persist(self) -> None:
        try:
            self._kv.set(self.key, [r.to_dict() for r in self._items])
        finally:
            self._notify()

    def subscribe(self, callback: Callable[[EntityStore], None]) -> Callable[[], None]:
        """Call *callback(store)* after every change; returns an unsubscriber."""
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    def _notify(self) -> None:
        for cb in list(self._listeners):
            cb(self)

    # ── reads ────────────────────────────────────────────────────────
    def all(self) -> list[R]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[R]:
        return iter(list(self._items))

    def _check(self, position: Any) -> int:
        if (
            isinstance(position, bool)
            or not isinstance(position, int)
            or not 0 <= position < len(self._items)
        ):
            raise BoundsError(self.key, position, len(self._items))
        return position

    def get(self, position: int) -> R:
        return self._items[self._check(position)]

    def position_of(self, record_id: str) -> int | None:
        for n, rec in enumerate(self._items):
            if rec.id == record_id:
                return n
        return None

    # ── mutations ────────────────────────────────────────────────────
    def _candidate(self, candidate: Mapping[str, Any] | Record) -> Mapping[str, Any]:
        return candidate.content() if isinstance(candidate, Record) else candidate

    def add(self, candidate: Mapping[str, Any] | Record, *, session: Session) -> R:
        session.require_admin(f"add {self.key}")
        rec = self.record.build(self._candidate(candidate))
        self._items.append(rec)
        self._persist()
        return rec

    def update(
        self,
        position: int,
        patch: Mapping[str, Any] | Record,
        *,
        session: Session,
    ) -> R:
        session.require_admin(f"edit {self.key}")
        pos = self._check(position)
        current = self._items[pos]
        rec = self.record.build({**current.content(), **self._candidate(patch)})
        rec.id = current.id
        self._items[pos] = rec
        self._persist()
        return rec

    def remove(self, position: int, *, session: Session) -> R:
        session.require_admin(f"delete {self.key}")
        rec = self._items.pop(self._check(position))
        self._persist()
        return rec


class LinkStore(EntityStore[Link]):
    """Links keep a user-controlled order and offer display-only queries."""

    def __init__(self, kv: KVStore):
        super().__init__(kv, Link)

    def reorder(self, source: int, target: int, *, session: Session) -> None:
        session.require_admin("reorder links")
        self._check(source)
        self._check(target)
        if source == target:
            return
        moved = self._items.pop(source)
        self._items.insert(target, moved)
        self._persist()

    def filter(self, predicate: Callable[[Link], bool]) -> list[tuple[int, Link]]:
        return [(n, rec) for n, rec in enumerate(self._items) if predicate(rec)]

    def sort(
        self,
        key: Callable[[tuple[int, Link]], Any],
        *,
        reverse: bool = False,
        rows: list[tuple[int, Link]] | None = None,
    ) -> list[tuple[int, Link]]:
        rows = list(enumerate(self._items)) if rows is None else rows
        return sorted(rows, key=key, reverse=reverse)

    def view(
        self,
        query: str = "",
        sort: str = "custom",
        *,
        clicks: Callable[[int], int] | None = None,
    ) -> list[tuple[int, Link]]:
        """
        ``(position, link)`` pairs for display.  The stored ("custom")
        order is never touched; positions always refer to it.
        """
        needle = (query or "").strip().casefold()
        rows = self.filter(
            lambda rec: not needle
            or needle in rec.name.casefold()
            or needle in rec.url.casefold()
        )
        if sort == "az":
            return self.sort(lambda row: row[1].name.casefold(), rows=rows)
        if sort == "za":
            return self.sort(lambda row: row[1].name.casefold(), rows=rows, reverse=True)
        if sort == "clicks" and clicks is not None:
            return self.sort(lambda row: -clicks(row[0]), rows=rows)
        return rows


################################################################################
# Link click tracking
################################################################################
class ClickTracker:
    """
    Click counts per link.

    Callers address links by position, but counts are stored under the
    link's stable id, so deleting or reordering links never hands one
    link's history to another.  Counts of removed links are dropped.
    """

    KEY = "linkClicks"

    def __init__(self, kv: KVStore, links: LinkStore):
        self._kv = kv
        self._links = links
        self._counts = self._load()
        links.subscribe(self._on_links_changed)

    def _load(self) -> dict[str, int]:
        raw = self._kv.get(self.KEY, {})
        if not isinstance(raw, dict):
            log.warning("%s: stored value is not a mapping, starting empty", self.KEY)
            return {}
        links = self._links.all()
        ids = {rec.id for rec in links}
        counts: dict[str, int] = {}
        for k, v in raw.items():
            try:
                n = int(v)
            except (TypeError, ValueError):
                continue
            if n <= 0:
                continue
            if k in ids:
                counts[k] = counts.get(k, 0) + n
            elif k.isdigit() and int(k) < len(links):
                # slot-keyed table from the browser-only version
                lid = links[int(k)].id
                counts[lid] = counts.get(lid, 0) + n
        if counts != raw:
            # slot keys must not outlive the positions they were read from
            try:
                self._kv.set(self.KEY, counts)
            except PersistenceError:
                log.warning("%s: could not store migrated counts", self.KEY)
        return counts

    def _persist(self) -> None:
        self._kv.set(self.KEY, self._counts)

    def _on_links_changed(self, links: EntityStore) -> None:
        live = {rec.id for rec in links.all()}
        stale = [lid for lid in self._counts if lid not in live]
        if stale:
            for lid in stale:
                del self._counts[lid]
            self._persist()

    def record_click(self, position: int) -> int:
        lid = self._links.get(position).id
        self._counts[lid] = self._counts.get(lid, 0) + 1
        self._persist()
        return self._counts[lid]

    def count_for(self, position: int) -> int:
        try:
            lid = self._links.get(position).id
        except BoundsError:
            return 0
        return self._counts.get(lid, 0)

    def count_by_id(self, link_id: str) -> int:
        return self._counts.get(link_id, 0)

    def forget(self, link_id: str) -> None:
        if self._counts.pop(link_id, None) is not None:
            self._persist()

    def counts(self) -> dict[str, int]:
        return dict(self._counts)


################################################################################
# Profile singleton
################################################################################
DEFAULT_NICKNAME = "Your Name"


@dataclass
class Profile:
    nickname: str = DEFAULT_NICKNAME
    profession: str = "Professional Title · Location"
    bio: str = "A short description about yourself."
    avatar: str | None = None
    background: str | None = None
    available: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProfileStore:
    KEY = "profile"

    def __init__(self, kv: KVStore):
        self._kv = kv

    def load(self) -> Profile:
        raw = self._kv.get(self.KEY, {})
        if not isinstance(raw, dict):
            log.warning("profile: stored value is not a mapping, using defaults")
            raw = {}
        if "bg" in raw and "background" not in raw:
            raw["background"] = raw.pop("bg")
        profile = Profile()
        for f in fields(Profile):
            value = raw.get(f.name)
            if f.name == "available":
                if isinstance(value, bool):
                    profile.available = value
            elif f.name in IMAGE_KINDS:
                if isinstance(value, str) and value:
                    setattr(profile, f.name, value)
            elif isinstance(value, str):
                setattr(profile, f.name, value)
        return profile

    def _save(self, profile: Profile) -> Profile:
        self._kv.set(self.KEY, profile.to_dict())
        return profile

    def edit_fields(self, patch: Mapping[str, Any], *, session: Session) -> Profile:
        session.require_admin("edit the profile")
        profile = self.load()
        if "nickname" in patch:
            profile.nickname = _text(patch, "nickname") or DEFAULT_NICKNAME
        if "profession" in patch:
            profile.profession = _text(patch, "profession")
        if "bio" in patch:
            profile.bio = _text(patch, "bio")
        return self._save(profile)

    def toggle_availability(self, *, session: Session) -> bool:
        session.require_admin("change availability")
        profile = self.load()
        profile.available = not profile.available
        self._save(profile)
        return profile.available

    def set_image(self, kind: str, reference: str | None, *, session: Session) -> Profile:
        """Store an opaque image reference (URL or data: URL) as given."""
        session.require_admin(f"change the {kind}")
        if kind not in IMAGE_KINDS:
            raise ValidationError("kind", f"Unknown image kind {kind!r}")
        profile = self.load()
        setattr(profile, kind, reference or None)
        return self._save(profile)


################################################################################
# Bundle + export
################################################################################
class Folio:
    """Every core component for one database file."""

    def __init__(self, path: str | Path):
        self.kv = KVStore(path)
        self.session = Session(self.kv)
        self.gate = AuthGate(self.kv)
        self.profile = ProfileStore(self.kv)
        self.contacts: EntityStore[Contact] = EntityStore(self.kv, Contact)
        self.skills: EntityStore[Skill] = EntityStore(self.kv, Skill)
        self.links = LinkStore(self.kv)
        self.projects: EntityStore[Project] = EntityStore(self.kv, Project)
        self.clicks = ClickTracker(self.kv, self.links)

    def collection(self, key: str) -> EntityStore:
        if key not in RECORD_TYPES:
            raise KeyError(key)
        return getattr(self, key)

    def collections(self) -> dict[str, EntityStore]:
        return {key: getattr(self, key) for key in RECORD_TYPES}


def export_snapshot(folio: Folio, *, now: datetime | None = None) -> dict[str, Any]:
    """Read-only snapshot of the visible content, stamped with the export time."""
    now = now or utc_now()
    snap: dict[str, Any] = {
        "_exported": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "profile": folio.profile.load().to_dict(),
    }
    for key, store in folio.collections().items():
        snap[key] = [rec.content() for rec in store]
    return snap


def export_filename(now: datetime | None = None) -> str:
    now = now or utc_now()
    return f"profile-{int(now.timestamp() * 1000)}.json"
