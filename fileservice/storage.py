import json
import logging
import os
import re
import secrets
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from .errors import ConflictError, StorageIOError

logger = logging.getLogger("fileservice.storage")

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("FILESERVICE_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("FILESERVICE_DATA_DIR", STORAGE_ROOT / "app-data")
UPLOADS_DIR = _resolve_env_path("FILESERVICE_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("FILESERVICE_LOGS_DIR", STORAGE_ROOT / "logs")
FILE_INFO_PATH = DATA_DIR / "fileInfo.json"
USER_INFO_PATH = DATA_DIR / "userInfo.json"
METRICS_PATH = DATA_DIR / "metrics.json"

BYTES_PER_MB = 1024 * 1024
BYTES_PER_GB = 1024 * 1024 * 1024

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("fileservice.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def isoformat_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# One lock per JSON document path, shared by every store instance in the
# process so two writers of the same document never interleave their saves.
_document_locks: Dict[Path, threading.RLock] = {}
_document_locks_guard = threading.Lock()


def document_lock(path: Path) -> threading.RLock:
    key = Path(path).resolve()
    with _document_locks_guard:
        lock = _document_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _document_locks[key] = lock
        return lock


def read_json_document(path: Path) -> Optional[Any]:
    """Return the parsed document, or ``None`` when absent or unreadable."""

    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError) as error:
        logger.warning(
            "document_read_failed path=%s error=%s - treating as empty",
            path,
            error,
        )
        return None


def write_json_document(path: Path, payload: Any) -> None:
    """Write *payload* to a temporary file and atomically swap it into place."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        # Atomic rename on POSIX systems (overwrites destination)
        temp_path.replace(path)
    except (OSError, TypeError, ValueError) as error:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        logger.error("document_write_failed path=%s error=%s", path, error)
        raise StorageIOError(f"Could not write {path.name}: {error}") from error


@dataclass
class FileRecord:
    file_name: str
    file_path: str
    upload_time: datetime
    expiry_time: Optional[datetime] = None
    file_size: int = 0
    owner: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiry_time is None:
            return False
        return self.expiry_time <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileName": self.file_name,
            "filePath": self.file_path,
            "uploadTime": isoformat_utc(self.upload_time),
            "expiryTime": isoformat_utc(self.expiry_time) if self.expiry_time else None,
            "fileSize": int(self.file_size),
            "owner": self.owner,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        if not isinstance(data, dict) or not data.get("fileName"):
            raise ValueError("file record requires a fileName")
        upload_time = parse_utc(data.get("uploadTime")) or utcnow()
        return cls(
            file_name=str(data["fileName"]),
            file_path=str(data.get("filePath") or ""),
            upload_time=upload_time,
            expiry_time=parse_utc(data.get("expiryTime")),
            file_size=int(data.get("fileSize") or 0),
            owner=data.get("owner") or None,
        )


class MetadataStore:
    """Durable ``fileName -> FileRecord`` mapping kept in one JSON document.

    Every read-modify-write goes through :meth:`transaction`, which holds the
    document lock from load to save so concurrent requests cannot lose each
    other's updates.
    """

    def __init__(self, path: Path = FILE_INFO_PATH) -> None:
        self.path = Path(path)
        self._lock = document_lock(self.path)

    def load(self) -> List[FileRecord]:
        raw = read_json_document(self.path)
        if not isinstance(raw, list):
            return []
        records: List[FileRecord] = []
        for entry in raw:
            try:
                records.append(FileRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as error:
                logger.warning(
                    "file_record_skipped path=%s error=%s", self.path, error
                )
        return records

    def save(self, records: Iterable[FileRecord]) -> None:
        with self._lock:
            write_json_document(self.path, [record.to_dict() for record in records])

    @contextmanager
    def transaction(self) -> Iterator[List[FileRecord]]:
        with self._lock:
            records = self.load()
            yield records
            self.save(records)

    def get(self, file_name: str) -> Optional[FileRecord]:
        for record in self.load():
            if record.file_name == file_name:
                return record
        return None

    def upsert(self, record: FileRecord) -> Optional[FileRecord]:
        """Store *record*, replacing any record with the same name."""

        replaced = None
        with self.transaction() as records:
            for index, existing in enumerate(records):
                if existing.file_name == record.file_name:
                    replaced = existing
                    records[index] = record
                    break
            else:
                records.append(record)
        return replaced

    def remove(self, file_name: str) -> Optional[FileRecord]:
        with self.transaction() as records:
            for index, existing in enumerate(records):
                if existing.file_name == file_name:
                    return records.pop(index)
        return None

    def rename(self, old_name: str, new_name: str, new_path: str) -> Optional[FileRecord]:
        """Rename a record in place; refuses when *new_name* is already taken."""

        with self.transaction() as records:
            if new_name != old_name and any(
                record.file_name == new_name for record in records
            ):
                raise ConflictError(f"A file named '{new_name}' already exists")
            for record in records:
                if record.file_name == old_name:
                    record.file_name = new_name
                    record.file_path = new_path
                    return record
        return None

    def clear(self) -> int:
        with self._lock:
            count = len(self.load())
            self.save([])
        return count


ROLE_ADMIN = "Admin"
ROLE_CONTRIBUTOR = "Contributor"
ROLE_VIEWER = "Viewer"
ALL_ROLES = (ROLE_ADMIN, ROLE_CONTRIBUTOR, ROLE_VIEWER)

PASSWORD_LENGTH = 32
_PASSWORD_ALPHABET = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*"
)


def generate_random_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


@dataclass
class UserRecord:
    username: str
    password_hash: str
    role: str
    owned_files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "passwordHash": self.password_hash,
            "role": self.role,
            "ownedFiles": list(self.owned_files),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRecord":
        if not isinstance(data, dict) or not data.get("username"):
            raise ValueError("user record requires a username")
        password_hash = data.get("passwordHash")
        if not password_hash and data.get("password"):
            password_hash = generate_password_hash(str(data["password"]))
        role = data.get("role")
        if role not in ALL_ROLES:
            role = ROLE_VIEWER
        owned: List[str] = []
        for entry in data.get("ownedFiles") or []:
            if isinstance(entry, str) and entry not in owned:
                owned.append(entry)
        return cls(
            username=str(data["username"]),
            password_hash=str(password_hash or ""),
            role=role,
            owned_files=owned,
        )


class OwnershipStore:
    """Durable ``username -> owned file paths`` mapping plus user accounts."""

    def __init__(self, path: Path = USER_INFO_PATH) -> None:
        self.path = Path(path)
        self._lock = document_lock(self.path)
        self._users: List[UserRecord] = []
        self._signature: Optional[Tuple[int, int]] = None
        with self._lock:
            self._refresh()

    def _current_signature(self) -> Optional[Tuple[int, int]]:
        try:
            stat = self.path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def _refresh(self) -> List[UserRecord]:
        signature = self._current_signature()
        if signature is not None and signature == self._signature:
            return self._users
        raw = read_json_document(self.path)
        users: List[UserRecord] = []
        if isinstance(raw, list):
            for entry in raw:
                try:
                    users.append(UserRecord.from_dict(entry))
                except (KeyError, TypeError, ValueError) as error:
                    logger.warning(
                        "user_record_skipped path=%s error=%s", self.path, error
                    )
        self._users = users
        self._signature = signature
        return users

    def _save(self, users: List[UserRecord]) -> None:
        write_json_document(self.path, [user.to_dict() for user in users])
        self._users = users
        self._signature = self._current_signature()

    @contextmanager
    def _mutation(self) -> Iterator[List[UserRecord]]:
        with self._lock:
            # Force a re-read so the mutation starts from the latest save.
            self._signature = None
            users = self._refresh()
            yield users
            self._save(users)

    def _find(self, users: Iterable[UserRecord], username: str) -> Optional[UserRecord]:
        wanted = (username or "").lower()
        for user in users:
            if user.username.lower() == wanted:
                return user
        return None

    def get_all_users(self) -> List[UserRecord]:
        with self._lock:
            return list(self._refresh())

    def get_user(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            return self._find(self._refresh(), username)

    def save_users(self, users: Iterable[UserRecord]) -> None:
        with self._lock:
            self._save(list(users))

    def add_user(self, username: str, password: str, role: str) -> UserRecord:
        if not username or not username.strip():
            raise ValueError("Username cannot be empty")
        if role not in ALL_ROLES:
            raise ValueError(f"Unknown role '{role}'")
        with self._mutation() as users:
            if self._find(users, username):
                raise ValueError(f"Username '{username}' already exists")
            user = UserRecord(
                username=username.strip(),
                password_hash=generate_password_hash(password),
                role=role,
            )
            users.append(user)
        logger.info("user_added username=%s role=%s", sanitize_log_value(username), role)
        return user

    def validate_user(self, username: str, password: str) -> bool:
        user = self.get_user(username)
        if user is None or not user.password_hash:
            return False
        return check_password_hash(user.password_hash, password)

    def ensure_default_users(self) -> Dict[str, str]:
        """Create the admin, contributor and viewer accounts when missing."""

        created: Dict[str, str] = {}
        defaults = (
            ("admin", ROLE_ADMIN, os.environ.get("FILESERVICE_ADMIN_PASSWORD")),
            ("contributor", ROLE_CONTRIBUTOR, None),
            ("viewer", ROLE_VIEWER, None),
        )
        for username, role, configured_password in defaults:
            if self.get_user(username) is not None:
                continue
            password = configured_password or generate_random_password()
            try:
                self.add_user(username, password, role)
            except ValueError:
                continue
            created[username] = password
            if configured_password:
                logger.info("default_user_created username=%s role=%s", username, role)
            else:
                logger.warning(
                    "default_user_created username=%s role=%s password=%s",
                    username,
                    role,
                    password,
                )
        return created

    def is_file_owner(self, username: str, file_path: str) -> bool:
        user = self.get_user(username)
        return bool(user and file_path in user.owned_files)

    def add_file_to_user(self, username: str, file_path: str) -> bool:
        with self._lock:
            user = self._find(self._refresh(), username)
            if user is None or file_path in user.owned_files:
                return False
            with self._mutation() as users:
                user = self._find(users, username)
                if user is None or file_path in user.owned_files:
                    return False
                user.owned_files.append(file_path)
        return True

    def remove_file_from_user(self, file_path: str) -> int:
        """Drop *file_path* from every user; returns how many users held it."""

        with self._lock:
            if not any(file_path in user.owned_files for user in self._refresh()):
                return 0
            removed = 0
            with self._mutation() as users:
                for user in users:
                    if file_path in user.owned_files:
                        user.owned_files = [
                            entry for entry in user.owned_files if entry != file_path
                        ]
                        removed += 1
        return removed

    def update_file_path(self, old_path: str, new_path: str) -> int:
        with self._lock:
            if not any(old_path in user.owned_files for user in self._refresh()):
                return 0
            updated = 0
            with self._mutation() as users:
                for user in users:
                    if old_path not in user.owned_files:
                        continue
                    rewritten: List[str] = []
                    for entry in user.owned_files:
                        value = new_path if entry == old_path else entry
                        if value not in rewritten:
                            rewritten.append(value)
                    user.owned_files = rewritten
                    updated += 1
        return updated

    def clear_owned_files(self) -> int:
        with self._mutation() as users:
            cleared = sum(len(user.owned_files) for user in users)
            for user in users:
                user.owned_files = []
        return cleared


class MetricsCounter:
    """Monotonic upload/download/delete counters persisted on every change."""

    _KEYS = ("uploadCount", "downloadCount", "deleteCount")

    def __init__(self, path: Path = METRICS_PATH) -> None:
        self.path = Path(path)
        self._lock = document_lock(self.path)
        self._counts = {key: 0 for key in self._KEYS}
        self._last_updated: Optional[datetime] = None
        raw = read_json_document(self.path)
        if isinstance(raw, dict):
            for key in self._KEYS:
                try:
                    self._counts[key] = max(0, int(raw.get(key) or 0))
                except (TypeError, ValueError):
                    self._counts[key] = 0
            try:
                self._last_updated = parse_utc(raw.get("lastUpdated"))
            except (TypeError, ValueError):
                self._last_updated = None

    @property
    def upload_count(self) -> int:
        return self._counts["uploadCount"]

    @property
    def download_count(self) -> int:
        return self._counts["downloadCount"]

    @property
    def delete_count(self) -> int:
        return self._counts["deleteCount"]

    @property
    def last_updated(self) -> Optional[datetime]:
        return self._last_updated

    def _increment(self, key: str) -> int:
        with self._lock:
            self._counts[key] += 1
            self._last_updated = utcnow()
            value = self._counts[key]
            try:
                write_json_document(self.path, self.snapshot())
            except StorageIOError:
                # Counters stay in memory; the next increment retries the write.
                pass
        return value

    def increment_upload(self) -> int:
        return self._increment("uploadCount")

    def increment_download(self) -> int:
        return self._increment("downloadCount")

    def increment_delete(self) -> int:
        return self._increment("deleteCount")

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            payload: Dict[str, Any] = dict(self._counts)
            payload["lastUpdated"] = (
                isoformat_utc(self._last_updated) if self._last_updated else None
            )
            return payload


@dataclass(frozen=True)
class QuotaConfig:
    max_disk_space_gb: int = 100
    max_file_size_mb: int = 100
    warning_threshold_percent: int = 90
    critical_threshold_percent: int = 99

    @property
    def max_disk_space_bytes(self) -> int:
        return self.max_disk_space_gb * BYTES_PER_GB

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * BYTES_PER_MB


def load_quota_config() -> QuotaConfig:
    warning = min(100, _safe_int_env("FILESERVICE_WARNING_THRESHOLD_PERCENT", 90))
    critical = min(100, _safe_int_env("FILESERVICE_CRITICAL_THRESHOLD_PERCENT", 99))
    if critical < warning:
        critical = warning
    return QuotaConfig(
        max_disk_space_gb=_safe_int_env("FILESERVICE_MAX_DISK_SPACE_GB", 100),
        max_file_size_mb=_safe_int_env("FILESERVICE_MAX_FILE_SIZE_MB", 100),
        warning_threshold_percent=warning,
        critical_threshold_percent=critical,
    )


@dataclass
class SpaceInfo:
    total: int
    used: int

    @property
    def free(self) -> int:
        return max(0, self.total - self.used)

    @property
    def used_percent(self) -> float:
        if self.total <= 0:
            return 100.0 if self.used else 0.0
        return self.used / self.total * 100


def current_used_space(uploads_dir: Path) -> int:
    """Sum the on-disk size of every file in *uploads_dir*, re-stat'ed now."""

    total = 0
    try:
        entries = list(os.scandir(uploads_dir))
    except OSError:
        return 0
    for entry in entries:
        try:
            if entry.is_file(follow_symlinks=False):
                total += entry.stat(follow_symlinks=False).st_size
        except OSError:
            # Removed between listing and stat.
            continue
    return total


def compute_usage(uploads_dir: Path, ceiling_bytes: int) -> SpaceInfo:
    return SpaceInfo(total=int(ceiling_bytes), used=current_used_space(uploads_dir))


def classify_usage(used_percent: float, config: QuotaConfig) -> str:
    if used_percent >= config.critical_threshold_percent:
        return "critical"
    if used_percent >= config.warning_threshold_percent:
        return "warning"
    return "normal"


_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_bytes(num: int) -> str:
    """Render *num* bytes with 1024-based units and one decimal place."""

    value = float(num)
    unit = 0
    while round(value / 1024) >= 1 and unit < len(_BYTE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:,.1f} {_BYTE_UNITS[unit]}"
