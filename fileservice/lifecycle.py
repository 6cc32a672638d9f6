"""
File lifecycle engine: admission control, durable metadata, ownership
reconciliation and the expiry/cleanup passes run by the job scheduler.

The web layer hands in plain values (names, byte streams, an ``Identity``) and
gets back records, reports, or a :class:`~fileservice.errors.FileServiceError`.
"""
import hashlib
import io
import logging
import math
import mimetypes
import os
import threading
import time
import uuid
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
)
from urllib.parse import quote

from .errors import (
    ConflictError,
    FileServiceError,
    FileTooLargeError,
    ForbiddenError,
    JobExecutionError,
    NotFoundError,
    QuotaExceededError,
    StorageIOError,
    UnsafeFileTypeError,
    ValidationError,
)
from .storage import (
    ROLE_ADMIN,
    ROLE_CONTRIBUTOR,
    FileRecord,
    MetadataStore,
    MetricsCounter,
    OwnershipStore,
    QuotaConfig,
    classify_usage,
    compute_usage,
    current_used_space,
    format_bytes,
    isoformat_utc,
    sanitize_log_value,
    utcnow,
)

if TYPE_CHECKING:
    from .jobs import ExpiryScheduler

logger = logging.getLogger("fileservice.lifecycle")

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
MAX_FILENAME_LENGTH = 255
MAX_PAGE_SIZE = 200
PAGE_SIZE_OPTIONS = (5, 10, 20, 50)
SORT_FIELDS = {"name", "size", "uploaded_at", "expires_at"}


ALLOWED_MIME_TYPES = frozenset(
    {
        # Documents
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/plain",
        "text/csv",
        "application/rtf",
        "application/zip",
        "application/x-rar-compressed",
        "application/x-7z-compressed",
        # Images
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/bmp",
        "image/webp",
        "image/svg+xml",
        "image/tiff",
        # Audio
        "audio/mpeg",
        "audio/wav",
        "audio/ogg",
        "audio/webm",
        # Video
        "video/mp4",
        "video/webm",
        "video/ogg",
        "video/quicktime",
        # Text and code formats
        "application/json",
        "text/html",
        "text/css",
        "application/javascript",
        "application/xml",
        "text/xml",
    }
)

RISKY_MIME_TYPES = frozenset(
    {
        "application/x-msdownload",
        "application/x-ms-installer",
        "application/x-sh",
        "application/x-csh",
        "application/x-bat",
        "application/x-cmd",
        "application/java-archive",
        "application/x-javascript",
        "application/vnd.microsoft.portable-executable",
        "application/x-dosexec",
        "application/vnd.apple.installer+xml",
        "application/vnd.ms-cab-compressed",
        "application/x-httpd-php",
        "text/x-php",
        "application/x-perl",
        "application/x-python",
        "application/x-ruby",
    }
)

RISKY_EXTENSIONS = frozenset(
    {
        ".exe", ".msi", ".bat", ".cmd", ".sh", ".ps1",
        ".php", ".jar", ".dll", ".com", ".vbs", ".js",
        ".py", ".pl", ".rb",
    }
)


def normalize_content_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def validate_file_type(file_name: str, content_type: Optional[str]) -> Tuple[bool, str]:
    """Check the extension deny-list, then the MIME deny-list, then the allow-list."""

    extension = os.path.splitext(file_name)[1].lower()
    if extension and extension in RISKY_EXTENSIONS:
        return False, f"File with extension '{extension}' is not allowed for security reasons"

    declared = normalize_content_type(content_type)
    if declared in RISKY_MIME_TYPES:
        return False, f"File type '{declared}' is not allowed for security reasons"

    if declared in ALLOWED_MIME_TYPES:
        return True, "File type is allowed"

    return False, f"Unknown file type '{declared or 'unspecified'}' is not allowed"


def validate_filename(filename: str) -> Tuple[bool, Optional[str]]:
    """Validate filenames for length and disallowed characters."""

    if not filename or not filename.strip():
        return False, "Filename cannot be empty"

    if len(filename) > MAX_FILENAME_LENGTH:
        return (
            False,
            f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters",
        )

    if "\x00" in filename:
        return False, "Filename contains invalid characters"

    if filename in {".", ".."} or "/" in filename or "\\" in filename:
        return False, "Filename cannot contain path separators"

    return True, None


def clean_upload_name(raw_name: str) -> str:
    """Strip any client-side directory components from an uploaded name."""

    base_name = (raw_name or "").strip().replace("\\", "/")
    return os.path.basename(base_name)


class ExpiryOption(str, Enum):
    NEVER = "Never"
    ONE_MINUTE = "OneMinute"
    ONE_HOUR = "OneHour"
    ONE_DAY = "OneDay"
    ONE_WEEK = "OneWeek"


EXPIRY_DURATIONS: Dict[ExpiryOption, Optional[timedelta]] = {
    ExpiryOption.NEVER: None,
    ExpiryOption.ONE_MINUTE: timedelta(minutes=1),
    ExpiryOption.ONE_HOUR: timedelta(hours=1),
    ExpiryOption.ONE_DAY: timedelta(days=1),
    ExpiryOption.ONE_WEEK: timedelta(weeks=1),
}

EXPIRY_LABELS: Dict[ExpiryOption, str] = {
    ExpiryOption.NEVER: "Never",
    ExpiryOption.ONE_MINUTE: "1 Minute",
    ExpiryOption.ONE_HOUR: "1 Hour",
    ExpiryOption.ONE_DAY: "1 Day",
    ExpiryOption.ONE_WEEK: "1 Week",
}

_EXPIRY_ORDINALS = list(ExpiryOption)


def parse_expiry_option(value: object) -> ExpiryOption:
    """Accept an option name, its display label, or its ordinal (0-4)."""

    if value is None or value == "":
        return ExpiryOption.NEVER
    if isinstance(value, ExpiryOption):
        return value
    text = str(value).strip()
    if text.isdigit():
        index = int(text)
        if 0 <= index < len(_EXPIRY_ORDINALS):
            return _EXPIRY_ORDINALS[index]
    wanted = text.replace(" ", "").replace("_", "").lower()
    for option in ExpiryOption:
        aliases = {
            option.value.lower(),
            option.name.replace("_", "").lower(),
            EXPIRY_LABELS[option].replace(" ", "").lower(),
        }
        if wanted in aliases:
            return option
    raise ValidationError(
        f"Unknown expiry option '{text}'. Allowed: "
        + ", ".join(option.value for option in ExpiryOption)
    )


def compute_expiry(option: ExpiryOption, upload_time: datetime) -> Optional[datetime]:
    duration = EXPIRY_DURATIONS[option]
    if duration is None:
        return None
    return upload_time + duration


@dataclass(frozen=True)
class Identity:
    username: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def can_write(self) -> bool:
        return self.role in {ROLE_ADMIN, ROLE_CONTRIBUTOR}


@dataclass
class UploadCandidate:
    name: str
    size: int
    content_type: Optional[str]
    stream: BinaryIO


@dataclass
class UploadResult:
    stored: List[FileRecord] = field(default_factory=list)
    error: Optional[FileServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def stored_count(self) -> int:
        return len(self.stored)


@dataclass
class CleanupReport:
    job: str
    deleted: List[str] = field(default_factory=list)
    failures: List[JobExecutionError] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    aborted: Optional[str] = None

    @property
    def success_count(self) -> int:
        return len(self.deleted)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, object]:
        return {
            "job": self.job,
            "deleted": list(self.deleted),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "failures": [failure.to_payload() for failure in self.failures],
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "aborted": self.aborted,
        }


@dataclass
class FilePage:
    items: List[Dict[str, object]]
    total_items: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_items / self.page_size)) if self.total_items else 1

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    def to_dict(self) -> Dict[str, object]:
        return {
            "files": self.items,
            "total_items": self.total_items,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "has_previous_page": self.has_previous_page,
            "has_next_page": self.has_next_page,
            "page_size_options": list(PAGE_SIZE_OPTIONS),
        }


def default_download_url(file_name: str) -> str:
    return f"/File/DownloadFile?filename={quote(file_name)}"


class FileLifecycle:
    def __init__(
        self,
        uploads_dir: Path,
        quota: QuotaConfig,
        metadata: MetadataStore,
        ownership: OwnershipStore,
        metrics: MetricsCounter,
        scheduler: Optional["ExpiryScheduler"] = None,
    ) -> None:
        self.uploads_dir = Path(uploads_dir)
        self.quota = quota
        self.metadata = metadata
        self.ownership = ownership
        self.metrics = metrics
        self.scheduler = scheduler
        self._write_lock = threading.RLock()

    # -- paths -----------------------------------------------------------

    def _path_for(self, file_name: str) -> Path:
        is_valid, error = validate_filename(file_name)
        if not is_valid:
            raise ValidationError(error or "Invalid filename")
        return self.uploads_dir / file_name

    def _require_record_or_file(self, file_name: str) -> Tuple[Path, Optional[FileRecord]]:
        path = self._path_for(file_name)
        record = self.metadata.get(file_name)
        if record is None and not path.is_file():
            raise NotFoundError(f"File '{file_name}' not found")
        return path, record

    def _authorize_owner(self, identity: Optional[Identity], path: Path, record: Optional[FileRecord]) -> None:
        if identity is None:
            raise ForbiddenError("Authentication is required")
        if identity.is_admin:
            return
        owns = self.ownership.is_file_owner(identity.username, str(path))
        if not owns and record is not None and record.owner:
            owns = record.owner.lower() == identity.username.lower()
        if not owns:
            raise ForbiddenError(
                f"User '{identity.username}' does not own '{path.name}'"
            )

    # -- quota -----------------------------------------------------------

    def get_available_space(self) -> Dict[str, object]:
        info = compute_usage(self.uploads_dir, self.quota.max_disk_space_bytes)
        used_percent = info.used_percent
        return {
            "total": info.total,
            "free": info.free,
            "used": info.used,
            "used_percent": round(used_percent, 2),
            "status": classify_usage(used_percent, self.quota),
            "total_formatted": format_bytes(info.total),
            "free_formatted": format_bytes(info.free),
            "used_formatted": format_bytes(info.used),
        }

    def _enforce_quota(self, size: int) -> int:
        current_usage = current_used_space(self.uploads_dir)
        limit = self.quota.max_disk_space_bytes
        if current_usage + size > limit:
            raise QuotaExceededError(current_usage, size, limit)
        return current_usage

    # -- upload ------------------------------------------------------------

    def _admit(self, candidate: UploadCandidate, file_name: str) -> int:
        """Check size, type and quota; returns the usage the quota was checked against.

        Callers hold ``_write_lock`` until the bytes are written.
        """

        max_bytes = self.quota.max_file_size_bytes
        if candidate.size > max_bytes:
            raise FileTooLargeError(file_name, candidate.size, max_bytes)

        is_valid, detail = validate_file_type(file_name, candidate.content_type)
        if not is_valid:
            raise UnsafeFileTypeError(file_name, candidate.content_type, detail)

        return self._enforce_quota(candidate.size)

    def _discard(self, target: Path) -> None:
        try:
            target.unlink(missing_ok=True)
        except OSError as error:
            logger.error(
                "rollback_failed filename=%s error=%s",
                sanitize_log_value(target.name),
                error,
            )
            return
        logger.warning("write_rolled_back filename=%s", sanitize_log_value(target.name))

    def _write_stream(
        self,
        stream: BinaryIO,
        target: Path,
        file_name: str,
        max_bytes: Optional[int] = None,
        quota_usage: Optional[int] = None,
    ) -> int:
        """Copy *stream* into *target* through a temp file.

        The declared size is not trusted: the write stops once it passes
        *max_bytes*, or once ``quota_usage`` plus the bytes written passes the
        disk ceiling.
        """

        limit = self.quota.max_disk_space_bytes
        temp_path = target.with_name(f".upload-{uuid.uuid4().hex}.tmp")
        written = 0
        try:
            if hasattr(stream, "seek"):
                try:
                    stream.seek(0)
                except (OSError, ValueError):
                    pass
            with temp_path.open("wb") as destination:
                while True:
                    chunk = stream.read(CHUNK_SIZE_BYTES)
                    if not chunk:
                        break
                    if max_bytes is not None and written + len(chunk) > max_bytes:
                        raise FileTooLargeError(file_name, written + len(chunk), max_bytes)
                    if quota_usage is not None and quota_usage + written + len(chunk) > limit:
                        raise QuotaExceededError(quota_usage, written + len(chunk), limit)
                    destination.write(chunk)
                    written += len(chunk)
            temp_path.replace(target)
            os.utime(target, None)
        except (FileTooLargeError, QuotaExceededError):
            temp_path.unlink(missing_ok=True)
            raise
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            logger.error(
                "file_write_failed filename=%s error=%s",
                sanitize_log_value(file_name),
                error,
            )
            raise StorageIOError(f"Could not store '{file_name}': {error}") from error
        return written

    def upload(
        self,
        files: Iterable[UploadCandidate],
        expiry_option: object = ExpiryOption.NEVER,
        identity: Optional[Identity] = None,
    ) -> UploadResult:
        """Store each file in order; the first rejection stops the batch.

        Files written before the failing one stay written.
        """

        result = UploadResult()
        try:
            option = parse_expiry_option(expiry_option)
        except ValidationError as error:
            result.error = error
            return result

        candidates = list(files)
        if not candidates:
            result.error = ValidationError("No files uploaded.")
            return result

        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        for candidate in candidates:
            file_name = clean_upload_name(candidate.name)
            try:
                target = self._path_for(file_name)
                with self._write_lock:
                    current_usage = self._admit(candidate, file_name)
                    size = self._write_stream(
                        candidate.stream,
                        target,
                        file_name,
                        max_bytes=self.quota.max_file_size_bytes,
                        quota_usage=current_usage,
                    )
                record = self._register(file_name, target, size, option, identity)
            except FileServiceError as error:
                logger.warning(
                    "upload_rejected filename=%s reason=%s detail=%s",
                    sanitize_log_value(file_name),
                    error.reason,
                    sanitize_log_value(str(error)),
                )
                result.error = error
                return result
            result.stored.append(record)
        return result

    def _register(
        self,
        file_name: str,
        target: Path,
        size: int,
        option: ExpiryOption,
        identity: Optional[Identity],
    ) -> FileRecord:
        upload_time = utcnow()
        record = FileRecord(
            file_name=file_name,
            file_path=str(target),
            upload_time=upload_time,
            expiry_time=compute_expiry(option, upload_time),
            file_size=size,
            owner=identity.username if identity else None,
        )
        try:
            replaced = self.metadata.upsert(record)
        except StorageIOError:
            self._discard(target)
            raise
        if replaced is not None:
            logger.info(
                "file_overwritten filename=%s previous_owner=%s",
                sanitize_log_value(file_name),
                sanitize_log_value(replaced.owner),
            )
            if replaced.expiry_time is not None and record.expiry_time is None:
                self._cancel_expiry(file_name)
        if record.expiry_time is not None:
            self._schedule_expiry(file_name, record.expiry_time)
        if identity is not None:
            self.ownership.add_file_to_user(identity.username, record.file_path)
        self.metrics.increment_upload()
        logger.info(
            "file_uploaded filename=%s size=%d owner=%s expiry=%s",
            sanitize_log_value(file_name),
            size,
            sanitize_log_value(record.owner),
            option.value,
        )
        return record

    def _schedule_expiry(self, file_name: str, when: datetime) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.schedule_expiry(file_name, when)
        except Exception:
            logger.exception(
                "expiry_schedule_failed filename=%s", sanitize_log_value(file_name)
            )

    def _cancel_expiry(self, file_name: str) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.cancel_expiry(file_name)
        except Exception:
            logger.exception(
                "expiry_cancel_failed filename=%s", sanitize_log_value(file_name)
            )

    def _cancel_all_expiries(self) -> None:
        if self.scheduler is None:
            return
        try:
            cancelled = self.scheduler.cancel_all()
        except Exception:
            logger.exception("expiry_cancel_all_failed")
            return
        logger.info("expiry_jobs_cancelled count=%s", cancelled)

    # -- queries -----------------------------------------------------------

    def record_view(
        self,
        record: FileRecord,
        download_url: Callable[[str], str] = default_download_url,
    ) -> Dict[str, object]:
        view = record.to_dict()
        view["fileSizeFormatted"] = format_bytes(record.file_size)
        view["downloadUri"] = download_url(record.file_name)
        if record.expiry_time is not None:
            remaining = (record.expiry_time - utcnow()).total_seconds()
            view["remainingSeconds"] = max(int(remaining), 0)
        else:
            view["remainingSeconds"] = None
        return view

    def list_files(
        self,
        sort_by: str = "uploaded_at",
        sort_order: str = "desc",
        page: int = 1,
        page_size: int = 10,
        include_expired: bool = False,
        download_url: Callable[[str], str] = default_download_url,
    ) -> FilePage:
        now = utcnow()
        records = [
            record
            for record in self.metadata.load()
            if include_expired or not record.is_expired(now)
        ]

        if sort_by not in SORT_FIELDS:
            sort_by = "uploaded_at"
        reverse = (sort_order or "desc").lower() != "asc"
        sort_keys = {
            "name": lambda record: record.file_name.lower(),
            "size": lambda record: record.file_size,
            "uploaded_at": lambda record: record.upload_time,
            "expires_at": lambda record: (
                record.expiry_time is None,
                record.expiry_time or now,
            ),
        }
        records.sort(key=sort_keys[sort_by], reverse=reverse)

        try:
            page_size = int(page_size)
        except (TypeError, ValueError):
            page_size = 10
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        try:
            page = int(page)
        except (TypeError, ValueError):
            page = 1
        total = len(records)
        total_pages = max(1, math.ceil(total / page_size)) if total else 1
        page = min(max(page, 1), total_pages)

        start = (page - 1) * page_size
        items = [
            self.record_view(record, download_url)
            for record in records[start:start + page_size]
        ]
        return FilePage(items=items, total_items=total, page=page, page_size=page_size)

    def _readable_path(self, file_name: str) -> Path:
        path = self._path_for(file_name)
        record = self.metadata.get(file_name)
        if record is not None and record.is_expired():
            logger.info(
                "file_download_blocked_expired filename=%s",
                sanitize_log_value(file_name),
            )
            raise NotFoundError(f"File '{file_name}' has expired")
        if not path.is_file():
            raise NotFoundError(f"File '{file_name}' not found")
        return path

    def download_file(self, file_name: str) -> BinaryIO:
        path = self._readable_path(file_name)
        try:
            stream = path.open("rb")
        except FileNotFoundError as error:
            raise NotFoundError(f"File '{file_name}' not found") from error
        self.metrics.increment_download()
        logger.info("file_downloaded filename=%s", sanitize_log_value(file_name))
        return stream

    def view_file(self, file_name: str) -> Tuple[BinaryIO, str]:
        path = self._readable_path(file_name)
        mime_type, _ = mimetypes.guess_type(path.name)
        try:
            stream = path.open("rb")
        except FileNotFoundError as error:
            raise NotFoundError(f"File '{file_name}' not found") from error
        return stream, mime_type or "application/octet-stream"

    def get_checksum(self, file_name: str) -> str:
        path = self._readable_path(file_name)
        digest = hashlib.sha256()
        try:
            with path.open("rb") as handle:
                for chunk in iter(lambda: handle.read(CHUNK_SIZE_BYTES), b""):
                    digest.update(chunk)
        except FileNotFoundError as error:
            raise NotFoundError(f"File '{file_name}' not found") from error
        return digest.hexdigest()

    def build_zip(self, file_names: Iterable[str]) -> io.BytesIO:
        names = [name.strip() for name in file_names if name and name.strip()]
        if not names:
            raise ValidationError("No filenames provided.")
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for name in names:
                try:
                    path = self._readable_path(name)
                except (NotFoundError, ValidationError):
                    logger.info("zip_entry_skipped filename=%s", sanitize_log_value(name))
                    continue
                archive.write(path, arcname=name)
        buffer.seek(0)
        return buffer

    # -- mutations -----------------------------------------------------------

    def delete_file(self, file_name: str, identity: Optional[Identity]) -> FileRecord:
        path, record = self._require_record_or_file(file_name)
        self._authorize_owner(identity, path, record)

        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning(
                "file_delete_disk_failed filename=%s error=%s",
                sanitize_log_value(file_name),
                error,
            )
            raise StorageIOError(f"Could not delete '{file_name}': {error}") from error

        removed = self.metadata.remove(file_name)
        self.ownership.remove_file_from_user(str(path))
        if removed is not None and removed.file_path and removed.file_path != str(path):
            self.ownership.remove_file_from_user(removed.file_path)
        self._cancel_expiry(file_name)
        self.metrics.increment_delete()
        logger.info(
            "file_deleted filename=%s user=%s",
            sanitize_log_value(file_name),
            sanitize_log_value(identity.username if identity else None),
        )
        if removed is None:
            removed = FileRecord(
                file_name=file_name,
                file_path=str(path),
                upload_time=utcnow(),
            )
        return removed

    def rename_file(self, old_name: str, new_name: str, identity: Optional[Identity]) -> FileRecord:
        new_name = (new_name or "").strip()
        is_valid, error = validate_filename(new_name)
        if not is_valid:
            raise ValidationError(error or "Invalid filename")

        old_path, record = self._require_record_or_file(old_name)
        self._authorize_owner(identity, old_path, record)

        old_extension = os.path.splitext(old_name)[1].lower()
        new_extension = os.path.splitext(new_name)[1].lower()
        if old_extension != new_extension:
            raise ValidationError(
                f"Changing the file extension from '{old_extension or '(none)'}' "
                f"to '{new_extension or '(none)'}' is not allowed"
            )

        new_path = self.uploads_dir / new_name
        if new_name == old_name:
            return record or FileRecord(old_name, str(old_path), utcnow())

        # Conflict check, move and record update happen as one step.
        with self._write_lock:
            if new_path.exists() or self.metadata.get(new_name) is not None:
                raise ConflictError(f"A file named '{new_name}' already exists")
            if not old_path.exists():
                raise NotFoundError(f"File '{old_name}' not found")

            try:
                os.replace(old_path, new_path)
            except OSError as error:
                logger.warning(
                    "file_rename_disk_failed old=%s new=%s error=%s",
                    sanitize_log_value(old_name),
                    sanitize_log_value(new_name),
                    error,
                )
                raise StorageIOError(f"Could not rename '{old_name}': {error}") from error

            try:
                updated = self.metadata.rename(old_name, new_name, str(new_path))
            except (ConflictError, StorageIOError):
                os.replace(new_path, old_path)
                raise
        self.ownership.update_file_path(str(old_path), str(new_path))
        if record is not None and record.file_path and record.file_path != str(old_path):
            self.ownership.update_file_path(record.file_path, str(new_path))
        if updated is not None and updated.expiry_time is not None:
            self._cancel_expiry(old_name)
            self._schedule_expiry(new_name, updated.expiry_time)
        logger.info(
            "file_renamed old=%s new=%s user=%s",
            sanitize_log_value(old_name),
            sanitize_log_value(new_name),
            sanitize_log_value(identity.username if identity else None),
        )
        return updated or FileRecord(new_name, str(new_path), utcnow())

    def _copy_name(self, file_name: str) -> str:
        stem, extension = os.path.splitext(file_name)
        candidate = f"{stem} - Copy{extension}"
        counter = 2
        while (self.uploads_dir / candidate).exists() or self.metadata.get(candidate):
            candidate = f"{stem} - Copy ({counter}){extension}"
            counter += 1
        return candidate

    def copy_file(self, file_name: str, identity: Optional[Identity]) -> FileRecord:
        source_path, source = self._require_record_or_file(file_name)
        if identity is None or not identity.can_write:
            raise ForbiddenError("Only administrators and contributors can copy files")
        if not source_path.is_file():
            raise NotFoundError(f"File '{file_name}' not found")

        size = source_path.stat().st_size
        with self._write_lock:
            current_usage = self._enforce_quota(size)
            new_name = self._copy_name(file_name)
            new_path = self.uploads_dir / new_name
            with source_path.open("rb") as reader:
                written = self._write_stream(
                    reader, new_path, new_name, quota_usage=current_usage
                )

        record = FileRecord(
            file_name=new_name,
            file_path=str(new_path),
            upload_time=utcnow(),
            expiry_time=source.expiry_time if source else None,
            file_size=written,
            owner=identity.username,
        )
        try:
            self.metadata.upsert(record)
        except StorageIOError:
            self._discard(new_path)
            raise
        if record.expiry_time is not None:
            self._schedule_expiry(new_name, record.expiry_time)
        self.ownership.add_file_to_user(identity.username, record.file_path)
        logger.info(
            "file_copied source=%s copy=%s user=%s",
            sanitize_log_value(file_name),
            sanitize_log_value(new_name),
            sanitize_log_value(identity.username),
        )
        return record

    # -- background passes ---------------------------------------------------

    def delete_expired_files(self, now: Optional[datetime] = None) -> CleanupReport:
        """Remove every record whose expiry has passed, with its bytes and owners.

        A record whose bytes cannot be deleted stays in place and is retried on
        the next pass; a record whose bytes are already gone is dropped.
        """

        started = time.monotonic()
        now = now or utcnow()
        report = CleanupReport(job="expiry")
        removed: List[FileRecord] = []
        expired: List[FileRecord] = []

        try:
            self._purge_expired(now, report, expired, removed)
            for record in removed:
                self.ownership.remove_file_from_user(record.file_path)
        except StorageIOError as error:
            # Bytes already unlinked are dropped from the records on the next pass.
            report.aborted = str(error)
            logger.error("expiry_cleanup_aborted reason=metadata_write_failed error=%s", error)

        for record in removed:
            self._cancel_expiry(record.file_name)

        report.elapsed_seconds = time.monotonic() - started
        if expired:
            logger.info(
                "expiry_cleanup_completed deleted=%d failed=%d elapsed=%.2fs",
                report.success_count,
                report.failure_count,
                report.elapsed_seconds,
            )
        return report

    def _purge_expired(
        self,
        now: datetime,
        report: CleanupReport,
        expired: List[FileRecord],
        removed: List[FileRecord],
    ) -> None:
        with self.metadata.transaction() as records:
            expired.extend(record for record in records if record.is_expired(now))
            if not expired:
                logger.debug("expiry_cleanup_nothing_to_do")
            for record in expired:
                path = self.uploads_dir / record.file_name
                try:
                    path.unlink()
                    report.deleted.append(record.file_name)
                    logger.info(
                        "expired_file_deleted filename=%s expired_at=%s",
                        sanitize_log_value(record.file_name),
                        isoformat_utc(record.expiry_time) if record.expiry_time else None,
                    )
                except FileNotFoundError:
                    report.failures.append(
                        JobExecutionError(record.file_name, "File not found on disk")
                    )
                    logger.warning(
                        "expired_file_missing filename=%s",
                        sanitize_log_value(record.file_name),
                    )
                except OSError as error:
                    report.failures.append(JobExecutionError(record.file_name, str(error)))
                    logger.warning(
                        "expired_file_delete_failed filename=%s error=%s",
                        sanitize_log_value(record.file_name),
                        error,
                    )
                    continue
                removed.append(record)
            if removed:
                removed_names = {record.file_name for record in removed}
                records[:] = [
                    record for record in records if record.file_name not in removed_names
                ]

    def delete_all_files(self) -> CleanupReport:
        """Destructive full reset of metadata, ownership and the uploads directory."""

        started = time.monotonic()
        report = CleanupReport(job="cleanup")
        logger.info("cleanup_started directory=%s", self.uploads_dir)

        if not self.uploads_dir.is_dir():
            report.aborted = f"Directory not found: {self.uploads_dir}"
            report.elapsed_seconds = time.monotonic() - started
            logger.error("cleanup_aborted reason=directory_missing directory=%s", self.uploads_dir)
            return report

        try:
            self.metadata.clear()
            self.ownership.clear_owned_files()
        except StorageIOError as error:
            report.aborted = str(error)
            report.elapsed_seconds = time.monotonic() - started
            logger.error("cleanup_aborted reason=metadata_write_failed error=%s", error)
            return report

        self._cancel_all_expiries()

        entries = sorted(entry for entry in self.uploads_dir.iterdir() if entry.is_file())
        logger.info("cleanup_found count=%d", len(entries))
        for index, entry in enumerate(entries, start=1):
            try:
                entry.unlink()
            except OSError as error:
                report.failures.append(JobExecutionError(entry.name, str(error)))
                logger.warning(
                    "cleanup_file_delete_failed filename=%s error=%s",
                    sanitize_log_value(entry.name),
                    error,
                )
                continue
            report.deleted.append(entry.name)
            logger.info(
                "cleanup_file_deleted filename=%s progress=%d%%",
                sanitize_log_value(entry.name),
                int(index / len(entries) * 100),
            )

        report.elapsed_seconds = time.monotonic() - started
        logger.info(
            "cleanup_completed deleted=%d failed=%d elapsed=%.2fs",
            report.success_count,
            report.failure_count,
            report.elapsed_seconds,
        )
        return report
