import atexit
import logging
import os
import socket
import uuid
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import (
    Flask,
    Response,
    g,
    has_request_context,
    jsonify,
    request,
    send_file,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .errors import FileServiceError, ForbiddenError, NotFoundError, ValidationError
from .jobs import ExpiryScheduler, bind_lifecycle, create_scheduler
from .lifecycle import FileLifecycle, Identity, UploadCandidate
from .storage import (
    ALL_ROLES,
    DATA_DIR,
    FILE_INFO_PATH,
    LOGS_DIR,
    METRICS_PATH,
    ROLE_ADMIN,
    ROLE_CONTRIBUTOR,
    UPLOADS_DIR,
    USER_INFO_PATH,
    MetadataStore,
    MetricsCounter,
    OwnershipStore,
    _safe_int_env,
    ensure_directories,
    load_quota_config,
    sanitize_log_value,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log file
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

http_logger = RequestAwareLogger(logging.getLogger("fileservice.http"))

quota_config = load_quota_config()
metadata_store = MetadataStore(FILE_INFO_PATH)
ownership_store = OwnershipStore(USER_INFO_PATH)
metrics_counter = MetricsCounter(METRICS_PATH)
expiry_scheduler = ExpiryScheduler(create_scheduler())
lifecycle = FileLifecycle(
    UPLOADS_DIR,
    quota_config,
    metadata_store,
    ownership_store,
    metrics_counter,
    expiry_scheduler,
)
bind_lifecycle(lifecycle)

app = Flask(__name__)
app.logger.setLevel(numeric_level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=os.environ.get("FILESERVICE_RATE_LIMIT_STORAGE", "memory://"),
)


def upload_rate_limit_string() -> str:
    value = _safe_int_env("FILESERVICE_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
    return f"{value} per hour"


def download_rate_limit_string() -> str:
    value = _safe_int_env("FILESERVICE_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120)
    return f"{value} per minute"


def _auth_error(message: str = "Authentication required") -> Response:
    response = jsonify({"error": message, "reason": "unauthenticated"})
    response.status_code = 401
    response.headers["WWW-Authenticate"] = 'Basic realm="fileservice"'
    return response


def require_auth(*roles: str):
    """Require HTTP Basic credentials, optionally restricted to *roles*."""

    allowed = set(roles or ALL_ROLES)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            credentials = request.authorization
            if credentials is None or not credentials.username:
                return _auth_error()
            username = credentials.username
            if not ownership_store.validate_user(username, credentials.password or ""):
                http_logger.warning(
                    "auth_failed username=%s", sanitize_log_value(username)
                )
                return _auth_error("Invalid username or password")
            user = ownership_store.get_user(username)
            if user is None:
                return _auth_error("Invalid username or password")
            g.identity = Identity(username=user.username, role=user.role)
            if user.role not in allowed:
                http_logger.warning(
                    "auth_forbidden username=%s role=%s endpoint=%s",
                    sanitize_log_value(user.username),
                    user.role,
                    request.endpoint,
                )
                raise ForbiddenError(f"Role '{user.role}' cannot perform this action")
            return view(*args, **kwargs)

        return wrapped

    return decorator


def current_identity() -> Optional[Identity]:
    return getattr(g, "identity", None)


def _request_value(*keys: str) -> Optional[str]:
    payload = request.get_json(silent=True) if request.is_json else None
    for key in keys:
        if isinstance(payload, dict) and payload.get(key) not in (None, ""):
            return str(payload[key])
        value = request.values.get(key)
        if value not in (None, ""):
            return value
    return None


def _require_filename() -> str:
    file_name = _request_value("filename", "fileName")
    if not file_name:
        raise ValidationError("A filename is required.")
    return file_name


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _stream_size(storage: FileStorage) -> int:
    stream = storage.stream
    try:
        position = stream.tell()
        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(position)
        return size
    except (AttributeError, OSError, ValueError):
        return int(storage.content_length or 0)


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        http_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


def _download_url(file_name: str) -> str:
    return url_for("download_file", filename=file_name)


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    http_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(FileServiceError)
def handle_file_service_error(error: FileServiceError):
    http_logger.info(
        "request_rejected reason=%s status=%d detail=%s",
        error.reason,
        error.status_code,
        sanitize_log_value(str(error)),
    )
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.route("/File/CreateDoc", methods=["POST"])
@limiter.limit(upload_rate_limit_string)
@require_auth(ROLE_ADMIN, ROLE_CONTRIBUTOR)
def create_doc():
    uploads: List[FileStorage] = [
        storage
        for storage in request.files.getlist("files") + request.files.getlist("file")
        if storage and storage.filename
    ]
    candidates = [
        UploadCandidate(
            name=storage.filename or "",
            size=_stream_size(storage),
            content_type=storage.mimetype or storage.content_type,
            stream=storage.stream,
        )
        for storage in uploads
    ]
    try:
        result = lifecycle.upload(
            candidates,
            _request_value("expiry", "expiryOption") or "Never",
            current_identity(),
        )
    finally:
        for storage in uploads:
            _close_stream_safely(storage.stream, f"create_doc filename={storage.filename}")

    stored = [lifecycle.record_view(record, _download_url) for record in result.stored]
    if not result.ok:
        payload: Dict[str, Any] = result.error.to_payload()
        payload["stored_count"] = result.stored_count
        payload["files"] = stored
        return jsonify(payload), result.error.status_code
    return jsonify({"stored_count": result.stored_count, "files": stored}), 201


@app.route("/File/ListFiles", methods=["GET"])
@require_auth()
def list_files():
    page = lifecycle.list_files(
        sort_by=request.args.get("sort_by", "uploaded_at"),
        sort_order=request.args.get("sort_order", "desc"),
        page=request.args.get("page", 1),
        page_size=request.args.get("page_size", 10),
        include_expired=_parse_bool(request.args.get("include_expired")),
        download_url=_download_url,
    )
    return jsonify(page.to_dict())


@app.route("/File/DownloadFile", methods=["GET"])
@limiter.limit(download_rate_limit_string)
@require_auth()
def download_file():
    file_name = _require_filename()
    stream = lifecycle.download_file(file_name)
    return send_file(
        stream,
        mimetype="application/octet-stream",
        as_attachment=True,
        download_name=file_name,
    )


@app.route("/File/ViewFile", methods=["GET"])
@limiter.limit(download_rate_limit_string)
@require_auth()
def view_file():
    file_name = _require_filename()
    stream, mime_type = lifecycle.view_file(file_name)
    return send_file(stream, mimetype=mime_type, download_name=file_name)


@app.route("/File/DeleteFile", methods=["POST", "DELETE"])
@require_auth(ROLE_ADMIN, ROLE_CONTRIBUTOR)
def delete_file():
    file_name = _require_filename()
    lifecycle.delete_file(file_name, current_identity())
    return jsonify({"message": f"File '{file_name}' deleted.", "fileName": file_name})


@app.route("/File/RenameFile", methods=["POST"])
@require_auth(ROLE_ADMIN, ROLE_CONTRIBUTOR)
def rename_file():
    old_name = _request_value("oldName", "old_name", "filename")
    new_name = _request_value("newName", "new_name") or ""
    if not old_name:
        raise ValidationError("The current filename is required.")
    record = lifecycle.rename_file(old_name, new_name, current_identity())
    return jsonify(lifecycle.record_view(record, _download_url))


@app.route("/File/CopyFile", methods=["POST"])
@require_auth(ROLE_ADMIN, ROLE_CONTRIBUTOR)
def copy_file():
    file_name = _require_filename()
    record = lifecycle.copy_file(file_name, current_identity())
    return jsonify(lifecycle.record_view(record, _download_url)), 201


@app.route("/File/AvailableSpace", methods=["GET"])
@require_auth()
def available_space():
    return jsonify(lifecycle.get_available_space())


@app.route("/File/Checksum", methods=["GET"])
@require_auth()
def checksum():
    file_name = _require_filename()
    return jsonify({"fileName": file_name, "sha256": lifecycle.get_checksum(file_name)})


@app.route("/File/DownloadZip", methods=["POST"])
@limiter.limit(download_rate_limit_string)
@require_auth()
def download_zip():
    payload = request.get_json(silent=True) if request.is_json else None
    if isinstance(payload, dict):
        names = payload.get("fileNames") or []
    else:
        names = request.values.getlist("fileNames")
    if not isinstance(names, list):
        raise ValidationError("fileNames must be a list of filenames.")
    archive = lifecycle.build_zip(str(name) for name in names)
    return send_file(
        archive,
        mimetype="application/zip",
        as_attachment=True,
        download_name="files.zip",
    )


@app.route("/File/Metrics", methods=["GET"])
@require_auth()
def metrics():
    return jsonify(metrics_counter.snapshot())


@app.route("/File/ServerName", methods=["GET"])
@require_auth()
def server_name():
    return jsonify({"serverName": socket.gethostname()})


_SECRET_SETTING_MARKERS = ("PASSWORD", "SECRET", "TOKEN")


def _environment_settings() -> Dict[str, str]:
    settings: Dict[str, str] = {}
    for key in sorted(os.environ):
        if not key.startswith("FILESERVICE_"):
            continue
        if any(marker in key for marker in _SECRET_SETTING_MARKERS):
            settings[key] = "********"
        else:
            settings[key] = os.environ[key]
    return settings


@app.route("/Config/View", methods=["GET"])
@require_auth(ROLE_ADMIN)
def config_view():
    """Effective configuration: quota limits, storage paths, rate limits and raw settings."""

    return jsonify(
        {
            "quota": {
                "maxDiskSpaceGB": quota_config.max_disk_space_gb,
                "maxFileSizeMB": quota_config.max_file_size_mb,
                "warningThresholdPercent": quota_config.warning_threshold_percent,
                "criticalThresholdPercent": quota_config.critical_threshold_percent,
            },
            "paths": {
                "uploadsDir": str(UPLOADS_DIR),
                "dataDir": str(DATA_DIR),
                "logsDir": str(LOGS_DIR),
            },
            "rateLimits": {
                "uploads": upload_rate_limit_string(),
                "downloads": download_rate_limit_string(),
            },
            "scheduler": {
                "running": expiry_scheduler.running,
                "pendingExpiries": len(expiry_scheduler.pending_expiries()),
            },
            "environment": _environment_settings(),
        }
    )


@app.route("/File/TriggerCleanup", methods=["POST"])
@require_auth(ROLE_ADMIN)
def trigger_cleanup():
    job_id = expiry_scheduler.enqueue_cleanup()
    http_logger.warning(
        "cleanup_triggered job_id=%s user=%s",
        job_id,
        sanitize_log_value(current_identity().username),
    )
    return jsonify({"job_id": job_id, "message": "Cleanup job enqueued."}), 202


@app.route("/File/TriggerExpiryCleanup", methods=["POST"])
@require_auth(ROLE_ADMIN)
def trigger_expiry_cleanup():
    job_id = expiry_scheduler.enqueue_expiry_cleanup()
    http_logger.info(
        "expiry_cleanup_triggered job_id=%s user=%s",
        job_id,
        sanitize_log_value(current_identity().username),
    )
    return jsonify({"job_id": job_id, "message": "Expiry cleanup job enqueued."}), 202


@app.route("/health", methods=["GET"])
@limiter.exempt
def health():
    checks = {
        "data_dir_writable": DATA_DIR.is_dir() and os.access(DATA_DIR, os.W_OK),
        "uploads_dir_present": UPLOADS_DIR.is_dir(),
        "scheduler_running": expiry_scheduler.running,
    }
    healthy = all(checks.values())
    return jsonify({"status": "healthy" if healthy else "unhealthy", "checks": checks}), (
        200 if healthy else 503
    )


@app.errorhandler(404)
def handle_not_found(error):  # pragma: no cover - framework hook
    return jsonify(NotFoundError("Resource not found").to_payload()), 404


def _start_background_jobs() -> None:
    expiry_scheduler.start()
    atexit.register(lambda: expiry_scheduler.shutdown(wait=False))
    expiry_scheduler.schedule_recurring(
        full_cleanup_cron=os.environ.get("FILESERVICE_FULL_CLEANUP_CRON") or None,
    )


ownership_store.ensure_default_users()
_start_background_jobs()

# Run a single expiry pass on startup so stale files are gone before serving traffic.
lifecycle.delete_expired_files()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
