"""Administrative HTTP surface for the backup subsystem.

Authentication happens upstream; the auth layer passes the caller's role in
the ``X-User-Role`` header and this module only checks it.
"""

from functools import wraps

from flask import Flask, jsonify, request
from loguru import logger
from pydantic import BaseModel, ValidationError

from ..backup.restore import RestoreMode
from ..backup.service import BackupService
from ..db.schemas import BackupKind, BackupStatus, UserRole
from ..errors import (
    BackupInProgress,
    BackupNotFound,
    IntegrityViolation,
    ManifestError,
    SnapkeepError,
    SubsystemDraining,
)

ROLE_HEADER = "X-User-Role"
ADMIN_ROLES = {UserRole.ADMIN.value, UserRole.PLATFORM_ADMIN.value}
RESTORE_ROLES = {UserRole.PLATFORM_ADMIN.value}

STATUS_CODES = {
    BackupNotFound: 404,
    BackupInProgress: 409,
    SubsystemDraining: 409,
    IntegrityViolation: 422,
    ManifestError: 422,
}


class CreateBackupRequest(BaseModel):
    """Body of POST /backups."""

    kind: BackupKind = BackupKind.FULL


class RestoreRequest(BaseModel):
    """Body of POST /backups/<id>/restore."""

    mode: RestoreMode = RestoreMode.REPLACE


class IntegrityCheckRequest(BaseModel):
    """Body of POST /integrity-checks."""

    repair: bool = True


def error_response(code: str, message: str, retryable: bool, status: int, **extra):
    """Structured error body; extra keys sit beside "error"."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "retryable": retryable,
            "category": "degraded" if retryable else "corrupted",
        },
        **extra,
    }
    return jsonify(body), status


def require_role(allowed: set[str]):
    """Reject callers whose upstream role is not in allowed."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            role = request.headers.get(ROLE_HEADER, "")
            if role not in allowed:
                return jsonify({"error": {
                    "code": "forbidden",
                    "message": "Insufficient permissions",
                }}), 403
            return view(*args, **kwargs)

        return wrapper

    return decorator


def _parse(schema: type[BaseModel]) -> BaseModel:
    data = request.get_json(silent=True)
    return schema.model_validate(data or {})


def create_app(service: BackupService) -> Flask:
    """Create the Flask application bound to one BackupService."""
    app = Flask(__name__)

    @app.errorhandler(SnapkeepError)
    def handle_snapkeep_error(e: SnapkeepError):
        status = next(
            (code for cls, code in STATUS_CODES.items() if isinstance(e, cls)), 500
        )
        if status >= 500:
            logger.error("Backup API error: {}", e)
        return error_response(e.code, str(e), e.retryable, status)

    @app.errorhandler(ValidationError)
    def handle_validation_error(e: ValidationError):
        return jsonify({"error": {
            "code": "invalid_request",
            "message": "Invalid request body",
            "details": e.errors(include_url=False, include_context=False),
        }}), 400

    @app.route("/health")
    def health():
        status = "draining" if service.draining else "ok"
        return jsonify({"status": status}), 503 if service.draining else 200

    @app.route("/backups", methods=["GET"])
    @require_role(ADMIN_ROLES)
    def list_backups():
        records = service.list_backups()
        return jsonify({
            "backups": [r.model_dump(mode="json") for r in records],
            "count": len(records),
        })

    @app.route("/backups", methods=["POST"])
    @require_role(ADMIN_ROLES)
    def create_backup():
        body = _parse(CreateBackupRequest)
        record = service.create_backup(body.kind)
        if record.status != BackupStatus.SUCCESS:
            logger.error("Backup {} failed: {}", record.id, record.error)
            return error_response(
                "backup_failed",
                record.error or "backup failed",
                retryable=True,
                status=500,
                backup=record.model_dump(mode="json"),
            )
        return jsonify(record.model_dump(mode="json")), 201

    @app.route("/backups/<backup_id>/restore", methods=["POST"])
    @require_role(RESTORE_ROLES)
    def restore_backup(backup_id: str):
        body = _parse(RestoreRequest)
        report = service.restore_backup(backup_id, body.mode)
        return jsonify(report.to_dict()), 200 if report.success else 207

    @app.route("/integrity-checks", methods=["POST"])
    @require_role(ADMIN_ROLES)
    def run_integrity_check():
        body = _parse(IntegrityCheckRequest)
        report = service.run_integrity_check(repair=body.repair)
        return jsonify(report.to_dict())

    return app


def run_server(service: BackupService, host: str = "127.0.0.1", port: int = 5000):
    """Run the development server."""
    app = create_app(service)
    logger.info("Serving backup API on http://{}:{}", host, port)
    app.run(host=host, port=port, debug=False, threaded=True)
