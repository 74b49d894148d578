# portal/app.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from flask import Flask, abort, current_app, jsonify, request
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

from menuscan import menus
from menuscan.config import Settings
from menuscan.db import Database
from menuscan.errors import (
    ExtractionExhausted,
    PersistenceError,
    ScanCancelled,
    ScanError,
    StructuringFailed,
)
from menuscan.persistence import METHOD_DUPLICATE
from menuscan.scan_pipeline import PipelineOrchestrator, build_pipeline
from menuscan.scan_types import RawImage

from .ocr_health import bp as health_bp

log = logging.getLogger(__name__)

# ------------------------
# Upload rules
# ------------------------
MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

# ScanError kind -> HTTP status
ERROR_STATUS = {
    ExtractionExhausted: 502,
    StructuringFailed: 422,
    ScanCancelled: 504,
    PersistenceError: 500,
}


def _media_type(filename: str) -> Optional[str]:
    ext = Path(filename).suffix.lower().lstrip(".")
    return MEDIA_TYPES.get(ext)


def _state() -> Dict[str, Any]:
    return current_app.extensions["menuscan"]


def _request_user() -> Tuple[Optional[str], Optional[str]]:
    user_id = (request.headers.get("X-User-Id") or request.form.get("user_id") or "").strip()
    email = (request.headers.get("X-User-Email") or request.form.get("email") or "").strip()
    return user_id or None, email or None


def _int_arg(name: str, default: int, lo: int, hi: int) -> int:
    try:
        val = int(request.args.get(name, default))
    except (TypeError, ValueError):
        abort(400, description=f"'{name}' must be an integer")
    return max(lo, min(hi, val))


# ------------------------
# App factory
# ------------------------
def create_app(
    settings: Optional[Settings] = None,
    pipeline: Optional[PipelineOrchestrator] = None,
    db: Optional[Database] = None,
) -> Flask:
    settings = settings or Settings.from_env()
    db = db or Database(settings.db_path)
    db.ensure_schema()

    if pipeline is None:
        try:
            pipeline = build_pipeline(settings, db)
        except ValueError as e:
            # health + read endpoints still work; scans answer 503
            log.error("Scan pipeline not configured: %s", e)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_mb * 1024 * 1024
    app.extensions["menuscan"] = {"settings": settings, "db": db, "pipeline": pipeline}
    app.register_blueprint(health_bp)

    @app.errorhandler(RequestEntityTooLarge)
    def _too_large(_e):
        return jsonify({
            "error": "file_too_large",
            "message": f"File too large. Limit is {settings.max_upload_mb} MB.",
        }), 413

    @app.errorhandler(400)
    def _bad_request(e):
        return jsonify({"error": "bad_request", "message": getattr(e, "description", str(e))}), 400

    @app.errorhandler(404)
    def _not_found(e):
        return jsonify({"error": "not_found", "message": getattr(e, "description", str(e))}), 404

    # ------------------------
    # Scans
    # ------------------------
    @app.post("/api/scans")
    def create_scan():
        user_id, email = _request_user()
        if not user_id:
            return jsonify({"error": "unauthorized", "message": "X-User-Id header or user_id field required"}), 401

        pipe: Optional[PipelineOrchestrator] = _state()["pipeline"]
        if pipe is None:
            return jsonify({"error": "not_configured", "message": "scan pipeline is not configured"}), 503

        if "file" not in request.files:
            return jsonify({"error": "bad_upload", "message": "No file field 'file' provided"}), 400
        file = request.files["file"]
        filename = secure_filename(file.filename or "")
        if not filename:
            return jsonify({"error": "bad_upload", "message": "Empty filename"}), 400
        media_type = _media_type(filename)
        if media_type is None:
            return jsonify({
                "error": "bad_upload",
                "message": "Unsupported file type. Allowed: " + ", ".join(sorted(MEDIA_TYPES)),
            }), 400
        data = file.read()
        if not data:
            return jsonify({"error": "bad_upload", "message": "Uploaded file is empty"}), 400

        try:
            result = pipe.run(RawImage(data, media_type), user_id, email=email)
        except ScanError as e:
            status = next((code for cls, code in ERROR_STATUS.items() if isinstance(e, cls)), 500)
            return jsonify(e.to_dict()), status

        status = 200 if result.method == METHOD_DUPLICATE else 201
        return jsonify(result.to_dict()), status

    @app.get("/api/users/<user_id>/scans")
    def user_scans(user_id: str):
        limit = _int_arg("limit", 50, 1, 200)
        offset = _int_arg("offset", 0, 0, 10**9)
        scans = menus.list_user_scans(_state()["db"], user_id, limit=limit, offset=offset)
        return jsonify({"user_id": user_id, "scans": scans, "limit": limit, "offset": offset})

    @app.get("/api/menus/<canonical_id>")
    def canonical_menu(canonical_id: str):
        menu = menus.get_menu_with_dishes(_state()["db"], canonical_id)
        if not menu:
            abort(404, description=f"canonical menu {canonical_id} not found")
        return jsonify(menu)

    return app


# ------------------------
# Run
# ------------------------
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_app().run(host="0.0.0.0", port=5000, debug=False)
