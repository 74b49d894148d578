from __future__ import annotations
from flask import Blueprint, current_app, jsonify

from menuscan.vision_providers import tesseract_available

bp = Blueprint("ocr_health", __name__)


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True})


@bp.route("/db/health", methods=["GET"])
def db_health():
    info = current_app.extensions["menuscan"]["db"].health()
    return jsonify(info), (200 if info["ok"] else 503)


@bp.route("/ocr/health", methods=["GET"])
def ocr_health():
    state = current_app.extensions["menuscan"]
    pipeline = state["pipeline"]
    return jsonify({
        "configured_cascade": [s.provider_id for s in state["settings"].vision_cascade],
        "active_cascade": pipeline.cascade.provider_ids if pipeline else [],
        "structuring": pipeline.structurer.provider.provider_id if pipeline else None,
        "tesseract": tesseract_available(),
    })
