"""General routes."""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_wtf.csrf import generate_csrf


bp = Blueprint("main", __name__)


@bp.get("/health")
def health():
    return {"status": "ok"}, 200


@bp.get("/api/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})
