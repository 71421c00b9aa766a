# querofretes_app/blueprints/core.py
# -*- coding: utf-8 -*-
from __future__ import annotations
from flask import Blueprint, jsonify, current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db, scheduler

bp = Blueprint("core", __name__)


@bp.route("/")
def index():
    try:
        db.session.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        current_app.logger.exception("Banco indisponível no health check")
        db_ok = False
    return jsonify(
        status="ok" if db_ok else "degraded",
        database=db_ok,
        scheduler=bool(scheduler.running),
        started_at=current_app.config.get("STARTED_AT"),
    ), (200 if db_ok else 503)
