# querofretes_app/blueprints/auth.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from flask import Blueprint, request, jsonify, session, current_app

from ..extensions import db
from ..models import User

bp = Blueprint("auth", __name__)


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _login_session(u: User) -> None:
    session["user"] = {
        "id": u.id, "name": u.name, "email": u.email, "is_admin": bool(u.is_admin),
    }


@bp.route("/login", methods=["POST"])
def login():
    data = _payload()
    email = (data.get("email") or "").strip().lower()
    pwd = data.get("password") or ""

    u = User.query.filter_by(email=email).first()
    if not u or not u.check_password(pwd):
        current_app.logger.warning("Login inválido para %s", email)
        return jsonify(error="Credenciais inválidas."), 401

    _login_session(u)
    return jsonify(user={"id": u.id, "name": u.name, "email": u.email}, entitlement=u.entitlement_dict())


@bp.route("/logout")
def logout():
    session.clear()
    return jsonify(message="Você saiu da sessão.")


@bp.route("/register", methods=["POST"])
def register():
    data = _payload()
    name = data.get("name") or "Usuário"
    email = (data.get("email") or "").strip().lower()
    pwd = data.get("password")
    profile = data.get("profile_type") or "shipper"

    if not email or not pwd:
        return jsonify(error="Informe e-mail e senha."), 400
    if User.query.filter_by(email=email).first():
        return jsonify(error="E-mail já cadastrado."), 409

    u = User(name=name, email=email, phone=data.get("phone"), profile_type=profile)
    # motoristas usam a plataforma sem assinatura
    if profile == "driver":
        u.subscription_active = True
        u.subscription_type = "driver_free"
    u.set_password(pwd)
    db.session.add(u)
    db.session.commit()

    _login_session(u)
    return jsonify(user={"id": u.id, "name": u.name, "email": u.email}, entitlement=u.entitlement_dict()), 201
