# querofretes_app/__init__.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import os
from datetime import datetime

from flask import Flask
from config import Config, TestingConfig, StagingConfig, ProductionConfig
from .blueprints.admin import admin_bp
from .extensions import db, bcrypt, migrate, scheduler, init_extensions, register_cli
from .services.settings import init_settings
from .services.notifications import init_dispatcher
from .services.reconciliation import init_engine
from .services.sweeper import schedule_sweeper
from .blueprints.core import bp as core_bp
from .blueprints.auth import bp as auth_bp
from .blueprints.billing import bp as billing_bp
from .blueprints.mercadopago import bp as mercadopago_bp
from .blueprints.openpix import bp as openpix_bp
from .blueprints.subscription import bp as subscription_bp


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app_env = os.getenv("APP_ENV", "").lower()

    if config_object is not None:
        app.config.from_object(config_object)
    elif app_env == "testing":
        app.config.from_object(TestingConfig)
    elif app_env == "staging":
        app.config.from_object(StagingConfig)
    elif app_env == "production":
        app.config.from_object(ProductionConfig)
    else:
        app.config.from_object(Config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Extensões (DB/Bcrypt/Migrate)
    init_extensions(app)

    # Serviços de cobrança (ficam em app.extensions)
    init_settings(app)                       # app.extensions["billing_settings"/"notification_settings"]
    init_dispatcher(app, scheduler)          # app.extensions["notifications"]
    init_engine(app)                         # app.extensions["reconciliation"]
    app.config["STARTED_AT"] = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")

    # Blueprints
    app.register_blueprint(core_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(mercadopago_bp)
    app.register_blueprint(openpix_bp)
    app.register_blueprint(subscription_bp)
    # CLI (ex.: flask init-db, flask sweep-subscriptions)
    register_cli(app)

    # Scheduler: varredura de assinaturas vencidas
    if not app.config.get("TESTING") and os.getenv("DISABLE_SCHEDULER") != "1":
        schedule_sweeper(app, scheduler)
        if not scheduler.running:
            scheduler.start()

    return app


__all__ = ["create_app", "db", "bcrypt", "migrate", "scheduler"]
