"""Flask application factory."""

from __future__ import annotations

import uuid

from flask import Flask, g, session
from flask_login import current_user

from backoffice.blueprints.imports import bp as imports_bp
from backoffice.blueprints.main import bp as main_bp
from backoffice.celery_app import init_celery
from backoffice.cli import imports_cli
from backoffice.config import Config
from backoffice.extensions import csrf, db, init_rls_session_listener, login_manager


NO_TENANT_UUID = "00000000-0000-0000-0000-000000000000"


def create_app(config_object: type[Config] = Config) -> Flask:
    app = Flask(__name__, instance_relative_config=False)
    app.config.from_object(config_object)

    db.init_app(app)
    login_manager.init_app(app)
    csrf.init_app(app)
    init_rls_session_listener()

    # Ensure model metadata is loaded for migrations and tests.
    from backoffice import models as _models  # noqa: F401

    app.register_blueprint(main_bp)
    app.register_blueprint(imports_bp)
    app.cli.add_command(imports_cli)
    init_celery(app)

    @app.before_request
    def load_request_db_context() -> None:
        db.session.info.pop("tenant_id", None)
        db.session.info.pop("actor_user_id", None)
        g.tenant_id = None

        if current_user.is_authenticated:
            db.session.info["actor_user_id"] = current_user.get_id()
            db.session.info["tenant_id"] = NO_TENANT_UUID

        tenant_id = session.get("active_tenant_id")
        if tenant_id:
            try:
                tenant_uuid = uuid.UUID(str(tenant_id))
            except ValueError:
                session.pop("active_tenant_id", None)
            else:
                g.tenant_id = str(tenant_uuid)
                db.session.info["tenant_id"] = str(tenant_uuid)

    @app.teardown_request
    def cleanup_session_context(_exc: BaseException | None) -> None:
        db.session.info.pop("tenant_id", None)
        db.session.info.pop("actor_user_id", None)

    return app
