"""Flask application factory for the Dropzone uploader."""

import os
from typing import Any

from flask import Flask

from dropzone.config import Settings, get_package_version, get_settings
from dropzone.services.event_loop import BackgroundLoop
from dropzone.services.lifecycle_manager import FileLifecycleManager
from dropzone.services.upload_transport import UploadParamsProvider, static_upload_params


def build_upload_params_provider(settings: Settings) -> UploadParamsProvider | None:
    """Pick the upload destination from settings.

    An S3 bucket takes precedence over a fixed upload URL; with neither,
    files are only validated and previewed.
    """
    if settings.s3_bucket:
        from dropzone.services import s3_service

        client = s3_service.create_s3_client(settings.aws_profile, settings.aws_region)
        return s3_service.make_presigned_post_provider(
            client,
            settings.s3_bucket,
            max_size_bytes=settings.dropzone_options().max_size_bytes,
        )
    if settings.upload_url:
        return static_upload_params(settings.upload_url)
    return None


def create_app(**manager_kwargs: Any) -> Flask:
    """Create and configure the Flask application.

    Args:
        manager_kwargs: Extra FileLifecycleManager arguments (hooks, transport)
    """
    app = Flask(__name__)

    settings = get_settings()
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
    app.config["SETTINGS"] = settings

    from dropzone.routes.files import files_bp, send_sse_event
    from dropzone.routes.main import main_bp

    if "get_upload_params" not in manager_kwargs and "transport" not in manager_kwargs:
        manager_kwargs["get_upload_params"] = build_upload_params_provider(settings)

    def on_refresh(files: list[Any]) -> None:
        send_sse_event({"type": "refresh", "files": [f.to_dict() for f in files]})

    manager_kwargs.setdefault("on_refresh", on_refresh)

    # The manager lives on its own loop thread; routes reach it via loop.call()
    loop = BackgroundLoop().start()
    manager = loop.call(
        lambda: FileLifecycleManager(settings.dropzone_options(), **manager_kwargs)
    )
    app.config["EVENT_LOOP"] = loop
    app.config["FILE_MANAGER"] = manager

    app.register_blueprint(main_bp)
    app.register_blueprint(files_bp, url_prefix="/api/files")

    from dropzone.services.log_service import get_log_service

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {"version": get_package_version(), "is_upload": manager.is_upload},
    )

    return app


def shutdown_app(app: Flask) -> None:
    """Abort in-flight uploads and stop the manager's loop thread."""
    loop: BackgroundLoop = app.config["EVENT_LOOP"]
    manager: FileLifecycleManager = app.config["FILE_MANAGER"]
    if loop.running:
        loop.run(manager.aclose())
        loop.stop()
