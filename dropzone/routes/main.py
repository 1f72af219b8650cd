"""Health and event-log routes for dropzone."""

from flask import Blueprint, Response, current_app, jsonify, request

from dropzone.config import get_package_name, get_package_version
from dropzone.services.log_service import get_log_service

main_bp = Blueprint("main", __name__)


@main_bp.route("/health", methods=["GET"])
def health() -> tuple[Response, int]:
    """Report the service name, version and upload mode."""
    manager = current_app.config["FILE_MANAGER"]
    return jsonify(
        {
            "name": get_package_name(),
            "version": get_package_version(),
            "is_upload": manager.is_upload,
        }
    ), 200


@main_bp.route("/api/logs/entries", methods=["GET"])
def get_log_entries() -> tuple[Response, int]:
    """Query lifecycle log entries with filtering and pagination.

    Query params:
        date: Filter by date (YYYY-MM-DD)
        level: Filter by level (INFO/WARNING/ERROR)
        category: Filter by category (lifecycle/preview/upload/app)
        search: Full-text search in message and event
        file_id: Only events about this file record
        offset: Pagination offset (default 0)
        limit: Pagination limit (default 100)
    """
    try:
        offset = max(0, int(request.args.get("offset", "0")))
        limit = max(1, min(1000, int(request.args.get("limit", "100"))))
    except ValueError:
        offset = 0
        limit = 100

    file_id = request.args.get("file_id", type=int)

    result = get_log_service().read_log_entries(
        date=request.args.get("date"),
        level=request.args.get("level"),
        category=request.args.get("category"),
        search=request.args.get("search"),
        file_id=file_id,
        offset=offset,
        limit=limit,
    )
    return jsonify(result), 200
