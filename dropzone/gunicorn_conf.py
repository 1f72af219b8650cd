"""Gunicorn server hooks, loaded with ``--config python:dropzone.gunicorn_conf``."""

from typing import Any

from dropzone import shutdown_app


def worker_exit(server: Any, worker: Any) -> None:
    """Abort in-flight uploads before the worker process goes away."""
    app = getattr(worker, "wsgi", None)
    if app is not None:
        server.log.info("Shutting down file manager in worker %s", worker.pid)
        shutdown_app(app)
