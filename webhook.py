"""
Registry push webhook listener.

Serves ``POST /v1/docker-images/push`` on a port derived from the image
reference, redeploys on pushes for the configured image and reports the
outcome to the callback URL supplied with the push.
"""

import logging

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Response
from pydantic import BaseModel

import notify
from docker_runner import (
    WEBHOOK_PATH,
    DeployConfig,
    ImageMismatchError,
    Reconciler,
    derive_port,
)

logger = logging.getLogger(__name__)

LISTEN_HOST = "0.0.0.0"


class Repository(BaseModel):
    repo_name: str


class PushNotification(BaseModel):
    """Body of a registry push event."""
    repository: Repository
    callback_url: str


def create_app(config: DeployConfig, reconciler: Reconciler) -> FastAPI:
    """Build the webhook application for one deployment."""
    app = FastAPI(title="docker-runner webhook", docs_url=None, redoc_url=None, openapi_url=None)
    image_name = config.image_ref.name

    # Sync handler: runs in the threadpool while reconcile blocks
    @app.post(WEBHOOK_PATH, status_code=204)
    def image_pushed(notification: PushNotification, background_tasks: BackgroundTasks) -> Response:
        repo_name = notification.repository.repo_name
        error = None
        if repo_name != image_name:
            error = ImageMismatchError(
                f'webhook triggered for a different image name ("{repo_name}" '
                f'instead of "{image_name}")'
            )
        else:
            logger.info(f"Push received for {repo_name}, reconciling")
            try:
                reconciler.reconcile()
                reconciler.ensure_running()
            except Exception as e:
                error = e

        if error is not None:
            logger.error(f"Push handling failed: {error}")
        state = notify.STATE_ERROR if error is not None else notify.STATE_SUCCESS
        background_tasks.add_task(notify.send_callback, notification.callback_url, state)
        return Response(status_code=204)

    return app


def serve(config: DeployConfig, reconciler: Reconciler) -> None:
    """Listen for pushes until interrupted; exits the process if the port cannot be bound."""
    port = derive_port(config.image)
    app = create_app(config, reconciler)
    server = uvicorn.Server(uvicorn.Config(app, host=LISTEN_HOST, port=port, log_level="warning"))
    logger.info(f"listenImagePush: running on http://<domain.name>:{port}{WEBHOOK_PATH}")
    server.run()
