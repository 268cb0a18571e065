"""
FastAPI surface for projects, builds, screenshot uploads, and image retrieval.

Handlers translate requests into store / orchestrator calls and publish bus
events; failures are rendered as ``{"status": "failure", "message": ...}``.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import Body, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from ...core.contracts import (
    BUILD_STATUS_TOPIC,
    IMAGES_CHANGED_TOPIC,
    BaseModule,
    BuildStatusChanged,
    ImagesChanged,
    ModuleConfig,
)
from ...core.errors import InvalidArgument, NotFoundError, VisualDiffError
from ...core.models import (
    BuildRef,
    BuildStatus,
    CreateProjectRequest,
    StartBuildRequest,
    parse_request,
)
from ..diff.orchestrator import DiffOrchestrator
from ..output.services import ServiceRegistry
from ..storage.filesystem import FileSystemStore

logger = logging.getLogger(__name__)


def _failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "failure", "message": message})


class VisualDiffApi(BaseModule):
    """Expose the HTTP API and feed uploads into the event bus."""

    name = "modules.dashboard.api"

    def __init__(
        self,
        *,
        store: FileSystemStore,
        orchestrator: DiffOrchestrator,
        services: ServiceRegistry | None = None,
        config_factory: Callable[..., uvicorn.Config] | None = None,
        server_factory: Callable[[uvicorn.Config], uvicorn.Server] | None = None,
    ) -> None:
        super().__init__()
        self._store = store
        self._orchestrator = orchestrator
        self._services = services or ServiceRegistry()
        self._host = "0.0.0.0"
        self._port = 8999
        self._serve_api = True
        self._images_topic = IMAGES_CHANGED_TOPIC
        self._status_topic = BUILD_STATUS_TOPIC
        self._app: FastAPI | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None
        self._config_factory = config_factory or uvicorn.Config
        self._server_factory = server_factory or uvicorn.Server

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._host = options.get("host", self._host)
        self._port = int(options.get("port", self._port))
        self._serve_api = bool(options.get("serve_api", self._serve_api))
        self._images_topic = options.get("images_topic", self._images_topic)
        self._status_topic = options.get("status_topic", self._status_topic)

    async def start(self) -> None:
        self._app = self._build_app()
        if not self._serve_api:
            logger.info("VisualDiffApi running in embedded-only mode (no HTTP server).")
            return
        config = self._config_factory(
            app=self._app,
            host=self._host,
            port=self._port,
            loop="asyncio",
            lifespan="on",
            log_level="info",
        )
        self._server = self._server_factory(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info("VisualDiffApi listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server_task:
            self._server.should_exit = True  # type: ignore[union-attr]
            await asyncio.wait([self._server_task], timeout=1)
            self._server_task = None
        self._server = None

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            raise RuntimeError("VisualDiffApi has not been started or configured yet.")
        return self._app

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="visualdiff API", version="0.1.0")

        @app.exception_handler(RequestValidationError)
        async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
            return _failure(400, "invalid arguments")

        @app.exception_handler(InvalidArgument)
        async def _invalid_argument(request: Request, exc: InvalidArgument) -> JSONResponse:
            return _failure(400, str(exc))

        @app.exception_handler(NotFoundError)
        async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
            return _failure(404, str(exc))

        @app.exception_handler(VisualDiffError)
        async def _visualdiff_error(request: Request, exc: VisualDiffError) -> JSONResponse:
            logger.error("Request %s failed: %s", request.url.path, exc)
            return _failure(500, str(exc))

        @app.get("/health")
        async def health() -> dict[str, str]:
            return {"status": "ok"}

        @app.post("/api/project")
        async def create_project(body: Any = Body(...)) -> dict[str, str]:
            request = parse_request(CreateProjectRequest, body)
            if not self._services.supports(request.service.name):
                raise InvalidArgument("unsupported dvcs")
            project = await self._store.create_project(body)
            return {"status": "success", "project": project}

        @app.post("/api/startBuild")
        async def start_build(body: Any = Body(...)) -> dict[str, str]:
            request = parse_request(StartBuildRequest, body)
            build = await self._store.start_build(
                project=request.project,
                head=request.head,
                base=request.base,
                num_browsers=request.num_browsers,
            )
            await self.bus.publish(
                self._status_topic,
                BuildStatusChanged(
                    project=request.project,
                    build=build,
                    sha=request.head,
                    status=BuildStatus.PENDING,
                ),
            )
            # Screenshots may already be present for head.
            await self.bus.publish(
                self._images_topic, ImagesChanged(project=request.project, sha=request.head)
            )
            return {"status": "success", "build": build}

        @app.post("/api/upload")
        async def upload(
            project: str = Form(...),
            sha: str = Form(...),
            browser: str = Form(...),
            images: UploadFile = File(...),
        ) -> dict[str, str]:
            archive = await asyncio.to_thread(_spool_upload, images)
            try:
                await self._store.save_images(
                    project=project, sha=sha, browser=browser, archive=archive
                )
            finally:
                await asyncio.to_thread(archive.unlink, missing_ok=True)
            await self.bus.publish(
                self._images_topic, ImagesChanged(project=project, sha=sha, browser=browser)
            )
            return {"status": "success"}

        @app.post("/api/getBuild")
        async def get_build(body: Any = Body(...)) -> Any:
            ref = parse_request(BuildRef, body)
            if not await self._store.has_build(ref.project, ref.build):
                return _failure(400, "unknown build")
            info = await self._store.get_build_info(ref.project, ref.build)
            return info.to_record()

        @app.post("/api/confirm")
        async def confirm(body: Any = Body(...)) -> dict[str, Any]:
            ref = parse_request(BuildRef, body)
            info = await self._orchestrator.approve_build(ref.project, ref.build)
            return {"status": "success", "build": info.to_record()}

        @app.get("/api/image/{project}/{sha}/{browser}/{file:path}")
        async def get_image(project: str, sha: str, browser: str, file: str) -> Response:
            data = await self._store.get_image(project, sha, browser, file)
            return Response(content=data, media_type=_media_type(file))

        @app.get("/api/diff/{project}/{build}/{browser}/{file:path}")
        async def get_diff(project: str, build: str, browser: str, file: str) -> Response:
            data = await self._store.get_diff(project, build, browser, file)
            return Response(content=data, media_type=_media_type(file))

        return app


def _spool_upload(upload: UploadFile) -> Path:
    """Copy an uploaded archive to a temporary file the extractor can open."""
    suffix = "".join(Path(upload.filename or "images.tar").suffixes) or ".tar"
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as handle:
        upload.file.seek(0)
        shutil.copyfileobj(upload.file, handle)
    return Path(handle.name)


def _media_type(file: str) -> str:
    guessed, _ = mimetypes.guess_type(file)
    return guessed or "application/octet-stream"


__all__ = ["VisualDiffApi"]
