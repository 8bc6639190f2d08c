"""HTTP output-file server — serves files produced by the last analysis."""

from __future__ import annotations

import mimetypes
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from chatexcel.validation import is_safe_filename

if TYPE_CHECKING:
    from chatexcel.config import ChatExcelConfig
    from chatexcel.workspace import Workspace

log = structlog.get_logger("chatexcel.http")


def _make_app(workspace: Workspace) -> Starlette:
    """Create Starlette app with the output-file download route."""

    async def download_output(request: Request) -> Response:
        filename = request.path_params["filename"]
        if not is_safe_filename(filename):
            return Response(content=f"Invalid filename {filename}", status_code=400)

        output = workspace.output_file(filename)
        if output is None:
            return Response(
                content=f"File {filename} not found in the last analysis",
                status_code=404,
            )

        mime, _ = mimetypes.guess_type(filename)
        content_type = mime or "application/octet-stream"

        log.info("output_download", filename=filename, size_bytes=output.size_bytes)

        return Response(
            content=output.content,
            media_type=content_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    routes = [
        Route("/outputs/{filename}", download_output, methods=["GET"]),
    ]

    return Starlette(routes=routes)


def run_http_server(config: ChatExcelConfig, workspace: Workspace) -> None:
    """Start the HTTP output-file server (blocking). Run in a thread."""
    app = _make_app(workspace)
    log.info(
        "http_server_starting",
        host=config.http_host,
        port=config.http_port,
    )
    uvicorn.run(
        app,
        host=config.http_host,
        port=config.http_port,
        log_level="warning",
    )
