"""FastMCP server with tool definitions."""

import base64
import binascii
import mimetypes

import structlog
from fastmcp import Context, FastMCP

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import BatchTooLarge, TooManyFiles, WorkspaceBusy
from chatexcel.logging import configure_logging
from chatexcel.models import (
    AnalysisReport,
    ArtifactInfo,
    DeleteResult,
    ErrorResponse,
    ExecutionResult,
    FileListResult,
    Identity,
    IncomingFile,
    Mode,
    ReadOutputResult,
    UploadReport,
    WorkspaceStatus,
)
from chatexcel.validation import validate_filename, validate_instruction, validate_upload_size
from chatexcel.workspace import Workspace

config = ChatExcelConfig()
configure_logging(config)

log = structlog.get_logger("chatexcel.server")

workspace = Workspace.from_config(config)

mcp = FastMCP("chatexcel_mcp")


def _to_report(result: ExecutionResult) -> AnalysisReport:
    return AnalysisReport(
        status=result.status,
        output=result.captured_output,
        message=result.message,
        error=result.error,
        error_message=result.error_message,
        charts=result.charts,
        output_files=[
            ArtifactInfo(
                filename=f.filename,
                size_bytes=f.size_bytes,
                mime_type=mimetypes.guess_type(f.filename)[0] or "application/octet-stream",
                download_url=workspace.download_url(f.filename),
            )
            for f in result.output_files
        ],
    )


@mcp.tool(
    name="chatexcel_upload_file",
    annotations={
        "title": "Upload Tabular File",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def chatexcel_upload_file(
    filename: str,
    content_base64: str,
    mime_type: str = "",
    ctx: Context | None = None,
) -> UploadReport | ErrorResponse:
    """Stage a CSV or Excel file for analysis and infer its column types.

    Uploading a name that is already staged replaces the earlier file.
    At most 5 files and 100MB in total can be staged at once.

    Args:
        filename: Name of the file, ending in .csv, .xlsx or .xls.
            No path separators. Max 255 characters.
        content_base64: File contents encoded as base64.
        mime_type: Optional MIME type reported by the client.

    Returns:
        Success — UploadReport:
        {
            "staged": [
                {
                    "name": "sales.csv",
                    "size_bytes": 2048,
                    "mime_type": "text/csv",
                    "column_types": {"region": "string", "revenue": "float64"},
                    "kind": "csv",
                    "uploaded_at": "2024-01-15T10:30:00Z"
                }
            ],
            "rejected": []
        }

        A file whose extension or header row is unusable is listed under
        "rejected" with error "unsupported_file_type|empty_column_name|
        malformed_input|invalid_filename".

        Error — ErrorResponse:
        {
            "error": "invalid_filename|upload_too_large|invalid_content|too_many_files|batch_too_large",
            "message": "Human-readable description"
        }
    """
    if err := validate_filename(filename):
        return err
    if err := validate_upload_size(content_base64, config):
        return err
    try:
        content = base64.b64decode(content_base64, validate=True)
    except (binascii.Error, ValueError):
        return ErrorResponse(error="invalid_content", message="Content is not valid base64.")

    if ctx:
        await ctx.info(f"Staging {filename} ({len(content)} bytes)")
    try:
        report = await workspace.upload(
            [IncomingFile(name=filename, content=content, mime_type=mime_type)]
        )
    except (TooManyFiles, BatchTooLarge) as exc:
        return exc.to_response()
    if ctx:
        for rejected in report.rejected:
            await ctx.warning(f"{rejected.name} rejected: {rejected.message}")
    return report


@mcp.tool(
    name="chatexcel_delete_file",
    annotations={
        "title": "Remove Staged File",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def chatexcel_delete_file(filename: str) -> DeleteResult | ErrorResponse:
    """Remove a staged file. Removing the last file also clears the last result.

    Args:
        filename: Name of a staged file.

    Returns:
        Success — DeleteResult:
        {
            "status": "deleted",
            "remaining": 2
        }

        Error — ErrorResponse:
        {
            "error": "invalid_filename|not_found",
            "message": "Human-readable description"
        }
    """
    if err := validate_filename(filename):
        return err
    removed = await workspace.delete(filename)
    if not removed:
        return ErrorResponse(error="not_found", message=f"No staged file named '{filename}'.")
    return DeleteResult(status="deleted", remaining=len(workspace.files))


@mcp.tool(
    name="chatexcel_list_files",
    annotations={
        "title": "List Staged Files",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def chatexcel_list_files() -> FileListResult:
    """List staged files with their inferred column types.

    Returns:
        FileListResult:
        {
            "files": [{"name": "sales.csv", "column_types": {...}, ...}],
            "total_bytes": 2048
        }
    """
    return FileListResult(files=workspace.files, total_bytes=workspace.total_bytes)


@mcp.tool(
    name="chatexcel_analyze",
    annotations={
        "title": "Analyze Staged Data",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    },
)
async def chatexcel_analyze(
    instruction: str,
    mode: Mode = "basic",
    user_id: str | None = None,
    ctx: Context | None = None,
) -> AnalysisReport | ErrorResponse:
    """Answer a natural-language question about the staged files.

    The question and the column types of every staged file are sent to the
    analysis service, which returns Python code. That code then runs against
    the staged files and its printed output, charts and output files are
    returned. Only one analysis runs at a time.

    Args:
        instruction: What to do with the data (e.g. "plot revenue by region").
        mode: Operation class, "basic" or "pro". Counts against that quota.
        user_id: Signed-in user the quota is charged to. Omit for anonymous use.

    Returns:
        AnalysisReport:
        {
            "status": "success|error|need_more_info|out_of_scope",
            "output": "stdout followed by stderr",
            "message": "clarifying question (need_more_info/out_of_scope only)",
            "error": "timeout|execution_error|quota_denied|resolver_error|...",
            "error_message": "NameError: name 'x' is not defined",
            "charts": [{"kind": "matplotlib", "payload": "<base64 png>"},
                       {"kind": "plotly", "payload": "<figure json>"}],
            "output_files": [
                {
                    "filename": "summary.xlsx",
                    "size_bytes": 5120,
                    "mime_type": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                    "download_url": "http://localhost:8080/outputs/summary.xlsx"
                }
            ]
        }

        Error — ErrorResponse:
        {
            "error": "invalid_request|workspace_busy",
            "message": "Human-readable description"
        }
    """
    if err := validate_instruction(instruction, config):
        return err
    identity = Identity(user_id=user_id, ip_address=None if user_id else "127.0.0.1")
    if ctx:
        await ctx.info(f"Analyzing {len(workspace.files)} staged file(s)")
        await ctx.report_progress(0.1, 1.0, "Resolving instruction")
    try:
        result = await workspace.submit(instruction, mode, identity)
    except WorkspaceBusy as exc:
        return exc.to_response()
    if ctx:
        msg = f"Analysis finished with status {result.status}"
        if result.charts:
            msg += f", {len(result.charts)} chart(s)"
        await ctx.info(msg)
        await ctx.report_progress(1.0, 1.0, "Complete")
    return _to_report(result)


@mcp.tool(
    name="chatexcel_read_output",
    annotations={
        "title": "Read Output File",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def chatexcel_read_output(filename: str) -> ReadOutputResult | ErrorResponse:
    """Read an output file produced by the last analysis as base64.

    Args:
        filename: Name listed in the last AnalysisReport's output_files.

    Returns:
        Success — ReadOutputResult:
        {
            "filename": "summary.csv",
            "mime_type": "text/csv",
            "size_bytes": 512,
            "content_base64": "cmVnaW9uLHRvdGFs..."
        }

        Error — ErrorResponse:
        {
            "error": "invalid_filename|not_found",
            "message": "Human-readable description"
        }
    """
    if err := validate_filename(filename):
        return err
    output = workspace.output_file(filename)
    if output is None:
        return ErrorResponse(
            error="not_found",
            message=f"The last analysis produced no file named '{filename}'.",
        )
    return ReadOutputResult(
        filename=output.filename,
        mime_type=mimetypes.guess_type(output.filename)[0] or "application/octet-stream",
        size_bytes=output.size_bytes,
        content_base64=base64.b64encode(output.content).decode("ascii"),
    )


@mcp.tool(
    name="chatexcel_status",
    annotations={
        "title": "Workspace Status",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)
async def chatexcel_status() -> WorkspaceStatus:
    """Report staged files, whether an analysis is running and whether the sandbox is warm."""
    return workspace.status()


def main() -> None:
    """Entry point for the MCP server (stdio transport)."""
    import threading

    from chatexcel.http_server import run_http_server

    # Serve output files in a background thread
    workspace.enable_http()
    http_thread = threading.Thread(
        target=run_http_server,
        args=(config, workspace),
        daemon=True,
    )
    http_thread.start()

    log.info("server_starting", resolver_url=config.resolver_url, quota=bool(config.quota_url))
    mcp.run()


if __name__ == "__main__":
    main()
