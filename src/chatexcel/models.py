"""Pydantic models for staged files, resolver traffic, execution results and tool responses."""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ColumnType = Literal["int64", "float64", "bool", "string"]
FileKind = Literal["csv", "xlsx", "xls"]
Mode = Literal["basic", "pro"]
NextStep = Literal["need_more_info", "execute_command", "out_of_scope"]
Status = Literal["success", "error", "need_more_info", "out_of_scope"]


def _utcnow() -> datetime:
    return datetime.now(UTC)


# --- Upload staging ---


class IncomingFile(BaseModel):
    """One member of an upload batch, before validation."""

    name: str
    content: bytes
    mime_type: str = ""

    @property
    def size_bytes(self) -> int:
        return len(self.content)


class UploadedFile(BaseModel):
    """A staged tabular file as shown to the user. Raw bytes live in the staging store."""

    name: str
    size_bytes: int
    mime_type: str = ""
    column_types: dict[str, ColumnType]
    kind: FileKind
    uploaded_at: datetime = Field(default_factory=_utcnow)


class RejectedFile(BaseModel):
    """A batch member that failed extension or schema checks."""

    name: str
    error: str
    message: str


class UploadReport(BaseModel):
    """Outcome of one upload batch."""

    staged: list[UploadedFile] = []
    rejected: list[RejectedFile] = []


# --- Remote resolver wire format ---


class TableInfo(BaseModel):
    """Schema of one staged file as sent to the resolver."""

    model_config = ConfigDict(populate_by_name=True)

    dtypes: dict[str, ColumnType]
    file_type: FileKind = Field(alias="fileType")


class AnalysisRequest(BaseModel):
    """Outbound query: user instruction plus the schema of every staged file."""

    user_instruction: str
    table_info: dict[str, TableInfo]
    mode: Mode = "basic"

    def to_payload(self) -> dict[str, Any]:
        """Render the JSON body expected by the resolver endpoint."""
        return {
            "user_input": self.user_instruction,
            "table_info": {
                name: info.model_dump(by_alias=True) for name, info in self.table_info.items()
            },
            "mode": self.mode,
        }


class PythonCommand(BaseModel):
    """Executable part of a resolver response."""

    code: str | None = None
    output_filename: list[str] = []

    @field_validator("output_filename", mode="before")
    @classmethod
    def _normalize_output_filename(cls, value: Any) -> Any:
        # The service sends a single name, a list of names, or null.
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [value]
        return value


class ResolvedCommand(BaseModel):
    """Structured instruction returned by the resolver."""

    next_step: NextStep
    command: PythonCommand | None = None
    message: str = ""

    @property
    def code(self) -> str | None:
        return self.command.code if self.command else None

    @property
    def output_filenames(self) -> list[str]:
        return list(self.command.output_filename) if self.command else []


# --- Quota collaborator ---


class Identity(BaseModel):
    """Who is asking: an authenticated user id, else the client network address."""

    user_id: str | None = None
    ip_address: str | None = None


class QuotaDecision(BaseModel):
    """Answer from the quota collaborator for one operation class."""

    allowed: bool
    message: str | None = None
    remaining_quota: int | None = None
    total_quota: int | None = None
    used_quota: int | None = None
    subscription_tier: str | None = None


# --- Sandbox execution ---


class Chart(BaseModel):
    """A figure captured from the sandbox.

    matplotlib payloads are base64-encoded PNG bytes; plotly payloads are the
    figure's JSON document (data + layout).
    """

    kind: Literal["matplotlib", "plotly"]
    payload: str


class OutputFile(BaseModel):
    """A file read back from the sandbox filesystem after a run."""

    model_config = ConfigDict(ser_json_bytes="base64")

    filename: str
    content: bytes
    size_bytes: int


class RunOutcome(BaseModel):
    """Result of running one source unit inside the sandbox."""

    ok: bool
    error_type: str | None = None
    error_message: str | None = None
    traceback: str | None = None
    timed_out: bool = False
    duration_ms: int = 0


class CapturedOutput(BaseModel):
    """Text and figures collected by the capture hooks of one run."""

    stdout: str = ""
    stderr: str = ""
    charts: list[Chart] = []

    @property
    def text(self) -> str:
        return self.stdout + self.stderr


class ExecutionResult(BaseModel):
    """Terminal, UI-facing value of one analysis submission."""

    model_config = ConfigDict(ser_json_bytes="base64")

    status: Status
    captured_output: str = ""
    charts: list[Chart] = []
    output_files: list[OutputFile] = []
    message: str | None = None
    error: str | None = None
    error_message: str | None = None


# --- Tool responses ---


class ErrorResponse(BaseModel):
    """Structured error returned to the caller."""

    error: str
    message: str
    size_bytes: int | None = None


class ArtifactInfo(BaseModel):
    """Metadata for an output file of the last analysis."""

    filename: str
    size_bytes: int
    mime_type: str
    download_url: str | None = None


class AnalysisReport(BaseModel):
    """Response from the analyze tool."""

    status: Status
    output: str = ""
    message: str | None = None
    error: str | None = None
    error_message: str | None = None
    charts: list[Chart] = []
    output_files: list[ArtifactInfo] = []


class ReadOutputResult(BaseModel):
    """Response from the read_output tool."""

    filename: str
    mime_type: str
    size_bytes: int
    content_base64: str


class FileListResult(BaseModel):
    """Response from the list_files tool."""

    files: list[UploadedFile] = []
    total_bytes: int = 0


class DeleteResult(BaseModel):
    """Response from the delete_file tool."""

    status: str
    remaining: int


class WorkspaceStatus(BaseModel):
    """Flags and staged files for the presentation layer."""

    files: list[UploadedFile] = []
    analyzing: bool = False
    executing: bool = False
    sandbox_ready: bool = False
    has_result: bool = False
