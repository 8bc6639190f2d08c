"""In-memory registry of uploaded file bytes, keyed by filename."""

from __future__ import annotations

import asyncio
import mimetypes
from collections.abc import Iterator

import structlog

from chatexcel.config import ChatExcelConfig
from chatexcel.errors import BatchTooLarge, ChatExcelError, InvalidFilename, TooManyFiles
from chatexcel.models import IncomingFile, RejectedFile, TableInfo, UploadedFile, UploadReport
from chatexcel.schema import file_kind, infer_dtypes
from chatexcel.validation import is_safe_filename

log = structlog.get_logger("chatexcel.staging")


class _StagedEntry:
    """Raw bytes of a staged file plus its user-facing metadata."""

    __slots__ = ("data", "info")

    def __init__(self, info: UploadedFile, data: bytes) -> None:
        self.info = info
        self.data = data


class UploadStagingStore:
    """Hold uploaded bytes until the sandbox needs them.

    The store stays the source of truth: the sandbox only ever receives copies,
    so it can be torn down and re-materialized at any time. Mutations are
    serialized by the single event loop; there is no internal locking.
    """

    def __init__(self, config: ChatExcelConfig) -> None:
        self._config = config
        self._entries: dict[str, _StagedEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    @property
    def files(self) -> list[UploadedFile]:
        """Staged files in upload order."""
        return [entry.info for entry in self._entries.values()]

    @property
    def total_bytes(self) -> int:
        return sum(entry.info.size_bytes for entry in self._entries.values())

    def get(self, name: str) -> bytes | None:
        entry = self._entries.get(name)
        return entry.data if entry else None

    def entries(self) -> Iterator[tuple[str, bytes]]:
        """Yield (name, bytes) for every staged file."""
        for name, entry in list(self._entries.items()):
            yield name, entry.data

    def table_info(self) -> dict[str, TableInfo]:
        """Schema of every staged file, in the resolver's wire shape."""
        return {
            name: TableInfo(dtypes=entry.info.column_types, file_type=entry.info.kind)
            for name, entry in self._entries.items()
        }

    # --- Mutation ---

    def check_bounds(self, files: list[IncomingFile]) -> None:
        """Raise if admitting the whole batch would break the count or size bound.

        Bounds are evaluated on the resulting set: a name already staged is
        replaced, so it counts once and with its new size.
        """
        incoming = {f.name: f.size_bytes for f in files}
        kept = {
            name: entry.info.size_bytes
            for name, entry in self._entries.items()
            if name not in incoming
        }

        count = len(kept) + len(incoming)
        if count > self._config.max_files:
            raise TooManyFiles(
                f"At most {self._config.max_files} files can be uploaded "
                f"({count} requested)."
            )

        total = sum(kept.values()) + sum(incoming.values())
        if total > self._config.max_total_bytes:
            limit_mb = self._config.max_total_bytes // (1024 * 1024)
            raise BatchTooLarge(
                f"Total size of all files cannot exceed {limit_mb}MB "
                f"({total} bytes requested)."
            )

    async def add(self, files: list[IncomingFile]) -> UploadReport:
        """Validate and stage a batch.

        Batch bounds are all-or-nothing and raise before anything is staged.
        Extension and schema failures reject only the offending file. Admitted
        files are committed together once every file has been inspected.
        """
        self.check_bounds(files)

        report = UploadReport()
        admitted: dict[str, _StagedEntry] = {}
        for incoming in files:
            try:
                if not is_safe_filename(incoming.name):
                    raise InvalidFilename(f"Invalid filename '{incoming.name}'.")
                kind = file_kind(incoming.name, self._config.allowed_extensions)
                dtypes = await asyncio.to_thread(
                    infer_dtypes, incoming.content, kind, self._config.schema_sniff_bytes
                )
            except ChatExcelError as exc:
                log.warning(
                    "file_rejected",
                    filename=incoming.name,
                    error=exc.code,
                    reason=exc.message,
                )
                report.rejected.append(
                    RejectedFile(name=incoming.name, error=exc.code, message=exc.message)
                )
                continue

            mime = incoming.mime_type or mimetypes.guess_type(incoming.name)[0] or ""
            info = UploadedFile(
                name=incoming.name,
                size_bytes=incoming.size_bytes,
                mime_type=mime,
                column_types=dtypes,
                kind=kind,
            )
            admitted[incoming.name] = _StagedEntry(info, bytes(incoming.content))
            report.staged.append(info)

        for name, entry in admitted.items():
            replaced = name in self._entries
            self._entries.pop(name, None)
            self._entries[name] = entry
            log.info(
                "file_staged",
                filename=name,
                size_bytes=entry.info.size_bytes,
                kind=entry.info.kind,
                columns=len(entry.info.column_types),
                replaced=replaced,
            )
        return report

    def remove(self, name: str) -> bool:
        """Drop a staged file. Returns False when the name was not staged."""
        entry = self._entries.pop(name, None)
        if entry is None:
            return False
        log.info("file_unstaged", filename=name, remaining=len(self._entries))
        return True
