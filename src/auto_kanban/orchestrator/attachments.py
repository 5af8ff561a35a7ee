"""Attachment storage for generated subtask output."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from auto_kanban.orchestrator.models import AttachmentView
from auto_kanban.orchestrator.repository import OrchestratorRepository

MARKDOWN_MIME_TYPE = "text/markdown"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class AttachmentStore(Protocol):
    """Blob store addressed by storage key."""

    def put(self, key: str, content: bytes, mime_type: str) -> None: ...

    def get(self, key: str) -> bytes: ...


class FilesystemAttachmentStore:
    """Stores blobs under a root directory, one file per storage key."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def put(self, key: str, content: bytes, mime_type: str) -> None:
        del mime_type
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_bytes(content)
        tmp_path.replace(path)

    def get(self, key: str) -> bytes:
        return self._path_for(key).read_bytes()

    def _path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if not path.is_relative_to(root):
            raise ValueError(f"Storage key escapes attachment root: {key}")
        return path


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)


def generate_storage_key(workspace_id: str, issue_id: str, filename: str) -> str:
    return f"attachments/{workspace_id}/{issue_id}/{uuid4()}_{sanitize_filename(filename)}"


def output_filename(identifier: str) -> str:
    return f"{identifier}-output.md"


def attach_content(  # noqa: PLR0913
    *,
    store: AttachmentStore,
    repository: OrchestratorRepository,
    workspace_id: str,
    issue_id: str,
    filename: str,
    content: str,
    source: str,
    mime_type: str = MARKDOWN_MIME_TYPE,
) -> AttachmentView:
    """Upload content then record its metadata on the issue."""

    data = content.encode("utf-8")
    storage_key = generate_storage_key(workspace_id, issue_id, filename)
    store.put(storage_key, data, mime_type)
    return repository.add_attachment(
        issue_id=issue_id,
        filename=filename,
        storage_key=storage_key,
        mime_type=mime_type,
        size_bytes=len(data),
        source=source,
    )
