from __future__ import annotations

from pathlib import Path

import allure
import pytest

from conftest import Board

from auto_kanban.orchestrator.attachments import (
    FilesystemAttachmentStore,
    attach_content,
    generate_storage_key,
    output_filename,
    sanitize_filename,
)
from auto_kanban.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("AI Task Execution"),
    allure.feature("Output Attachments"),
]


def test_sanitize_filename_replaces_unsafe_characters() -> None:
    assert sanitize_filename("ACME 2/output?.md") == "ACME_2_output_.md"
    assert sanitize_filename("ok-name_1.md") == "ok-name_1.md"


def test_storage_key_is_scoped_and_unique() -> None:
    first = generate_storage_key("ws-1", "issue-1", "ACME-2-output.md")
    second = generate_storage_key("ws-1", "issue-1", "ACME-2-output.md")

    assert first.startswith("attachments/ws-1/issue-1/")
    assert first.endswith("_ACME-2-output.md")
    assert first != second


def test_filesystem_store_round_trips_bytes(tmp_path: Path) -> None:
    store = FilesystemAttachmentStore(tmp_path)

    store.put("attachments/a/b/file.md", b"# Hello", "text/markdown")

    assert store.get("attachments/a/b/file.md") == b"# Hello"
    assert not list(tmp_path.rglob("*.tmp"))


def test_filesystem_store_rejects_escaping_keys(tmp_path: Path) -> None:
    store = FilesystemAttachmentStore(tmp_path / "root")

    with pytest.raises(ValueError, match="escapes attachment root"):
        store.put("../outside.md", b"x", "text/markdown")


def test_attach_content_records_metadata_and_activity(
    repository: OrchestratorRepository,
    board: Board,
    tmp_path: Path,
) -> None:
    store = FilesystemAttachmentStore(tmp_path / "blobs")
    before = repository.get_issue(issue_id=board.parent.issue_id)
    assert before is not None

    attachment = attach_content(
        store=store,
        repository=repository,
        workspace_id=board.workspace.workspace_id,
        issue_id=board.parent.issue_id,
        filename=output_filename("ACME-2"),
        content="Résumé",
        source="ai-task-execution",
    )

    assert attachment.filename == "ACME-2-output.md"
    assert attachment.size_bytes == len("Résumé".encode())
    assert store.get(attachment.storage_key).decode("utf-8") == "Résumé"
    after = repository.get_issue(issue_id=board.parent.issue_id)
    assert after is not None
    assert after.updated_at >= before.updated_at
    assert [row.attachment_id for row in repository.list_attachments(
        issue_id=board.parent.issue_id,
    )] == [attachment.attachment_id]
