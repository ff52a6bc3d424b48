"""Tests for local and Google Drive document sources."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from docsync.errors import ExtractionFailed, SourceUnreachable
from docsync.sync.sources import (
    DriveSource,
    GoogleDriveClient,
    LocalFolderSource,
    SourceFile,
    parse_drive_time,
)


class TestLocalFolderSource:
    """Listing and reading a folder on disk."""

    def test_list_files(self, tmp_path: Path) -> None:
        (tmp_path / "b.md").write_text("# B")
        (tmp_path / "a.txt").write_text("A")
        (tmp_path / "skip.png").write_bytes(b"\x89PNG")
        sub = tmp_path / "sub"
        sub.mkdir()
        (sub / "c.md").write_text("C")

        files = LocalFolderSource(tmp_path, ["md", ".txt"]).list_files()

        assert [f.display_path for f in files] == ["a.txt", "b.md", "sub/c.md"]
        first = files[0]
        assert first.identifier == str((tmp_path / "a.txt").resolve())
        assert first.source_url.startswith("file://")
        assert first.extension == ".txt"
        assert first.size == 1

    def test_non_recursive(self, tmp_path: Path) -> None:
        (tmp_path / "top.md").write_text("x")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "deep.md").write_text("x")

        files = LocalFolderSource(tmp_path, [".md"], recursive=False).list_files()

        assert [f.display_path for f in files] == ["top.md"]

    def test_read_bytes(self, tmp_path: Path) -> None:
        (tmp_path / "a.md").write_bytes(b"content")
        source = LocalFolderSource(tmp_path, [".md"])

        assert source.read_bytes(source.list_files()[0]) == b"content"

    def test_missing_root_is_unreachable(self, tmp_path: Path) -> None:
        with pytest.raises(SourceUnreachable):
            LocalFolderSource(tmp_path / "gone", [".md"]).list_files()

    def test_vanished_file_fails_extraction(self, tmp_path: Path) -> None:
        source = LocalFolderSource(tmp_path, [".md"])
        ghost = SourceFile(str(tmp_path / "ghost.md"), 0.0, 0, "", "ghost.md", ".md")

        with pytest.raises(ExtractionFailed):
            source.read_bytes(ghost)


def test_parse_drive_time() -> None:
    assert parse_drive_time("1970-01-01T00:01:00.000Z") == 60.0
    assert parse_drive_time("1970-01-01T00:00:10") == 10.0
    assert parse_drive_time(None) == 0.0


FOLDER = "application/vnd.google-apps.folder"
GDOC = "application/vnd.google-apps.document"

LISTINGS = {
    ("root", None): {
        "files": [
            {"id": "f1", "name": "report.pdf", "mimeType": "application/pdf", "modifiedTime": "2024-01-01T00:00:00Z", "size": "10", "webViewLink": "https://drive.test/f1"},
            {"id": "d1", "name": "Projects", "mimeType": FOLDER},
        ],
        "nextPageToken": "page2",
    },
    ("root", "page2"): {
        "files": [
            {"id": "g1", "name": "Plan", "mimeType": GDOC, "modifiedTime": "2024-02-01T00:00:00Z"},
            {"id": "p1", "name": "photo.png", "mimeType": "image/png"},
        ]
    },
    ("d1", None): {
        "files": [{"id": "f2", "name": "notes.md", "mimeType": "text/markdown", "size": "5"}],
    },
}


def _drive_handler(requests: list):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        if path.endswith("/files"):
            folder = request.url.params["q"].split("'")[1]
            payload = LISTINGS.get((folder, request.url.params.get("pageToken")))
            if payload is None:
                return httpx.Response(404)
            return httpx.Response(200, json=payload)
        if path.endswith("/export"):
            return httpx.Response(200, content=b"exported " + request.url.params["mimeType"].encode())
        if path.endswith("/files/f1"):
            return httpx.Response(200, content=b"%PDF raw")
        return httpx.Response(500)

    return handler


@pytest.fixture
def drive_requests() -> list:
    return []


@pytest.fixture
def drive_client(monkeypatch: pytest.MonkeyPatch, drive_requests: list) -> GoogleDriveClient:
    monkeypatch.setenv("GOOGLE_DRIVE_TOKEN", "ya29.token")
    client = httpx.Client(transport=httpx.MockTransport(_drive_handler(drive_requests)))
    return GoogleDriveClient(client=client, base_url="https://drive.test/v3")


class TestDriveSource:
    """Drive listing over a mocked REST API."""

    def test_recursive_listing(self, drive_client: GoogleDriveClient) -> None:
        files = DriveSource(drive_client, "root", [".pdf", ".md"]).list_files()

        by_id = {f.remote_id: f for f in files}
        assert [f.identifier for f in files] == ["drive:f1", "drive:f2", "drive:g1"]
        assert by_id["f1"].display_path == "My Drive/report.pdf"
        assert by_id["f1"].source_url == "https://drive.test/f1"
        assert by_id["f1"].size == 10
        assert by_id["f2"].display_path == "My Drive/Projects/notes.md"
        assert by_id["f2"].source_url == "https://drive.google.com/open?id=f2"

    def test_google_doc_is_exported_in_first_accepted_format(
        self, drive_client: GoogleDriveClient
    ) -> None:
        files = DriveSource(drive_client, "root", [".pdf"], root_name="Team").list_files()

        doc = next(f for f in files if f.remote_id == "g1")
        assert doc.export_mime == "application/pdf"
        assert doc.extension == ".pdf"
        assert doc.display_path == "Team/Plan.pdf"
        assert doc.mtime == parse_drive_time("2024-02-01T00:00:00Z")

    def test_non_recursive_skips_subfolders(self, drive_client: GoogleDriveClient) -> None:
        files = DriveSource(drive_client, "root", [".md", ".pdf"], recursive=False).list_files()
        assert "drive:f2" not in {f.identifier for f in files}

    def test_read_bytes_downloads_or_exports(self, drive_client: GoogleDriveClient) -> None:
        source = DriveSource(drive_client, "root", [".pdf"])
        files = {f.remote_id: f for f in source.list_files()}

        assert source.read_bytes(files["f1"]) == b"%PDF raw"
        assert source.read_bytes(files["g1"]) == b"exported application/pdf"

    def test_requests_carry_token_and_drive_id(
        self, drive_client: GoogleDriveClient, drive_requests: list
    ) -> None:
        DriveSource(drive_client, "root", [".pdf"], drive_id="shared1", recursive=False).list_files()

        first = drive_requests[0]
        assert first.headers["authorization"] == "Bearer ya29.token"
        assert first.url.params["driveId"] == "shared1"
        assert first.url.params["corpora"] == "drive"

    def test_listing_error_is_unreachable(self, drive_client: GoogleDriveClient) -> None:
        with pytest.raises(SourceUnreachable):
            DriveSource(drive_client, "unknown-folder", [".pdf"]).list_files()

    def test_download_error_fails_extraction(self, drive_client: GoogleDriveClient) -> None:
        source = DriveSource(drive_client, "root", [".pdf"])
        broken = SourceFile("drive:zz", 0.0, 0, "", "My Drive/zz.pdf", ".pdf", remote_id="zz")

        with pytest.raises(ExtractionFailed):
            source.read_bytes(broken)

    def test_missing_token(self, drive_client: GoogleDriveClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GOOGLE_DRIVE_TOKEN")

        with pytest.raises(SourceUnreachable, match="GOOGLE_DRIVE_TOKEN"):
            DriveSource(drive_client, "root", [".pdf"]).list_files()


def _static_drive(monkeypatch: pytest.MonkeyPatch, listings: dict) -> GoogleDriveClient:
    monkeypatch.setenv("GOOGLE_DRIVE_TOKEN", "ya29.token")

    def handler(request: httpx.Request) -> httpx.Response:
        folder = request.url.params["q"].split("'")[1]
        body = listings[folder]
        if isinstance(body, bytes):
            return httpx.Response(200, content=body)
        return httpx.Response(200, json=body)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return GoogleDriveClient(client=client, base_url="https://drive.test/v3")


class TestDriveListingEdgeCases:
    def test_file_with_two_parents_is_listed_once(self, monkeypatch: pytest.MonkeyPatch) -> None:
        shared = {"id": "s1", "name": "shared.md", "mimeType": "text/markdown"}
        client = _static_drive(
            monkeypatch,
            {
                "root": {"files": [shared, {"id": "d1", "name": "Team", "mimeType": FOLDER}]},
                "d1": {"files": [shared]},
            },
        )

        files = DriveSource(client, "root", [".md"]).list_files()

        assert [f.identifier for f in files] == ["drive:s1"]
        assert files[0].display_path == "My Drive/shared.md"

    def test_malformed_listing_is_unreachable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        client = _static_drive(monkeypatch, {"root": b"<html>proxy error</html>"})

        with pytest.raises(SourceUnreachable, match="malformed"):
            DriveSource(client, "root", [".md"]).list_files()
