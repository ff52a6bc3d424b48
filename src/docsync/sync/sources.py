"""Document sources: a local folder or a remote Google Drive folder.

A source lists the files it currently holds and hands out their bytes. Both
operations are blocking and are called from worker threads by the
orchestrator. Listing failures raise :class:`SourceUnreachable`; failures
reading one file raise :class:`ExtractionFailed` so only that file fails.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Collection, Dict, List, Optional

import httpx

from docsync.errors import ExtractionFailed, SourceUnreachable
from docsync.utils.files import has_accepted_extension, iter_source_files, normalize_extensions

LOGGER = logging.getLogger(__name__)

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_FOLDER_MIME = "application/vnd.google-apps.folder"
GOOGLE_APPS_PREFIX = "application/vnd.google-apps."

# Google-native documents have no bytes of their own and must be exported.
GOOGLE_DOC_EXPORTS: Dict[str, List[tuple[str, str]]] = {
    "application/vnd.google-apps.document": [
        ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", ".docx"),
        ("application/pdf", ".pdf"),
        ("text/plain", ".txt"),
    ],
    "application/vnd.google-apps.spreadsheet": [("text/csv", ".csv")],
    "application/vnd.google-apps.presentation": [
        ("application/vnd.openxmlformats-officedocument.presentationml.presentation", ".pptx"),
        ("application/pdf", ".pdf"),
    ],
}


@dataclass(slots=True)
class SourceFile:
    """One file as currently seen in a source."""

    identifier: str
    mtime: float
    size: int
    source_url: str
    display_path: str
    extension: str
    remote_id: Optional[str] = None
    export_mime: Optional[str] = None


class DocumentSource:
    """Capability interface implemented by every source kind."""

    kind = "abstract"

    def list_files(self) -> List[SourceFile]:
        raise NotImplementedError

    def read_bytes(self, file: SourceFile) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LocalFolderSource(DocumentSource):
    kind = "local"

    def __init__(
        self, root: Path | str, extensions: Collection[str], *, recursive: bool = True
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.extensions = normalize_extensions(extensions)
        self.recursive = recursive

    def list_files(self) -> List[SourceFile]:
        files: List[SourceFile] = []
        try:
            for path in iter_source_files(self.root, self.extensions, recursive=self.recursive):
                try:
                    stat = path.stat()
                except FileNotFoundError:
                    # vanished between walk and stat
                    continue
                files.append(
                    SourceFile(
                        identifier=str(path),
                        mtime=stat.st_mtime,
                        size=stat.st_size,
                        source_url=path.as_uri(),
                        display_path=path.relative_to(self.root).as_posix(),
                        extension=path.suffix.lower(),
                    )
                )
        except OSError as exc:
            raise SourceUnreachable(f"Cannot list {self.root}: {exc}") from exc
        return files

    def read_bytes(self, file: SourceFile) -> bytes:
        try:
            return Path(file.identifier).read_bytes()
        except OSError as exc:
            raise ExtractionFailed(f"Cannot read {file.identifier}: {exc}") from exc


def parse_drive_time(value: Optional[str]) -> float:
    """RFC 3339 timestamp from the Drive API to epoch seconds."""
    if not value:
        return 0.0
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class GoogleDriveClient:
    """Minimal Drive v3 REST client over httpx.

    The OAuth access token is read from an environment variable; obtaining
    and refreshing it happens outside docsync.
    """

    def __init__(
        self,
        *,
        token_env: str = "GOOGLE_DRIVE_TOKEN",
        client: httpx.Client | None = None,
        timeout: float = 60.0,
        base_url: str = DRIVE_API_URL,
    ) -> None:
        self.token_env = token_env
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        token = os.environ.get(self.token_env, "")
        if not token:
            raise SourceUnreachable(f"Environment variable {self.token_env} is not set")
        return {"Authorization": f"Bearer {token}"}

    def list_children(self, folder_id: str, *, drive_id: Optional[str] = None) -> List[dict]:
        params: Dict[str, str] = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": "nextPageToken, files(id, name, mimeType, modifiedTime, size, webViewLink)",
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
            "pageSize": "1000",
        }
        if drive_id:
            params["driveId"] = drive_id
            params["corpora"] = "drive"

        items: List[dict] = []
        page_token: Optional[str] = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            try:
                response = self._client.get(
                    f"{self.base_url}/files", params=params, headers=self._headers()
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise SourceUnreachable(f"Drive listing of {folder_id} failed: {exc}") from exc
            try:
                payload = response.json()
                items.extend(payload.get("files", []))
                page_token = payload.get("nextPageToken")
            except (ValueError, AttributeError, TypeError) as exc:
                raise SourceUnreachable(
                    f"Drive listing of {folder_id} returned a malformed page: {exc}"
                ) from exc
            if not page_token:
                return items

    def download(self, file_id: str, *, export_mime: Optional[str] = None) -> bytes:
        if export_mime:
            url = f"{self.base_url}/files/{file_id}/export"
            params = {"mimeType": export_mime}
        else:
            url = f"{self.base_url}/files/{file_id}"
            params = {"alt": "media", "supportsAllDrives": "true"}
        try:
            response = self._client.get(url, params=params, headers=self._headers())
            response.raise_for_status()
        except SourceUnreachable as exc:
            raise ExtractionFailed(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise ExtractionFailed(f"Drive download of {file_id} failed: {exc}") from exc
        return response.content

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class DriveSource(DocumentSource):
    """Files below one Drive folder, optionally recursive."""

    kind = "drive"

    def __init__(
        self,
        client: GoogleDriveClient,
        folder_id: str,
        extensions: Collection[str],
        *,
        recursive: bool = True,
        drive_id: Optional[str] = None,
        root_name: str = "My Drive",
    ) -> None:
        self.client = client
        self.folder_id = folder_id
        self.extensions = normalize_extensions(extensions)
        self.recursive = recursive
        self.drive_id = drive_id
        self.root_name = root_name or "My Drive"

    def _resolve(self, item: dict) -> Optional[tuple[str, Optional[str]]]:
        """Pick ``(extension, export mime)`` for an item, or None to skip it."""
        mime = item.get("mimeType", "")
        if mime == DRIVE_FOLDER_MIME:
            return None
        if mime.startswith(GOOGLE_APPS_PREFIX):
            for export_mime, extension in GOOGLE_DOC_EXPORTS.get(mime, []):
                if has_accepted_extension(f"x{extension}", self.extensions):
                    return extension, export_mime
            return None
        extension = PurePosixPath(item.get("name", "")).suffix.lower()
        if not has_accepted_extension(item.get("name", ""), self.extensions):
            return None
        return extension, None

    def _walk(self, folder_id: str, prefix: str, files: List[SourceFile]) -> None:
        for item in self.client.list_children(folder_id, drive_id=self.drive_id):
            if not item.get("id") or not item.get("name") or not item.get("mimeType"):
                continue
            path = f"{prefix}/{item['name']}"
            if item["mimeType"] == DRIVE_FOLDER_MIME:
                if self.recursive:
                    self._walk(item["id"], path, files)
                continue
            resolved = self._resolve(item)
            if resolved is None:
                continue
            extension, export_mime = resolved
            display_path = path
            if export_mime and not path.lower().endswith(extension):
                display_path = f"{path}{extension}"
            files.append(
                SourceFile(
                    identifier=f"drive:{item['id']}",
                    mtime=parse_drive_time(item.get("modifiedTime")),
                    size=int(item.get("size") or 0),
                    source_url=item.get("webViewLink")
                    or f"https://drive.google.com/open?id={item['id']}",
                    display_path=display_path,
                    extension=extension,
                    remote_id=item["id"],
                    export_mime=export_mime,
                )
            )

    def list_files(self) -> List[SourceFile]:
        LOGGER.info("Listing Drive folder %s (recursive=%s)", self.folder_id, self.recursive)
        files: List[SourceFile] = []
        self._walk(self.folder_id, self.root_name, files)
        # a file with several parents in the tree is reached once per parent
        unique: Dict[str, SourceFile] = {}
        for file in files:
            unique.setdefault(file.identifier, file)
        return sorted(unique.values(), key=lambda file: file.identifier)

    def read_bytes(self, file: SourceFile) -> bytes:
        LOGGER.debug("Downloading %s (%s)", file.display_path, file.remote_id)
        return self.client.download(file.remote_id or "", export_mime=file.export_mime)

    def close(self) -> None:
        self.client.close()
