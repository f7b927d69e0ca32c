"""Client for the remote backup directory and the object storage behind it"""
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError as SchemaError

from ledgerkeep.config import Settings, get_settings
from ledgerkeep.errors import NetworkError, NotFoundError, ValidationError
from ledgerkeep.schemas.backup import (
    BackupInfo,
    DownloadUrlResponse,
    ReportJobStatusPayload,
    UploadUrlResponse,
)
from ledgerkeep.services.auth import AuthCredentials, ChallengeAuthenticator

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(model: Type[ModelT], data: Any, endpoint: str) -> ModelT:
    if data is None:
        raise ValidationError(f"Empty response from {endpoint}")
    try:
        return model.model_validate(data)
    except SchemaError as e:
        raise ValidationError(f"Malformed response from {endpoint}: {e.error_count()} errors") from e


class BackupDirectoryClient:
    """
    Backup API client.

    Every call except the challenge fetch is authenticated with a freshly
    signed challenge. Ack-only calls accept empty bodies.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        authenticator: ChallengeAuthenticator,
        settings: Optional[Settings] = None,
    ):
        self._http = http
        self._auth = authenticator
        self.settings = settings or get_settings()

    def _url(self, endpoint: str) -> str:
        return f"{self.settings.server_endpoint.rstrip('/')}/v0{endpoint}"

    async def _post(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        credentials: Optional[AuthCredentials] = None,
    ) -> Any:
        """POST a JSON payload and return the decoded body, or None when empty"""
        credentials = credentials or await self._auth.authenticate()
        headers = {"Content-Type": "application/json", **credentials.headers()}

        try:
            response = await self._http.post(self._url(endpoint), json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.debug("Failed to send request", endpoint=endpoint, error=str(e))
            raise NetworkError(f"Failed to send request to {endpoint}: {e}") from e

        if not response.is_success:
            logger.debug("API error", endpoint=endpoint, status=response.status_code)
            raise NetworkError("API Error", status=response.status_code, body=response.text)

        if response.status_code == 204 or not response.content.strip():
            return None

        try:
            return response.json()
        except ValueError as e:
            raise ValidationError(f"Malformed JSON from {endpoint}") from e

    async def get_upload_url(self, version: int, size: int) -> UploadUrlResponse:
        """Request a pre-signed upload slot for a backup version"""
        data = await self._post(
            "/backup/upload_url",
            {"backup_version": version, "backup_size": size},
        )
        return _parse(UploadUrlResponse, data, "/backup/upload_url")

    async def complete_upload(self, s3_key: str, version: int, size: int) -> None:
        """Publish metadata for an uploaded object"""
        await self._post(
            "/backup/complete_upload",
            {"s3_key": s3_key, "backup_version": version, "backup_size": size},
        )

    async def list_backups(self) -> List[BackupInfo]:
        data = await self._post("/backup/list", {})
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValidationError("Malformed response from /backup/list")
        return [_parse(BackupInfo, item, "/backup/list") for item in data]

    async def get_download_url(
        self,
        version: Optional[int] = None,
        credentials: Optional[AuthCredentials] = None,
    ) -> DownloadUrlResponse:
        """
        Pre-signed URL for a backup version, or the latest when version is None.

        Restore passes phrase-derived credentials since no wallet session exists.
        """
        payload: Dict[str, Any] = {}
        if version is not None:
            payload["backup_version"] = version

        try:
            data = await self._post("/backup/download_url", payload, credentials=credentials)
        except NetworkError as e:
            if e.status == 404:
                raise NotFoundError(
                    f"No backup found for version {version if version is not None else 'latest'}"
                ) from e
            raise
        return _parse(DownloadUrlResponse, data, "/backup/download_url")

    async def delete_backup(self, version: int) -> None:
        await self._post("/backup/delete", {"backup_version": version})

    async def update_settings(self, enabled: bool) -> None:
        await self._post("/backup/settings", {"backup_enabled": enabled})

    async def report_job_status(self, payload: ReportJobStatusPayload) -> None:
        await self._post("/report_job_status", payload.model_dump(mode="json"))

    # Object storage

    async def put_object(self, upload_url: str, data: bytes) -> None:
        """PUT sealed bytes as raw content to a pre-signed URL"""
        try:
            response = await self._http.put(
                upload_url,
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Upload failed: {e}") from e

        if not response.is_success:
            raise NetworkError("Upload failed", status=response.status_code, body=response.text)

    async def download_object(self, download_url: str) -> bytes:
        try:
            response = await self._http.get(download_url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Download failed: {e}") from e

        if not response.is_success:
            raise NetworkError("Download failed", status=response.status_code, body=response.text)
        if not response.content:
            raise ValidationError("Downloaded backup is empty")
        return response.content
