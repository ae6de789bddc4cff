"""HTTP client for the external document-processing service."""

import httpx

from app.core.config import get_settings
from app.core.exceptions import ExternalOperationError
from app.core.logging import get_logger
from app.services.charging import ExternalResult

log = get_logger(__name__)


def _upstream_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase


class DocumentProcessingClient:
    """Posts an image to the document service; no retries, failures surface once."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.document_service_url,
            timeout=timeout if timeout is not None else settings.document_service_timeout_seconds,
            transport=transport,
        )

    async def process(
        self,
        path: str,
        payload: bytes,
        filename: str = "image",
        content_type: str = "application/octet-stream",
        binary: bool = False,
    ) -> ExternalResult:
        files = {"image": (filename, payload, content_type)}
        try:
            response = await self._client.post(path, files=files)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            message = _upstream_message(exc.response)
            log.warning("document_service_error", path=path, status_code=exc.response.status_code, error=message)
            raise ExternalOperationError(exc.response.status_code, message) from exc
        except httpx.RequestError as exc:
            log.warning("document_service_unreachable", path=path, error=str(exc))
            raise ExternalOperationError(None, f"Document service unreachable: {exc}") from exc

        media_type = response.headers.get("content-type", "application/octet-stream").split(";")[0]
        if binary:
            return ExternalResult(status_code=response.status_code, content=response.content, media_type=media_type)
        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalOperationError(response.status_code, "Document service returned invalid JSON") from exc
        return ExternalResult(status_code=response.status_code, data=data)

    async def close(self) -> None:
        await self._client.aclose()
