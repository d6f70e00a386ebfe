"""One-attempt HTTP adapter for the conversion and generation endpoints.

Every call either returns a :class:`RemoteResult` or raises RemoteError /
InvalidResponse. Retries, if ever wanted, belong to the caller.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import httpx

from . import config
from .archive import ResultKind, sniff_kind
from .errors import InvalidResponse, RemoteError
from .models import InputArtifact
from .presets import Preset


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteResult:
    payload: bytes
    kind: ResultKind
    content_type: str = "application/octet-stream"


class RemoteTransformClient:
    """Thin contract over the remote endpoints.

    Endpoint addresses, key and timeout are parameters; the module config only
    supplies defaults. Pass ``http_client`` (e.g. one built on
    ``httpx.MockTransport``) to control transport in tests.
    """

    def __init__(
        self,
        *,
        base_url: str = config.CONVERT_BASE_URL,
        generate_url: str = config.GENERATE_URL,
        api_key: str = config.GENERATE_API_KEY,
        timeout_seconds: float = config.REQUEST_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.generate_url = generate_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http = http_client
        self._owns_http = http_client is None

    async def transform(
        self,
        inputs: Sequence[InputArtifact],
        options: dict[str, str],
        *,
        preset: Preset,
    ) -> RemoteResult:
        """POST the staged inputs as multipart form data."""
        url = f"{self.base_url}{preset.endpoint_path}"
        files = [
            (preset.file_field, (artifact.display_name, artifact.payload, artifact.media_type))
            for artifact in inputs
        ]
        data = preset.form_fields(options)
        logger.info("POST %s (%d file(s), fields=%s)", url, len(files), sorted(data))

        resp = await self._send("POST", url, files=files, data=data)
        if not resp.is_success:
            raise RemoteError(
                _read_error_text(resp, preset.failure_message),
                status=resp.status_code,
            )

        payload = resp.content
        content_type = resp.headers.get("content-type", "application/octet-stream")
        if not payload:
            raise InvalidResponse("Server returned an empty response.", status=resp.status_code)

        kind = preset.result_kind
        if kind is ResultKind.AUTO:
            kind = sniff_kind(payload, content_type)
        return RemoteResult(payload=payload, kind=kind, content_type=content_type)

    async def generate(self, prompt: str, parameters: Optional[dict[str, Any]] = None, *, preset: Optional[Preset] = None) -> RemoteResult:
        """POST a predict-style JSON request and return the decoded PNG."""
        body = {"instances": [{"prompt": prompt}], "parameters": dict(parameters or {})}
        params = {"key": self.api_key} if self.api_key else None
        fallback = preset.failure_message if preset is not None else "The API returned an error."
        logger.info("POST %s (generate)", self.generate_url)

        resp = await self._send("POST", self.generate_url, json=body, params=params)
        if not resp.is_success:
            raise RemoteError(_read_error_message(resp, fallback), status=resp.status_code)

        try:
            result = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidResponse(f"API returned invalid JSON: {e}", status=resp.status_code) from e

        encoded = _first_prediction_image(result)
        if not encoded:
            raise InvalidResponse("API did not return a valid image.", status=resp.status_code)
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidResponse(f"API returned an undecodable image: {e}", status=resp.status_code) from e
        return RemoteResult(payload=payload, kind=ResultKind.SINGLE, content_type="image/png")

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = self._client()
        try:
            return await client.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteError(f"Request timed out after {self.timeout_seconds:g}s", reason="timeout") from e
        except httpx.HTTPError as e:
            raise RemoteError(f"Request failed: {e}", reason="transport") from e

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
            self._owns_http = True
        return self._http


def _first_prediction_image(result: Any) -> Optional[str]:
    if not isinstance(result, dict):
        return None
    predictions = result.get("predictions")
    if not isinstance(predictions, list) or not predictions:
        return None
    first = predictions[0]
    if not isinstance(first, dict):
        return None
    encoded = first.get("bytesBase64Encoded")
    return encoded if isinstance(encoded, str) and encoded else None


def _read_error_text(resp: httpx.Response, fallback: str) -> str:
    """The non-2xx body as-is, or ``fallback`` when it is empty or unreadable."""
    try:
        body = resp.text
    except (UnicodeDecodeError, LookupError):
        return fallback
    return body if body.strip() else fallback


def _read_error_message(resp: httpx.Response, fallback: str) -> str:
    # The generation endpoint reports failures as {"error": {"message": ...}}.
    try:
        payload = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return fallback
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return fallback
