"""
Photo avatar provider client: asset upload, avatar group creation, training.

``ProviderClient`` is the contract the pipeline consumes; ``HttpProviderClient``
talks to the HeyGen REST API with httpx. Every call carries the static
``X-Api-Key`` header.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from avatar_pipeline.pipeline.errors import ProviderApiError, UploadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadResult:
    image_key: str


@dataclass(frozen=True)
class AvatarGroup:
    avatar_id: str
    group_id: str
    preview_image_url: Optional[str] = None


@dataclass(frozen=True)
class TrainingAck:
    accepted: bool
    status_code: Optional[int] = None
    body: Any = None


class ProviderClient(ABC):
    """Operations the photo avatar worker needs from the provider."""

    @abstractmethod
    async def upload_asset(
        self, data: bytes, content_type: str, idempotency_key: Optional[str] = None
    ) -> UploadResult:
        ...

    @abstractmethod
    async def create_avatar_group(
        self, name: str, image_key: str, idempotency_key: Optional[str] = None
    ) -> AvatarGroup:
        ...

    @abstractmethod
    async def train(self, group_id: str) -> TrainingAck:
        """Request training. Never raises for HTTP errors; see ``TrainingAck``."""
        ...

    async def aclose(self) -> None:
        return None


class HttpProviderClient(ProviderClient):
    def __init__(
        self,
        api_key: str,
        base_url: str,
        upload_url: str,
        timeout: float = 60.0,
        send_idempotency_key: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._upload_url = upload_url
        self._send_idempotency_key = send_idempotency_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"X-Api-Key": api_key, "accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "HttpProviderClient":
        return cls(
            api_key=settings.heygen_api_key,
            base_url=settings.heygen_base_url,
            upload_url=settings.heygen_upload_url,
            timeout=settings.provider_timeout_seconds,
            send_idempotency_key=settings.provider_send_idempotency_key,
        )

    async def __aenter__(self) -> "HttpProviderClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def upload_asset(
        self, data: bytes, content_type: str, idempotency_key: Optional[str] = None
    ) -> UploadResult:
        response = await self._request(
            "POST",
            self._upload_url,
            content=data,
            headers=self._headers(
                {"Content-Type": content_type or "image/jpeg"}, idempotency_key
            ),
        )
        body = _json_or_none(response)
        image_key = _data(body).get("image_key")
        if not image_key:
            logger.error(f"Asset upload returned no image_key: {body}")
            raise UploadError("No image_key returned from provider")
        return UploadResult(image_key=image_key)

    async def create_avatar_group(
        self, name: str, image_key: str, idempotency_key: Optional[str] = None
    ) -> AvatarGroup:
        response = await self._request(
            "POST",
            "/photo_avatar/avatar_group/create",
            json={"name": name, "image_key": image_key},
            headers=self._headers({}, idempotency_key),
        )
        body = _json_or_none(response)
        data = _data(body)
        avatar_id = data.get("id")
        group_id = data.get("group_id")
        if not avatar_id or not group_id:
            raise ProviderApiError(
                "Avatar group response is missing id or group_id",
                status_code=response.status_code,
                body=body,
            )
        return AvatarGroup(
            avatar_id=avatar_id,
            group_id=group_id,
            preview_image_url=data.get("image_url"),
        )

    async def train(self, group_id: str) -> TrainingAck:
        try:
            response = await self._client.post(
                "/photo_avatar/train", json={"group_id": group_id}
            )
        except httpx.HTTPError as exc:
            logger.warning(f"Training request for group {group_id} failed: {exc}")
            return TrainingAck(accepted=False, body=str(exc))

        body = _json_or_none(response)
        logger.info(f"Training request for group {group_id}: {response.status_code} {body}")
        return TrainingAck(
            accepted=response.is_success,
            status_code=response.status_code,
            body=body,
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderApiError(f"Provider request failed: {exc}") from exc

        if not response.is_success:
            body = _json_or_none(response)
            raise ProviderApiError(
                f"Provider returned HTTP {response.status_code} for {url}",
                status_code=response.status_code,
                body=body if body is not None else response.text,
            )
        return response

    def _headers(
        self, headers: Dict[str, str], idempotency_key: Optional[str]
    ) -> Dict[str, str]:
        if self._send_idempotency_key and idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _data(body: Any) -> Dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return {}
