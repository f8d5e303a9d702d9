"""
User Directory: resolves LMS user ids into channel addresses.

The user/course domain services own contact data; dispatch workers only
ask "where do I send this user's <channel> notification?". A None answer
means the user has no address for that channel (permanent failure).
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import DirectoryConfig, get_settings
from models.schemas import ChannelType

logger = structlog.get_logger()

# Field names checked in a directory record, per channel
ADDRESS_FIELDS: dict[ChannelType, tuple[str, ...]] = {
    ChannelType.EMAIL: ("email", "email_address", "mail"),
    ChannelType.PUSH: ("push_token", "device_token", "fcm_token"),
    ChannelType.SMS: ("phone", "mobile", "phone_number"),
    ChannelType.IN_APP: ("user_id", "id"),
}


def extract_address(record: dict[str, Any], channel: ChannelType) -> Optional[str]:
    for name in ADDRESS_FIELDS[channel]:
        value = record.get(name)
        if value:
            return str(value)
    return None


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, httpx.TransportError)


class UserDirectory(abc.ABC):

    @abc.abstractmethod
    async def get_address(self, user_id: str, channel: ChannelType) -> Optional[str]:
        ...

    async def close(self) -> None:
        pass


class RestUserDirectory(UserDirectory):
    """
    Looks contact records up over REST:
        GET {base_url}{address_endpoint}  →  {"email": ..., "phone": ..., "push_token": ...}
    404 means the user is unknown (no address on any channel).
    """

    def __init__(self, config: DirectoryConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().directory
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def _fetch(self, user_id: str) -> Optional[dict[str, Any]]:
        client = await self._get_client()
        url = self.config.address_endpoint.replace("{user_id}", user_id)
        response = await client.get(url)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def get_address(self, user_id: str, channel: ChannelType) -> Optional[str]:
        record = await self._fetch(user_id)
        if record is None:
            logger.info("directory_user_unknown", user_id=user_id)
            return None
        if channel == ChannelType.IN_APP:
            return user_id
        return extract_address(record, channel)

    async def close(self):
        if self.client:
            await self.client.aclose()


class StaticUserDirectory(UserDirectory):
    """
    In-process directory for development and tests.
    In-app delivery needs no address lookup: the user id is the inbox key.
    """

    def __init__(self, records: Optional[dict[str, dict[str, Any]]] = None):
        self._records: dict[str, dict[str, Any]] = {k: dict(v) for k, v in (records or {}).items()}

    def set_record(self, user_id: str, **fields: Any) -> None:
        self._records.setdefault(user_id, {}).update(fields)

    async def get_address(self, user_id: str, channel: ChannelType) -> Optional[str]:
        if channel == ChannelType.IN_APP:
            return user_id
        record = self._records.get(user_id)
        if record is None:
            return None
        return extract_address(record, channel)


def create_user_directory(config: DirectoryConfig = None) -> UserDirectory:
    config = config or get_settings().directory
    if config.type == "rest" and config.base_url and not config.base_url.startswith("${"):
        logger.info("user_directory", type="rest", base_url=config.base_url)
        return RestUserDirectory(config)
    logger.info("user_directory", type="static")
    return StaticUserDirectory()
