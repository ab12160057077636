import itertools
import logging
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any
from urllib.parse import quote

import httpx

from matrix_teams.services.http_client import get_http_client


logger = logging.getLogger(__name__)

CLIENT_API_PREFIX = "/_matrix/client/v3"


class MatrixAPIError(Exception):
    """Error returned by the homeserver, or raised while talking to it"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 errcode: Optional[str] = None, contents: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.errcode = errcode
        self.error = message
        self.contents = contents

    def __str__(self) -> str:
        if self.status_code is None:
            return self.error
        if self.errcode:
            return f"{self.status_code} {self.errcode}: {self.error}"
        return f"{self.status_code}: {self.error}"


@dataclass
class CreateRoomRequest:
    """Body of a createRoom call"""
    room_alias_name: Optional[str] = None
    name: Optional[str] = None
    visibility: Optional[str] = None
    topic: Optional[str] = None
    preset: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "room_alias_name": self.room_alias_name,
            "name": self.name,
            "visibility": self.visibility,
            "topic": self.topic,
            "preset": self.preset,
        }
        return {key: value for key, value in body.items() if value is not None}


class MatrixService:
    """Client for the parts of the Matrix client-server API the bridge needs"""

    def __init__(self, homeserver_url: str, access_token: Optional[str],
                 user_id: str = "teams-proxy", http_client=None, timeout: float = 10.0):
        self.homeserver_url = homeserver_url.rstrip("/")
        self.access_token = access_token
        self.user_id = user_id
        self.timeout = timeout
        self._http_client = http_client
        self._txn_counter = itertools.count()

    @classmethod
    def from_settings(cls, settings, http_client=None) -> "MatrixService":
        return cls(
            settings.matrix_url,
            settings.as_token,
            user_id=settings.matrix_user_id,
            http_client=http_client,
            timeout=settings.matrix_timeout,
        )

    async def _client(self):
        if self._http_client is None:
            return await get_http_client()
        return self._http_client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _params(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        params = {}
        # Application services may act as any user in their namespace
        if self.user_id and self.user_id.startswith("@"):
            params["user_id"] = self.user_id
        if extra:
            params.update(extra)
        return params

    def _next_txn_id(self) -> str:
        return f"mt{time.time_ns()}.{next(self._txn_counter)}"

    async def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        url = f"{self.homeserver_url}{CLIENT_API_PREFIX}{path}"
        client = await self._client()

        try:
            response = await client.request(
                method,
                url,
                json=json_body if json_body is not None else {},
                params=self._params(params),
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise MatrixAPIError(f"request to {path} timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise MatrixAPIError(f"request to {path} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise self._error_from_response(response)

        try:
            return response.json()
        except ValueError as e:
            raise MatrixAPIError(
                f"invalid JSON from {path}", status_code=response.status_code, contents=response.text
            ) from e

    @staticmethod
    def _error_from_response(response) -> MatrixAPIError:
        errcode = None
        message = f"HTTP {response.status_code}"
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            errcode = payload.get("errcode")
            message = payload.get("error") or message
        return MatrixAPIError(message, status_code=response.status_code, errcode=errcode, contents=response.text)

    @staticmethod
    def _require(payload: Dict[str, Any], key: str, path: str) -> str:
        value = payload.get(key) if isinstance(payload, dict) else None
        if not value:
            raise MatrixAPIError(f"response from {path} has no {key}", status_code=200, contents=str(payload))
        return value

    async def create_room(self, request: CreateRoomRequest) -> str:
        """Create a room and return its room ID"""
        payload = await self._request("POST", "/createRoom", json_body=request.to_dict())
        room_id = self._require(payload, "room_id", "/createRoom")
        logger.debug(f"created room {room_id} (alias={request.room_alias_name})")
        return room_id

    async def join_room(self, room_id_or_alias: str, server_name: Optional[str] = None,
                        content: Optional[Dict[str, Any]] = None) -> str:
        """Join a room by ID or alias and return the joined room ID"""
        path = f"/join/{quote(room_id_or_alias, safe='')}"
        params = {"server_name": server_name} if server_name else None
        payload = await self._request("POST", path, json_body=content or {}, params=params)
        return self._require(payload, "room_id", path)

    async def send_message_event(self, room_id: str, event_type: str, content: Dict[str, Any]) -> str:
        """Send a message event and return its event ID"""
        path = (
            f"/rooms/{quote(room_id, safe='')}/send/"
            f"{quote(event_type, safe='')}/{quote(self._next_txn_id(), safe='')}"
        )
        payload = await self._request("PUT", path, json_body=content)
        return self._require(payload, "event_id", path)
