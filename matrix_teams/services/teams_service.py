import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, List
from urllib.parse import quote

import httpx

from matrix_teams.models import Channel, ChatMessage, Conversations
from matrix_teams.services.http_client import get_http_client


logger = logging.getLogger(__name__)

TOKEN_FILE_TEMPLATE = "token-{name}.jwt"
MESSAGES_VIEW = "msnp24Equivalent|supportsMessageProperties"


class TeamsAPIError(Exception):
    """Error raised while talking to the Teams web APIs"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TeamsAuthError(TeamsAPIError):
    """Tokens are missing, unreadable or rejected"""
    pass


@dataclass
class TeamsTokens:
    """JWTs saved by the Teams token helper"""
    skype: str
    chatsvcagg: str


def _read_token(token_dir: Path, name: str) -> str:
    path = token_dir / TOKEN_FILE_TEMPLATE.format(name=name)
    try:
        token = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        raise TeamsAuthError(f"token file {path} not found")
    except OSError as e:
        raise TeamsAuthError(f"unable to read token file {path}: {e}") from e

    if not token:
        raise TeamsAuthError(f"token file {path} is empty")
    return token


def load_tokens(token_dir) -> TeamsTokens:
    """Load the Teams tokens from a token directory"""
    token_dir = Path(token_dir).expanduser()
    return TeamsTokens(
        skype=_read_token(token_dir, "skype"),
        chatsvcagg=_read_token(token_dir, "chatsvcagg"),
    )


class TeamsService:
    """Read-only client for Teams conversations and channel messages"""

    def __init__(self, tokens: TeamsTokens,
                 authz_url: str = "https://teams.microsoft.com/api/authsvc/v1.0/authz",
                 csa_url: str = "https://teams.microsoft.com/api/csa/api/v1",
                 http_client=None, timeout: float = 15.0, page_size: int = 200):
        self.tokens = tokens
        self.authz_url = authz_url
        self.csa_url = csa_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self._http_client = http_client

        # Filled in by authorize()
        self.skype_token: Optional[str] = None
        self.chat_service_url: Optional[str] = None

    @classmethod
    async def create(cls, settings, http_client=None) -> "TeamsService":
        """Load tokens from disk and authorize against Teams"""
        tokens = load_tokens(settings.teams_token_dir)
        service = cls(
            tokens,
            authz_url=settings.teams_authz_url,
            csa_url=settings.teams_csa_url,
            http_client=http_client,
            timeout=settings.teams_timeout,
            page_size=settings.teams_page_size,
        )
        await service.authorize()
        return service

    async def _client(self):
        if self._http_client is None:
            return await get_http_client()
        return self._http_client

    async def _request(self, method: str, url: str, headers: Dict[str, str],
                       params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client = await self._client()
        try:
            response = await client.request(method, url, headers=headers, params=params, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TeamsAPIError(f"request to {url} timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise TeamsAPIError(f"request to {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise TeamsAuthError(f"Teams rejected the token for {url}", status_code=response.status_code)
        if not 200 <= response.status_code < 300:
            raise TeamsAPIError(
                f"request to {url} failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TeamsAPIError(f"invalid JSON from {url}", status_code=response.status_code) from e
        if not isinstance(payload, dict):
            raise TeamsAPIError(f"unexpected response from {url}: {response.text}", status_code=response.status_code)
        return payload

    async def authorize(self) -> None:
        """Exchange the skype JWT for a skype token and the regional chat service URL"""
        payload = await self._request(
            "POST",
            self.authz_url,
            headers={"Authorization": f"Bearer {self.tokens.skype}"},
        )
        skype_token = (payload.get("tokens") or {}).get("skypeToken")
        chat_service = (payload.get("regionGtms") or {}).get("chatService")
        if not skype_token or not chat_service:
            raise TeamsAuthError("authorization response has no skype token or chat service")

        self.skype_token = skype_token
        self.chat_service_url = chat_service.rstrip("/")
        logger.debug(f"Teams authorized, chat service at {self.chat_service_url}")

    async def get_conversations(self) -> Conversations:
        """List the teams (with their channels) and chats of the current user"""
        payload = await self._request(
            "GET",
            f"{self.csa_url}/teams/users/me",
            headers={"Authorization": f"Bearer {self.tokens.chatsvcagg}"},
            params={"isPrefetch": "false", "enableMembershipSummary": "true"},
        )
        conversations = Conversations.from_dict(payload)
        logger.info(f"Teams conversations: {len(conversations.teams)} teams, {len(conversations.chats)} chats")
        return conversations

    async def get_messages(self, channel: Channel) -> List[ChatMessage]:
        """Fetch the messages of a channel, in the order Teams lists them"""
        if not self.skype_token or not self.chat_service_url:
            await self.authorize()

        url = f"{self.chat_service_url}/v1/users/ME/conversations/{quote(channel.id, safe=':@')}/messages"
        payload = await self._request(
            "GET",
            url,
            headers={"Authentication": f"skypetoken={self.skype_token}"},
            params={"view": MESSAGES_VIEW, "pageSize": self.page_size, "startTime": 1},
        )
        raw_messages = payload.get("messages") or []
        if not isinstance(raw_messages, list):
            raise TeamsAPIError(f"unexpected messages in response from {url}")
        messages = [ChatMessage.from_dict(m) for m in raw_messages if isinstance(m, dict)]
        logger.debug(f"fetched {len(messages)} messages for channel {channel.id}")
        return messages
