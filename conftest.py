import json

import pytest

from matrix_teams.bridge import Bridge
from matrix_teams.config import Settings
from matrix_teams.models import ChatMessage, Conversations
from matrix_teams.services.matrix_service import MatrixAPIError


class FakeResponse:
    def __init__(self, status_code, json_data=None, text=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else json.dumps(json_data)

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json


class FakeHTTPClient:
    """Records requests and answers them from a list of responses, in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeMatrix:
    """Stands in for MatrixService in bridge and API tests."""

    def __init__(self, existing_aliases=(), unjoinable=(), failing_sends=0):
        self.existing_aliases = set(existing_aliases)
        self.unjoinable = set(unjoinable)
        self.failing_sends = failing_sends
        self.created = []
        self.joined = []
        self.sent = []

    async def create_room(self, request):
        if request.room_alias_name in self.existing_aliases:
            raise MatrixAPIError("Room alias already taken", status_code=400, errcode="M_ROOM_IN_USE",
                                 contents='{"errcode":"M_ROOM_IN_USE"}')
        self.created.append(request)
        return f"!{request.room_alias_name}:example.org"

    async def join_room(self, room_id_or_alias, server_name=None, content=None):
        if room_id_or_alias in self.unjoinable:
            raise MatrixAPIError("Room not found", status_code=404, errcode="M_NOT_FOUND",
                                 contents='{"errcode":"M_NOT_FOUND"}')
        self.joined.append((room_id_or_alias, server_name))
        return f"!joined-{room_id_or_alias.lstrip('#')}:example.org"

    async def send_message_event(self, room_id, event_type, content):
        if self.failing_sends:
            self.failing_sends -= 1
            raise MatrixAPIError("Too many requests", status_code=429, errcode="M_LIMIT_EXCEEDED")
        self.sent.append((room_id, event_type, content))
        return f"$event{len(self.sent)}"


class FakeTeams:
    def __init__(self, conversations=None, messages=None, failing_channels=(), conversations_error=None):
        self.conversations = conversations or {"teams": [], "chats": []}
        self.messages = messages or {}
        self.failing_channels = set(failing_channels)
        self.conversations_error = conversations_error

    async def get_conversations(self):
        if self.conversations_error:
            raise self.conversations_error
        return Conversations.from_dict(self.conversations)

    async def get_messages(self, channel):
        from matrix_teams.services.teams_service import TeamsAPIError

        if channel.id in self.failing_channels:
            raise TeamsAPIError("request failed: 500", status_code=500)
        return [ChatMessage.from_dict(m) for m in self.messages.get(channel.id, [])]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        host="127.0.0.1",
        port=8003,
        debug=False,
        matrix_url="http://localhost:8008",
        matrix_user_id="teams-proxy",
        matrix_server_name=None,
        hs_token=None,
        as_token="as-secret",
        room_alias_prefix="teams_",
        room_visibility="public",
        join_server_name="matrix-teams",
        teams_token_dir=str(tmp_path / "tokens"),
        sync_on_startup=False,
    )


@pytest.fixture
def fake_matrix():
    return FakeMatrix()


@pytest.fixture
def bridge(settings, fake_matrix):
    return Bridge(settings, matrix=fake_matrix, teams=FakeTeams())
