import logging
from typing import Optional

from pydantic import ValidationError

from matrix_teams.config import Settings, settings as default_settings
from matrix_teams.formatting import alias_localpart, clean_id, full_alias, message_content
from matrix_teams.models import Channel, ChannelResult, SyncReport, Team, Transaction, CREATED, JOINED, SKIPPED
from matrix_teams.services.matrix_service import CreateRoomRequest, MatrixAPIError, MatrixService
from matrix_teams.services.teams_service import TeamsAPIError, TeamsService


logger = logging.getLogger(__name__)


class BridgeError(Exception):
    """A sync run could not start or could not list the Teams conversations"""
    pass


class Bridge:
    """Mirrors Teams channels into Matrix rooms and serves the Application Service calls."""

    def __init__(self, settings: Optional[Settings] = None,
                 matrix: Optional[MatrixService] = None,
                 teams: Optional[TeamsService] = None) -> None:
        self.settings = settings or default_settings
        self.matrix = matrix or MatrixService.from_settings(self.settings)
        # Created on the first sync unless given
        self.teams = teams

    @property
    def teams_connected(self) -> bool:
        return self.teams is not None

    # ------------------------- Application Service ------------------------- #
    async def provision_alias(self, room_alias: str) -> str:
        """Create the room a queried alias points to and return its room ID."""
        localpart = alias_localpart(room_alias)
        if not localpart:
            raise ValueError(f"invalid room alias {room_alias!r}")

        room_id = await self.matrix.create_room(CreateRoomRequest(room_alias_name=localpart))
        logger.debug(f"room: {room_id} for alias {room_alias}")
        return room_id

    def log_transaction(self, txn_id: int, body: bytes) -> int:
        """Log a pushed transaction and return how many events it carried."""
        text = body.decode("utf-8", errors="replace")
        logger.debug(f"transaction {txn_id}: {text}")

        try:
            transaction = Transaction.model_validate_json(body)
        except ValidationError:
            return 0

        try:
            summary = ", ".join(f"{t}={n}" for t, n in sorted(transaction.event_types().items()))
        except (TypeError, ValueError) as e:
            summary = f"unreadable event types: {e}"
        logger.debug(f"transaction {txn_id}: {len(transaction.events)} events ({summary})")
        return len(transaction.events)

    # ------------------------- Teams sync ------------------------- #
    async def init_teams_client(self) -> TeamsService:
        if self.teams is None:
            self.teams = await TeamsService.create(self.settings)
        return self.teams

    def room_alias_for(self, channel: Channel) -> str:
        return f"{self.settings.room_alias_prefix}{clean_id(channel.id)}"

    @staticmethod
    def room_name_for(team: Team, channel: Channel) -> str:
        return f"{team.display_name} - {channel.display_name}"

    async def sync_teams(self) -> SyncReport:
        """Walk every Teams channel once, mirroring it and its messages into Matrix."""
        try:
            teams = await self.init_teams_client()
        except TeamsAPIError as e:
            raise BridgeError(f"unable to initialize Teams Client: {e}") from e

        try:
            conversations = await teams.get_conversations()
        except TeamsAPIError as e:
            raise BridgeError(f"unable to get conversations: {e}") from e

        report = SyncReport()
        for team in conversations.teams:
            for channel in team.channels:
                result = await self.sync_channel(team, channel)
                report.channels.append(result)

        logger.info(f"sync finished: {report.to_dict()}")
        return report

    async def sync_channel(self, team: Team, channel: Channel) -> ChannelResult:
        alias = self.room_alias_for(channel)
        room_name = self.room_name_for(team, channel)
        result = ChannelResult(team=team.display_name, channel=channel.display_name, alias=alias, status=SKIPPED)

        logger.debug(f"creating room alias: {alias} for {room_name}")
        try:
            result.room_id = await self.matrix.create_room(CreateRoomRequest(
                room_alias_name=alias,
                name=room_name,
                visibility=self.settings.room_visibility,
            ))
            result.status = CREATED
        except MatrixAPIError as create_error:
            # Room already exists?
            logger.debug(f"unable to create room {alias}: {create_error}")
            try:
                result.room_id = await self.matrix.join_room(
                    full_alias(alias, self.settings.matrix_server_name),
                    server_name=self.settings.join_server_name,
                )
                result.status = JOINED
            except MatrixAPIError as join_error:
                logger.warning(f"unable to join room: {join_error.contents or join_error}")
                result.error = str(join_error)
                return result

        logger.debug(f"created room for channel {room_name}: {result.room_id}")

        try:
            messages = await self.teams.get_messages(channel)
        except TeamsAPIError as e:
            logger.warning(f"unable to get messages for channel {channel.id}: {e}")
            result.error = str(e)
            return result

        for message in messages:
            content = message_content(message.content) if message.is_text else None
            if content is None:
                result.messages_skipped += 1
                continue
            try:
                event_id = await self.matrix.send_message_event(result.room_id, "m.room.message", content)
            except MatrixAPIError as e:
                logger.warning(f"unable to send message to {result.room_id}: {e}")
                result.messages_failed += 1
                continue
            logger.debug(f"sendMessage response={event_id}")
            result.messages_sent += 1

        return result
