"""
Conversation resolution with identifier-drift self-healing.
"""
from typing import Optional

from sqlalchemy.exc import IntegrityError

from wapi_ingest.core.database import utcnow
from wapi_ingest.core.logging import get_logger
from wapi_ingest.models.connection import Connection
from wapi_ingest.models.conversation import Conversation
from wapi_ingest.services.repository import IngestStore

logger = get_logger(__name__)

MAX_ATTEMPTS = 3


class ConversationResolver:
    """Find-or-create the conversation an event belongs to.

    Lookup order: exact (connection, remote id); for individual chats, the
    normalized phone among non-group conversations, in which case the stored
    remote id is rewritten to the new one; otherwise create. Creation races
    surface as unique-constraint violations and are resolved by looking up
    again.

    Activity (unread counter, last message time) is recorded separately by
    ``record_activity`` so a caller can skip it for a message that turns out
    to be a duplicate.
    """

    def __init__(self, store: IngestStore):
        self.store = store

    def resolve(
        self,
        connection: Connection,
        remote_id: str,
        *,
        phone: Optional[str] = None,
        is_group: bool = False,
        display_name: Optional[str] = None,
        inbound: bool = True,
        at=None,
    ) -> Conversation:
        """Find-or-create, then record the event as activity on the conversation."""
        conversation = self.find_or_create(
            connection, remote_id, phone=phone, is_group=is_group, display_name=display_name
        )
        self.record_activity(conversation, at=at, inbound=inbound, display_name=display_name,
                             phone=phone, is_group=is_group)
        return conversation

    def find_or_create(
        self,
        connection: Connection,
        remote_id: str,
        *,
        phone: Optional[str] = None,
        is_group: bool = False,
        display_name: Optional[str] = None,
    ) -> Conversation:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                return self._find_or_create(connection, remote_id, phone, is_group, display_name)
            except IntegrityError:
                logger.info(
                    "Conversation write conflicted, retrying lookup",
                    extra={"extra_data": {
                        "connection_id": connection.id,
                        "remote_id": remote_id,
                        "attempt": attempt,
                    }}
                )
                if attempt == MAX_ATTEMPTS:
                    raise

    def record_activity(
        self,
        conversation: Conversation,
        *,
        at=None,
        inbound: bool = True,
        display_name: Optional[str] = None,
        phone: Optional[str] = None,
        is_group: bool = False,
    ) -> None:
        """Bump unread (inbound only) and last activity; call once per stored message."""
        self.store.touch_conversation(
            conversation,
            at=at or utcnow(),
            inbound=inbound,
            display_name=display_name,
            phone=None if is_group else phone,
        )

    def _find_or_create(self, connection: Connection, remote_id: str, phone: Optional[str],
                        is_group: bool, display_name: Optional[str]) -> Conversation:
        conversation = self.store.find_conversation(connection.id, remote_id)
        if conversation is not None:
            return conversation

        if not is_group and phone:
            conversation = self.store.find_conversation_by_phone(connection.id, phone)
            if conversation is not None:
                previous = conversation.remote_id
                self.store.rekey_conversation(conversation, remote_id)
                logger.info(
                    "Conversation identifier migrated",
                    extra={"extra_data": {
                        "conversation_id": conversation.id,
                        "from": previous,
                        "to": remote_id,
                    }}
                )
                return conversation

        conversation = self.store.create_conversation(
            connection.id,
            remote_id,
            phone=phone,
            is_group=is_group,
            display_name=display_name,
        )
        logger.info(
            "Conversation created",
            extra={"extra_data": {
                "conversation_id": conversation.id,
                "remote_id": remote_id,
                "is_group": is_group,
            }}
        )
        return conversation
