"""
Social: the friends list and direct messages.

Message bodies are stored encrypted with the same SecureStore that protects
account credentials.
"""

import uuid
from typing import List, Optional

from .database import DatabaseManager
from .logger import setup_logger
from .models import Friend, Message, Platform
from .secure_store import SecureStore

logger = setup_logger()

DIRECTIONS = ("incoming", "outgoing")


class SocialService:
    def __init__(self, db: DatabaseManager, secure_store: SecureStore):
        self.db = db
        self.secure_store = secure_store

    async def get_friends(self, platform: Optional[Platform] = None) -> List[Friend]:
        return await self.db.get_friends(platform)

    async def add_local_friend(self, username: str) -> Friend:
        name = (username or "").strip()
        if not name:
            raise ValueError("Username is required")
        native_id = str(uuid.uuid4())
        friend = Friend(
            id=f"{Platform.PLAYHUB.value}_{native_id}",
            platform=Platform.PLAYHUB,
            external_id=native_id,
            username=name,
        )
        if not await self.db.insert_friend(friend):
            raise RuntimeError(f"Could not save friend {name!r}")
        return await self.db.get_friend(friend.id) or friend

    async def remove_local_friend(self, friend_id: str) -> bool:
        friend = await self.db.get_friend(friend_id)
        if friend is None or friend.platform is not Platform.PLAYHUB:
            # Synced friends are owned by their platform
            return False
        return await self.db.delete_friend(friend_id)

    async def send_message(self, friend_id: str, body: str, is_quick: bool = False) -> Optional[Message]:
        return await self._store_message(friend_id, "outgoing", body, is_quick)

    async def receive_message(self, friend_id: str, body: str) -> Optional[Message]:
        return await self._store_message(friend_id, "incoming", body, False)

    async def _store_message(self, friend_id: str, direction: str, body: str, is_quick: bool) -> Optional[Message]:
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown message direction {direction!r}")
        message_id = await self.db.insert_message(friend_id, direction, self.secure_store.encrypt(body), is_quick)
        if message_id is None:
            return None
        return Message(id=message_id, friend_id=friend_id, direction=direction, body=body, is_quick=is_quick)

    async def get_messages(self, friend_id: str, limit: int = 100) -> List[Message]:
        """Conversation oldest first; reading marks incoming messages read."""
        rows = await self.db.get_message_rows(friend_id, limit)
        if any(row["direction"] == "incoming" and not row["read_at"] for row in rows):
            await self.db.mark_messages_read(friend_id)
            rows = await self.db.get_message_rows(friend_id, limit)

        return [
            Message(
                id=row["id"],
                friend_id=row["friend_id"],
                direction=row["direction"],
                body=self.secure_store.decrypt(row["body"]) or "",
                is_quick=bool(row["is_quick"]),
                sent_at=row["sent_at"],
                read_at=row["read_at"],
            )
            for row in rows
        ]
