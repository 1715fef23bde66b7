from typing import Optional

from services.errors import InvalidInput, NameTaken
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionRegistry:
    """Bidirectional connection id <-> username map.

    A username is held by at most one live connection. The online list keeps
    claim order, not alphabetical order.
    """

    def __init__(self):
        self._by_username: dict[str, str] = {}
        self._by_connection: dict[str, str] = {}

    def claim(self, connection_id: str, username: str) -> str:
        username = (username or "").strip()
        if not username:
            raise InvalidInput("Invalid username")

        holder = self._by_username.get(username)
        if holder is not None and holder != connection_id:
            logger.warning(f"Username {username} already held by connection {holder}")
            raise NameTaken(f"Username '{username}' is already taken")

        previous = self._by_connection.get(connection_id)
        if previous is not None and previous != username:
            # connection renamed itself, drop the stale mapping
            self._by_username.pop(previous, None)
            logger.debug(f"Connection {connection_id} released {previous} to claim {username}")

        if holder is None:
            self._by_username[username] = connection_id
        self._by_connection[connection_id] = username
        logger.info(f"Connection {connection_id} claimed username {username}")
        return username

    def release(self, connection_id: str) -> Optional[str]:
        username = self._by_connection.pop(connection_id, None)
        if username is not None and self._by_username.get(username) == connection_id:
            del self._by_username[username]
            logger.info(f"Username {username} released by connection {connection_id}")
        return username

    def resolve(self, username: str) -> Optional[str]:
        return self._by_username.get(username)

    def username_of(self, connection_id: str) -> Optional[str]:
        return self._by_connection.get(connection_id)

    def online_users(self) -> list[str]:
        return list(self._by_username)
