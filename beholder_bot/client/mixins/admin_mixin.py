from __future__ import annotations

import logging

from ...errors import BeholderError
from ..common import ADMIN_COMMAND_RE, collapse_spaces


logger = logging.getLogger("beholder_bot")


class AdminMixin:
    def _is_bot_admin(self, nick: str) -> bool:
        admin = self.settings.bot_admin_nick
        if not admin:
            return False
        return nick.casefold() == admin.casefold()

    async def on_private_message(self, nick: str, text: str) -> None:
        if not self._is_bot_admin(nick):
            return
        match = ADMIN_COMMAND_RE.match(collapse_spaces(text))
        if match is None:
            return

        action = match.group("action")
        channel = match.group("channel")
        try:
            if action == "join":
                await self.repository.add_membership(channel)
                self.desired_state.set()
            elif action == "leave":
                await self.repository.remove_membership(channel)
                self.desired_state.set()
            elif action == "watch+":
                await self.repository.add_watch(channel)
            elif action == "watch-":
                await self.repository.remove_watch(channel)
        except (BeholderError, ValueError):
            logger.exception("Admin command from %s failed: %s", nick, text)
            return
        logger.info("Admin %s requested %s %s", nick, action, channel)
