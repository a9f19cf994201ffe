"""Mailbox - one append-only message log per teammate.

A mailbox is a JSON Lines file. Only the owning teammate appends to it and
the team lead only reads it, so writes need no locking: each message is a
single ``write`` of one line to a file opened in append mode.

Reading is tolerant by construction:

* a line that is not a valid message is skipped with a warning, the rest of
  the mailbox is still returned;
* a trailing line without its newline is a write in progress and is left
  for the next read.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from agent_teams.team.protocol import Message, MessageType, make_agent_id
from agent_teams.team.storage import TeamStorage, validate_name

logger = logging.getLogger("agent_teams.team.mailbox")


class Mailbox:
    """Access to the mailboxes of every team under one storage root."""

    def __init__(self, storage: TeamStorage) -> None:
        self.storage = storage

    def path(self, team: str, member: str) -> Path:
        return self.storage.paths(team).inbox(validate_name(member, "member"))

    def create(self, team: str, member: str) -> Path:
        """Create an empty mailbox; an existing one is left untouched."""
        path = self.path(team, member)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "x", encoding="utf-8"):
                pass
        except FileExistsError:
            logger.debug("Mailbox %s already exists", path)
        return path

    # ------------------------------------------------------------------
    # Teammate side
    # ------------------------------------------------------------------

    def append(self, team: str, member: str, message: Message) -> bool:
        """Append *message* to *member*'s mailbox.

        Returns:
            False if the message was dropped: the member already posted a
            terminal message, or the team no longer exists.
        """
        path = self.path(team, member)
        if not self.storage.paths(team).root.is_dir():
            logger.warning(
                "Dropping %s from %s: team %s no longer exists",
                message.type.value, member, team,
            )
            return False

        terminal = self.terminal_message(team, member)
        if terminal is not None:
            logger.warning(
                "Protocol violation: %s posted %s after terminal %s; ignored",
                member, message.type.value, terminal.type.value,
            )
            return False

        data = message.to_dict()
        if not data["from"]:
            data["from"] = make_agent_id(member, team)
        line = json.dumps(data, ensure_ascii=False) + "\n"

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
        logger.debug("%s -> %s: %s", member, path.name, message.type.value)
        return True

    def writer(self, team: str, member: str) -> "MailboxWriter":
        return MailboxWriter(self, team, validate_name(member, "member"))

    # ------------------------------------------------------------------
    # Lead side
    # ------------------------------------------------------------------

    def read_all(self, team: str, member: str) -> list[Message]:
        """Return every well-formed message in append order. Never mutates."""
        path = self.path(team, member)
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                text = f.read()
        except FileNotFoundError:
            return []

        lines = text.split("\n")
        if lines and lines[-1].strip():
            logger.debug("Ignoring partial trailing line in %s", path)
        lines = lines[:-1]

        messages: list[Message] = []
        for lineno, raw in enumerate(lines, start=1):
            raw = raw.strip()
            if not raw:
                continue
            try:
                messages.append(Message.from_dict(json.loads(raw)))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("Skipping malformed message %s:%d: %s", path, lineno, e)
        return messages

    def terminal_message(self, team: str, member: str) -> Message | None:
        """The first terminal message, which fixes the member's outcome."""
        for message in self.read_all(team, member):
            if message.is_terminal:
                return message
        return None


class MailboxWriter:
    """Append handle owned by exactly one teammate."""

    def __init__(self, mailbox: Mailbox, team: str, member: str) -> None:
        self.mailbox = mailbox
        self.team = team
        self.member = member
        self.agent_id = make_agent_id(member, team)

    def post(self, msg_type: MessageType, payload: dict[str, Any] | None = None) -> bool:
        message = Message(type=msg_type, sender=self.agent_id, payload=dict(payload or {}))
        return self.mailbox.append(self.team, self.member, message)
