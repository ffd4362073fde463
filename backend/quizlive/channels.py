from __future__ import annotations

from enum import Enum

CHANNEL_PREFIX = "quiz"


class ChannelKind(str, Enum):
    CONTROL = "control"
    ANSWERS = "answers"
    ROOM = "room"


def channel_name(session_id: str, kind: ChannelKind | str) -> str:
    return f"{CHANNEL_PREFIX}:{session_id}:{ChannelKind(kind).value}"


def control_channel(session_id: str) -> str:
    return channel_name(session_id, ChannelKind.CONTROL)


def answers_channel(session_id: str) -> str:
    return channel_name(session_id, ChannelKind.ANSWERS)


def room_channel(session_id: str) -> str:
    return channel_name(session_id, ChannelKind.ROOM)
