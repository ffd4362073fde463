"""Role derivation and Ably-shaped capability tokens for session channels."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from fnmatch import fnmatchcase
from typing import Dict, List, Mapping, Optional

from jose import jwt

from .channels import ChannelKind, channel_name
from .errors import ConfigurationError
from .models import CapabilityToken

logger = logging.getLogger(__name__)

Capability = Dict[str, List[str]]

PRESENCE_OPERATIONS = ["presence.subscribe", "presence.enter", "presence.leave"]


class Role(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"


def derive_role(hint: Optional[str]) -> Role:
    """Anything other than an explicit teacher hint gets the student role."""

    if hint and hint.strip().lower() == Role.TEACHER.value:
        return Role.TEACHER
    return Role.STUDENT


def build_capability(role: Role, session_id: str = "*") -> Capability:
    control = channel_name(session_id, ChannelKind.CONTROL)
    answers = channel_name(session_id, ChannelKind.ANSWERS)
    room = channel_name(session_id, ChannelKind.ROOM)
    if role == Role.TEACHER:
        return {
            control: ["publish", "subscribe"],
            answers: ["subscribe"],
            room: list(PRESENCE_OPERATIONS),
        }
    return {
        control: ["subscribe"],
        answers: ["publish"],
        room: list(PRESENCE_OPERATIONS),
    }


def capability_allows(capability: Mapping[str, List[str]], channel: str, operation: str) -> bool:
    for pattern, operations in capability.items():
        if fnmatchcase(channel, pattern) and (operation in operations or "*" in operations):
            return True
    return False


class TokenIssuer:
    def __init__(self, api_key: Optional[str], ttl_seconds: int = 3600):
        self.api_key = api_key
        self.ttl_seconds = ttl_seconds

    def _key_parts(self) -> tuple[str, str]:
        if not self.api_key:
            raise ConfigurationError("Realtime API key is missing; set API_KEY to enable live sessions")
        key_name, sep, key_secret = self.api_key.partition(":")
        if not sep or not key_name or not key_secret:
            raise ConfigurationError("API_KEY must have the form '<keyName>:<keySecret>'")
        return key_name, key_secret

    def create_token(
        self,
        role: Role,
        client_id: Optional[str] = None,
        session_id: str = "*",
        now: Optional[datetime] = None,
    ) -> CapabilityToken:
        key_name, key_secret = self._key_parts()

        issued = now or datetime.now(timezone.utc)
        expires = issued + timedelta(seconds=self.ttl_seconds)
        client_id = client_id or f"{role.value}-{int(issued.timestamp() * 1000)}"
        capability = build_capability(role, session_id)

        claims = {
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
            "x-ably-capability": json.dumps(capability, separators=(",", ":")),
            "x-ably-clientId": client_id,
        }
        headers = {"kid": key_name, "typ": "JWT"}
        token = jwt.encode(claims, key_secret, algorithm="HS256", headers=headers)

        logger.info("Issued %s token for client %s (session %s, ttl %ss)", role.value, client_id, session_id, self.ttl_seconds)
        return CapabilityToken(
            token=token,
            client_id=client_id,
            role=role.value,
            ttl=self.ttl_seconds,
            capability=capability,
            key_name=key_name,
            issued=int(issued.timestamp() * 1000),
            expires=int(expires.timestamp() * 1000),
        )

    def verify(self, token: str) -> tuple[str, Capability]:
        """Decode a token minted by this issuer into its client id and capability."""

        _, key_secret = self._key_parts()
        claims = jwt.decode(token, key_secret, algorithms=["HS256"])
        return claims["x-ably-clientId"], json.loads(claims["x-ably-capability"])
