"""
Profile lookups for participant snapshots.

Profiles live in the external identity service; the chat core only takes
a point-in-time copy when a conversation is created.
"""

import asyncio
import logging
import aiohttp
from urllib.parse import quote
from typing import Dict, Optional

from ..config import settings
from ..errors import ConnectivityError, ValidationError
from ..schemas.participant import ParticipantIdentity

logger = logging.getLogger(__name__)


class ProfileProvider:
    """Source of participant display data."""

    async def get_profile(self, participant_id: str) -> ParticipantIdentity:
        raise NotImplementedError


class InMemoryProfileProvider(ProfileProvider):
    """Profile directory held in memory, for local development."""

    def __init__(self, profiles: Optional[Dict[str, ParticipantIdentity]] = None, strict: bool = False):
        self.profiles: Dict[str, ParticipantIdentity] = dict(profiles or {})
        self.strict = strict

    def register(self, profile: ParticipantIdentity):
        self.profiles[profile.id] = profile

    async def get_profile(self, participant_id: str) -> ParticipantIdentity:
        profile = self.profiles.get(participant_id)
        if profile is not None:
            return profile
        if self.strict:
            raise ValidationError(f"Unknown participant: {participant_id}")
        # Unknown ids are shown by id until the identity service is wired in
        return ParticipantIdentity(id=participant_id, display_name=participant_id)


class HttpProfileProvider(ProfileProvider):
    """Fetches profiles from the identity service over HTTP."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.PROFILE_SERVICE_URL or "").rstrip("/")
        self.timeout = timeout or settings.PROFILE_SERVICE_TIMEOUT

    async def get_profile(self, participant_id: str) -> ParticipantIdentity:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"{self.base_url}/users/{quote(participant_id, safe='')}",
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status == 404:
                        raise ValidationError(f"Unknown participant: {participant_id}")
                    if response.status != 200:
                        error_text = await response.text()
                        raise ConnectivityError(
                            f"Profile service error ({response.status}): {error_text[:200]}"
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Profile lookup for {participant_id} failed: {e}")
            raise ConnectivityError(f"Profile service unreachable: {e}") from e

        return ParticipantIdentity(
            id=participant_id,
            display_name=data.get("displayName") or data.get("display_name") or participant_id,
            avatar_url=data.get("photoURL") or data.get("avatar_url"),
            role=data.get("role")
        )


def build_profile_provider() -> ProfileProvider:
    """Pick the provider from configuration."""
    if settings.PROFILE_SERVICE_URL:
        return HttpProfileProvider()
    return InMemoryProfileProvider()
