from typing import Optional, Protocol, Sequence

from domain.entities import Service


class ServiceResolver(Protocol):
    async def resolve(
        self, prompt: str, services: Sequence[Service]
    ) -> Optional[str]:
        ...


class KeywordServiceResolver:
    """Picks the first active service with a keyword contained in the prompt."""

    async def resolve(
        self, prompt: str, services: Sequence[Service]
    ) -> Optional[str]:
        if not prompt or not prompt.strip():
            raise ValueError("Prompt cannot be empty")

        lowered = prompt.lower()
        for service in services:
            if not service.is_active:
                continue
            for keyword in service.keywords:
                if keyword and keyword.lower() in lowered:
                    return service.id
        return None
