import logging
from typing import Optional, Sequence

import httpx

from domain.entities import Service

logger = logging.getLogger(__name__)


class ClassifierServiceResolver:
    """Delegates prompt routing to an external classifier.

    The classifier receives ``{"prompt": ...}`` and answers
    ``{"serverId": ...}``. Unknown or inactive ids resolve to None.
    """

    def __init__(self, client: httpx.AsyncClient, classifier_url: str, timeout_seconds: float = 10.0):
        if not classifier_url:
            raise ValueError("Classifier URL is required")
        self.client = client
        self.classifier_url = classifier_url
        self.timeout_seconds = timeout_seconds

    async def resolve(
        self, prompt: str, services: Sequence[Service]
    ) -> Optional[str]:
        if not prompt or not prompt.strip():
            raise ValueError("Prompt cannot be empty")

        try:
            response = await self.client.post(
                self.classifier_url,
                json={"prompt": prompt},
                timeout=self.timeout_seconds
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Service classifier request failed: {e!r}")
            return None

        service_id = None
        if isinstance(data, dict):
            service_id = data.get("serverId") or data.get("serviceId")
        known = {s.id for s in services if s.is_active}
        if service_id not in known:
            logger.warning(f"Classifier returned unknown service id: {service_id!r}")
            return None
        return service_id
