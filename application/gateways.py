from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Dict


@dataclass
class SellerResponse:
    status_code: int
    headers: Dict[str, str]
    body: AsyncIterator[bytes]


class ISellerGateway(ABC):
    @abstractmethod
    async def forward(self, endpoint_url: str, payload: dict) -> SellerResponse:
        """POST payload to a seller endpoint.

        Raises UpstreamTimeoutError or UpstreamUnavailableError when the call
        cannot be completed or the seller answers with a 5xx status.
        """
        pass
