from abc import ABC, abstractmethod
from typing import Optional

from sitewise.modules.billing.domain.events import BillingProvider, CanonicalEvent


class BillingWebhookProvider(ABC):
    """
    Adapter contract: authenticate a raw delivery, then normalise it.

    Implementations must verify the signature before reading any business
    field, raising `InvalidSignature` on failure and `MalformedPayload` when
    an authentic body cannot be parsed.
    """

    provider: BillingProvider

    @abstractmethod
    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> CanonicalEvent:
        ...
