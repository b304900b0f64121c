from abc import ABC, abstractmethod
from typing import Any, Dict

from ordersync.types.order_types import Authorization, UserInteraction, Verification


class PaymentGateway(ABC):
    """What the engine needs from a payment processor."""

    name = "gateway"

    @abstractmethod
    async def initialize(self, email: str, amount_minor: int, reference: str,
                         metadata: Dict[str, Any]) -> Authorization:
        """Create the gateway-side transaction for ``reference``."""

    @abstractmethod
    async def open_user_interaction(self, authorization: Authorization) -> UserInteraction:
        """Hand the customer over to the gateway's payment page.

        The outcome never comes back through this call; it arrives later
        through the callback route or the webhook.
        """

    @abstractmethod
    async def verify_by_reference(self, reference: str) -> Verification:
        """Ask the gateway for the authoritative status of a transaction."""

    @abstractmethod
    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        """Check a webhook body against its signature header."""
