from abc import ABC, abstractmethod

from order_reconciliation.models.schemas.gateway import GatewayCharge

class PaymentGateway(ABC):
    """Query-only view of a payment gateway."""

    name: str = "gateway"

    @abstractmethod
    async def query_status(self, payment_reference: str) -> GatewayCharge:
        """Return the normalized charge or raise a GatewayError subclass."""
        pass

    async def close(self) -> None:
        """Release network resources, if any."""
        return None
