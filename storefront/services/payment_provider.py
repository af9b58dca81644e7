"""
Payment Provider Protocol - Provider-agnostic capture interface.

The purchase engine depends only on this protocol; PayPal is the
shipped implementation.
"""

from typing import Protocol

from storefront.models.domain import CaptureResult


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Implementations authenticate to the processor and finalize buyer-approved
    orders. They never retry a capture: capturing is not idempotent from the
    caller's point of view.
    """

    async def get_access_token(self) -> str:
        """
        Return a bearer credential for the processor API.

        Raises:
            GatewayAuthError: If the credential exchange fails
        """
        ...

    async def capture_order(self, order_id: str) -> CaptureResult:
        """
        Capture an approved order so funds actually move.

        Args:
            order_id: Processor order ID approved by the buyer

        Returns:
            Completed capture with paid amount and payer identity

        Raises:
            GatewayAuthError: If authentication fails
            CaptureError: If the processor rejects or does not complete the capture
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
