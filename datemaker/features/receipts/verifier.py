"""App Store receipt verification client (verifyReceipt endpoints)."""

import logging
from typing import Any, Dict, Optional

import httpx

from datemaker.core.errors import ProviderUnavailableError, ReceiptInvalidError

logger = logging.getLogger("datemaker")

STATUS_VALID = 0
STATUS_SANDBOX_RECEIPT = 21007

PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"


class AppleReceiptVerifier:
    def __init__(
        self,
        production_url: str = PRODUCTION_URL,
        sandbox_url: str = SANDBOX_URL,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.production_url = production_url
        self.sandbox_url = sandbox_url
        self.timeout = httpx.Timeout(timeout_seconds)
        self._client = client

    async def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning("receipt.verify_unreachable", extra={"url": url, "reason": e.__class__.__name__})
            raise ProviderUnavailableError("Receipt validation service unavailable", provider="apple")
        except ValueError:
            raise ProviderUnavailableError("Receipt validation service returned invalid JSON", provider="apple")
        if not isinstance(data, dict):
            raise ProviderUnavailableError("Receipt validation service returned invalid JSON", provider="apple")
        return data

    async def verify(self, receipt: str, shared_secret: Optional[str] = None) -> Dict[str, Any]:
        """Verify a receipt, falling back to the sandbox exactly once on status 21007.

        Returns the validation response for a valid receipt.

        Raises:
            ReceiptInvalidError: the service rejected the receipt
            ProviderUnavailableError: the service could not be reached
        """
        body: Dict[str, Any] = {"receipt-data": receipt, "exclude-old-transactions": True}
        if shared_secret:
            body["password"] = shared_secret

        data = await self._post(self.production_url, body)
        status = data.get("status")
        if status == STATUS_SANDBOX_RECEIPT:
            logger.info("receipt.sandbox_retry")
            data = await self._post(self.sandbox_url, body)
            status = data.get("status")

        if status != STATUS_VALID:
            raise ReceiptInvalidError("Receipt verification failed", receipt_status=status)
        return data
