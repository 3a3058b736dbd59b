"""HTTP client for reading product data from Stripe."""

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from planward_engine.common.exceptions import ProviderUnavailableError

logger = logging.getLogger(__name__)


class BillingProvider(Protocol):
    async def get_product_metadata(self, product_id: str) -> dict[str, str]: ...


class StripeProvider:
    """Reads products from the Stripe REST API.

    Every failure (missing credentials, transport error, non-2xx response,
    deleted product) surfaces as :class:`ProviderUnavailableError`.
    """

    def __init__(
        self,
        secret_key: str,
        api_base: str = "https://api.stripe.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy-init httpx.AsyncClient."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.api_base,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.secret_key}"},
            )
        return self._http_client

    async def get_product(self, product_id: str) -> dict[str, Any]:
        if not self.secret_key:
            raise ProviderUnavailableError("Stripe secret key is not configured")

        try:
            resp = await self._get_http_client().get(
                f"/v1/products/{quote(product_id, safe='')}"
            )
            resp.raise_for_status()
            product = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderUnavailableError(
                f"Stripe returned {exc.response.status_code} for product {product_id}"
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise ProviderUnavailableError(
                f"Failed to retrieve Stripe product {product_id}: {exc}"
            ) from exc

        if not isinstance(product, dict) or product.get("deleted"):
            raise ProviderUnavailableError(f"Stripe product {product_id} is deleted")
        if not isinstance(product.get("metadata") or {}, dict):
            raise ProviderUnavailableError(
                f"Stripe product {product_id} has malformed metadata"
            )
        return product

    async def get_product_metadata(self, product_id: str) -> dict[str, str]:
        product = await self.get_product(product_id)
        metadata = product.get("metadata") or {}
        return {str(k): str(v) for k, v in metadata.items() if v is not None}

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
