from __future__ import annotations

import logging
from typing import Any

import httpx

from storefront.config import require_settings, settings

logger = logging.getLogger(__name__)


class PrintifyApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PrintifyApiClient:
    def __init__(self) -> None:
        self._timeout = settings.PRINTIFY_REQUEST_TIMEOUT_SECONDS

    def _shop_url(self, path: str) -> str:
        require_settings("PRINTIFY_API_TOKEN", "PRINTIFY_SHOP_ID", component="Printify API")
        return f"{settings.printify_base_url}/shops/{settings.PRINTIFY_SHOP_ID}/{path.lstrip('/')}"

    async def list_products_page(self, *, page: int = 1, limit: int | None = None) -> dict[str, Any]:
        params = {"page": page, "limit": limit or settings.PRINTIFY_PAGE_SIZE}
        body = await self._request_json("GET", self._shop_url("products.json"), params=params)
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise PrintifyApiError(message="Printify products response is missing data")
        return body

    async def list_all_products(self) -> dict[str, Any]:
        products: list[dict[str, Any]] = []
        page = 1
        last_page = 1
        while True:
            body = await self.list_products_page(page=page)
            products.extend(body["data"])
            last_page = int(body.get("last_page") or page)
            if page >= last_page:
                break
            page += 1
        logger.info(
            "Fetched Printify catalog",
            extra={"product_count": len(products), "pages": last_page},
        )
        return {"current_page": 1, "last_page": last_page, "data": products}

    async def get_product(self, *, product_id: str) -> dict[str, Any]:
        body = await self._request_json("GET", self._shop_url(f"products/{product_id}.json"))
        if not isinstance(body, dict):
            raise PrintifyApiError(message="Printify product response must be a JSON object")
        return body

    async def get_shipping_profiles(self, *, blueprint_id: int, print_provider_id: int) -> list[dict[str, Any]]:
        require_settings("PRINTIFY_API_TOKEN", component="Printify API")
        url = (
            f"{settings.printify_base_url}/catalog/blueprints/{blueprint_id}"
            f"/print_providers/{print_provider_id}/shipping.json"
        )
        body = await self._request_json("GET", url)
        profiles = body.get("profiles") if isinstance(body, dict) else None
        if not isinstance(profiles, list):
            raise PrintifyApiError(
                message=f"Shipping response for blueprint {blueprint_id} is missing profiles"
            )
        return profiles

    async def create_order(self, *, order: dict[str, Any]) -> dict[str, Any]:
        body = await self._request_json("POST", self._shop_url("orders.json"), payload=order)
        if not isinstance(body, dict):
            raise PrintifyApiError(message="Printify order response must be a JSON object")
        return body

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {settings.PRINTIFY_API_TOKEN}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, params=params, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise PrintifyApiError(message=f"Network error while calling Printify: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "Printify API call failed",
                extra={"url": url, "status_code": response.status_code, "body": response.text},
            )
            raise PrintifyApiError(
                message=f"Printify API call failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise PrintifyApiError(message="Printify API returned invalid JSON") from exc
