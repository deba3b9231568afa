from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ShippingRate(BaseModel):
    first_item: int = Field(ge=0)
    additional_items: int = Field(ge=0)


class ProductImage(BaseModel):
    model_config = ConfigDict(extra="allow")

    src: str
    variant_ids: list[int] = Field(default_factory=list)
    position: str | None = None
    is_default: bool = False


class CatalogVariant(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    title: str = ""
    price: int = Field(ge=0)
    is_enabled: bool = True
    is_available: bool = True
    sku: str | None = None
    shipping: ShippingRate | None = None

    @property
    def purchasable(self) -> bool:
        return self.is_enabled and self.is_available


class CatalogProduct(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    description: str = ""
    variants: list[CatalogVariant] = Field(default_factory=list)
    images: list[ProductImage] = Field(default_factory=list)
    blueprint_id: int | None = None
    print_provider_id: int | None = None

    def find_variant(self, variant_id: int) -> CatalogVariant | None:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None


class CachedCatalog(BaseModel):
    model_config = ConfigDict(extra="allow")

    current_page: int = 1
    last_page: int | None = None
    data: list[CatalogProduct] = Field(default_factory=list)

    def find_product(self, product_id: str) -> CatalogProduct | None:
        for product in self.data:
            if product.id == product_id:
                return product
        return None


class CartItem(BaseModel):
    productId: str = Field(min_length=1)
    variantId: int
    quantity: int = Field(ge=1)


class CreateCheckoutSessionRequest(BaseModel):
    items: list[CartItem] = Field(min_length=1)


class CreateCheckoutSessionResponse(BaseModel):
    url: str
    sessionId: str


class CacheSyncResponse(BaseModel):
    objectKey: str
    count: int
    excluded: int
    changed: bool


class FulfillmentOrderLine(BaseModel):
    product_id: str
    variant_id: int
    quantity: int = Field(ge=1)


class ShippingAddress(BaseModel):
    first_name: str = "Customer"
    last_name: str = ""
    email: str | None = None
    phone: str = ""
    country: str = ""
    region: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    zip: str = ""


class FulfillmentOrder(BaseModel):
    external_id: str
    label: str
    line_items: list[FulfillmentOrderLine] = Field(min_length=1)
    shipping_method: int = 1
    send_shipping_notification: bool = True
    address_to: ShippingAddress

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
