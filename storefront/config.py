from __future__ import annotations

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_items(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    PRINTIFY_API_TOKEN: str | None = None
    PRINTIFY_SHOP_ID: str | None = None
    PRINTIFY_API_BASE_URL: AnyHttpUrl = "https://api.printify.com/v1"
    PRINTIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0
    PRINTIFY_PAGE_SIZE: int = Field(default=50, ge=1, le=50)
    PRINTIFY_SHIPPING_METHOD: int = 1

    # Either the value itself or the Secrets Manager id that holds it.
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_SECRET_KEY_SECRET_ID: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_SECRET_SECRET_ID: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    CHECKOUT_CURRENCY: str = "usd"
    CHECKOUT_SUCCESS_URL: str | None = None
    CHECKOUT_CANCEL_URL: str | None = None
    CHECKOUT_ALLOWED_COUNTRIES: str = "US"
    DEFAULT_SHIPPING_CENTS: int = Field(default=500, ge=0)
    SHIPPING_RATE_DISPLAY_NAME: str = "Standard shipping"

    STORAGE_BUCKET: str | None = None
    STORAGE_ENDPOINT: str | None = None
    STORAGE_ACCESS_KEY: str | None = None
    STORAGE_SECRET_KEY: str | None = None
    STORAGE_REGION: str = "us-east-1"
    STORAGE_FORCE_PATH_STYLE: bool = False
    PRODUCT_CACHE_KEY: str = "cached-products.json"
    PRODUCT_CACHE_CONTROL: str = "public, max-age=300"
    PRODUCT_IMAGE_BASE_URL: str | None = None
    PRODUCT_IMAGE_PREFIX: str = "products"

    CACHE_EXCLUDED_PRODUCT_IDS: str = ""
    CACHE_DROP_DISABLED_VARIANTS: bool = True
    CACHE_PRESERVE_IMAGES: bool = True
    CACHE_INCLUDE_SHIPPING: bool = False
    CACHE_SHIPPING_COUNTRY: str = "US"
    CACHE_SYNC_INTERVAL_HOURS: float = Field(default=6.0, gt=0)

    SECRETS_REGION: str | None = None

    VARIANT_MAP_PATH: str | None = None
    STOREFRONT_DB_URL: str = "sqlite:///./storefront.db"
    INTERNAL_API_TOKEN: str | None = None
    CORS_ALLOWED_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    @field_validator("CHECKOUT_ALLOWED_COUNTRIES")
    @classmethod
    def validate_countries(cls, value: str) -> str:
        countries = [country.upper() for country in _csv_items(value)]
        if not countries:
            raise ValueError("CHECKOUT_ALLOWED_COUNTRIES must include at least one country")
        for country in countries:
            if len(country) != 2:
                raise ValueError(f"CHECKOUT_ALLOWED_COUNTRIES entries must be ISO alpha-2 codes: {country}")
        return ",".join(countries)

    @field_validator("CHECKOUT_CURRENCY")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def printify_base_url(self) -> str:
        return str(self.PRINTIFY_API_BASE_URL).rstrip("/")

    @property
    def allowed_countries(self) -> list[str]:
        return _csv_items(self.CHECKOUT_ALLOWED_COUNTRIES)

    @property
    def excluded_product_ids(self) -> set[str]:
        return set(_csv_items(self.CACHE_EXCLUDED_PRODUCT_IDS))

    @property
    def cors_origins(self) -> list[str]:
        return _csv_items(self.CORS_ALLOWED_ORIGINS)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()


class ConfigurationError(RuntimeError):
    """Raised when a component is used without the settings it needs."""


def require_settings(*names: str, component: str) -> None:
    missing = [name for name in names if not getattr(settings, name)]
    if missing:
        raise ConfigurationError(f"{component} is not configured. Set {', '.join(missing)}.")
