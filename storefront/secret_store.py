from __future__ import annotations

import logging
from functools import lru_cache

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from storefront.config import ConfigurationError, settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def _fetch_secret_string(secret_id: str) -> str:
    client = boto3.session.Session().client("secretsmanager", region_name=settings.SECRETS_REGION)
    try:
        response = client.get_secret_value(SecretId=secret_id)
    except (ClientError, BotoCoreError) as exc:
        raise ConfigurationError(f"Unable to read secret {secret_id} from Secrets Manager: {exc}") from exc

    value = response.get("SecretString")
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Secret {secret_id} has no string value")
    logger.info("Loaded secret from Secrets Manager", extra={"secret_id": secret_id})
    return value.strip()


def resolve_secret(*, value: str | None, secret_id: str | None, label: str) -> str:
    if value:
        return value
    if secret_id:
        return _fetch_secret_string(secret_id)
    raise ConfigurationError(f"{label} is not configured. Set it directly or via its Secrets Manager id.")


def stripe_api_key() -> str:
    return resolve_secret(
        value=settings.STRIPE_SECRET_KEY,
        secret_id=settings.STRIPE_SECRET_KEY_SECRET_ID,
        label="STRIPE_SECRET_KEY",
    )


def stripe_webhook_secret() -> str:
    return resolve_secret(
        value=settings.STRIPE_WEBHOOK_SECRET,
        secret_id=settings.STRIPE_WEBHOOK_SECRET_SECRET_ID,
        label="STRIPE_WEBHOOK_SECRET",
    )


def clear_secret_cache() -> None:
    _fetch_secret_string.cache_clear()
