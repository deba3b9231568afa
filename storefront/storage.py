from __future__ import annotations

import json
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from storefront.config import require_settings, settings

logger = logging.getLogger(__name__)

_MISSING_CODES = ("404", "NoSuchKey", "NotFound")
_CONFLICT_CODES = ("412", "PreconditionFailed", "ConditionalRequestConflict")


class ProductCacheError(RuntimeError):
    def __init__(self, message: str, *, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProductCacheConflictError(ProductCacheError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=409)


def _error_code(exc: ClientError) -> str | None:
    return exc.response.get("Error", {}).get("Code") if hasattr(exc, "response") else None


class ProductCacheStorage:
    """
    Whole-object JSON reads and writes against an S3-compatible bucket.

    Writes can be made conditional on the ETag observed at read time so two
    concurrent cache syncs cannot silently overwrite each other.
    """

    def __init__(self, client: Any | None = None) -> None:
        require_settings("STORAGE_BUCKET", component="Product cache storage")
        self.bucket = settings.STORAGE_BUCKET
        self.cache_control = settings.PRODUCT_CACHE_CONTROL
        if client is not None:
            self.client = client
            return

        addressing_style = "path" if settings.STORAGE_FORCE_PATH_STYLE else "auto"
        session = boto3.session.Session()
        self.client = session.client(
            "s3",
            endpoint_url=settings.STORAGE_ENDPOINT,
            aws_access_key_id=settings.STORAGE_ACCESS_KEY,
            aws_secret_access_key=settings.STORAGE_SECRET_KEY,
            region_name=settings.STORAGE_REGION,
            config=Config(
                s3={"addressing_style": addressing_style},
                signature_version="s3v4",
            ),
        )

    def read_json(self, key: str) -> tuple[Optional[Any], Optional[str]]:
        """Return ``(payload, etag)``, or ``(None, None)`` when the object does not exist."""
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return None, None
            raise ProductCacheError(f"Failed to read {key} from storage: {exc}") from exc
        except BotoCoreError as exc:
            raise ProductCacheError(f"Failed to read {key} from storage: {exc}") from exc

        body = obj.get("Body")
        raw = body.read() if body else b""
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProductCacheError(f"Stored object {key} is not valid JSON") from exc
        return payload, obj.get("ETag")

    def write_json(
        self,
        key: str,
        payload: Any,
        *,
        if_match: Optional[str] = None,
        if_none_match: bool = False,
    ) -> Optional[str]:
        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": json.dumps(payload, separators=(",", ":")).encode("utf-8"),
            "ContentType": "application/json",
        }
        if self.cache_control:
            kwargs["CacheControl"] = self.cache_control
        if if_match:
            kwargs["IfMatch"] = if_match
        elif if_none_match:
            kwargs["IfNoneMatch"] = "*"

        try:
            response = self.client.put_object(**kwargs)
        except ClientError as exc:
            if _error_code(exc) in _CONFLICT_CODES:
                raise ProductCacheConflictError(
                    f"{key} was modified by another writer; refusing to overwrite it"
                ) from exc
            raise ProductCacheError(f"Failed to write {key} to storage: {exc}") from exc
        except BotoCoreError as exc:
            raise ProductCacheError(f"Failed to write {key} to storage: {exc}") from exc

        logger.info("Wrote object to storage", extra={"bucket": self.bucket, "key": key})
        return response.get("ETag") if isinstance(response, dict) else None
