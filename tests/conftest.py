import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("PRINTIFY_API_TOKEN", "printify_token")
os.environ.setdefault("PRINTIFY_SHOP_ID", "shop_1")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("CHECKOUT_SUCCESS_URL", "https://shop.example.com/success")
os.environ.setdefault("CHECKOUT_CANCEL_URL", "https://shop.example.com/cart")
os.environ.setdefault("CHECKOUT_ALLOWED_COUNTRIES", "US,CA")
os.environ.setdefault("STORAGE_BUCKET", "storefront-test")
os.environ.setdefault("INTERNAL_API_TOKEN", "internal_token")
os.environ.setdefault("STOREFRONT_DB_URL", "sqlite:///./test_storefront.db")
os.environ.setdefault("VARIANT_MAP_PATH", str(ROOT_DIR / "tests" / "fixtures" / "variant-map.json"))
os.environ.setdefault("CACHE_INCLUDE_SHIPPING", "false")
