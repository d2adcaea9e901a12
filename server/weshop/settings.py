"""
WeShop Server Settings

Configuration management using pydantic settings.
Loads from environment variables with WESHOP_ prefix.
"""

import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field
from typing import List, Optional


class Settings(BaseSettings):
    """
    Server configuration settings.

    Environment variables:
    - WESHOP_SERVICE_KEYS_RAW: Comma-separated service keys (act as super_admin)
    - WESHOP_ALLOWED_ORIGINS_RAW: Comma-separated list of allowed CORS origins
    - WESHOP_MIN_CLIENT_VERSION: Minimum storefront client version required (optional)
    - WESHOP_LIMITS_ENABLED: Enable rate limiting (default: true)
    - WESHOP_ORDER_RATE_LIMIT: Order placements per minute per principal (default: 10)
    - WESHOP_DAILY_ORDER_CAP: Order placements per day per principal (default: 50)
    - WESHOP_AUTH_RATE_LIMIT: Sign-in/sign-up attempts per minute (default: 20)
    - WESHOP_FREE_DELIVERY_THRESHOLD: Subtotal that earns free delivery (default: 999)
    - WESHOP_DELIVERY_FEE: Flat delivery fee below the threshold (default: 99)
    - WESHOP_DEBUG: Enable debug mode (default: false)
    - DATABASE_URL: PostgreSQL connection string (in-memory backend when unset)
    """

    model_config = SettingsConfigDict(
        env_prefix="WESHOP_",
        env_file=".env",
        extra="ignore",
    )

    # Raw string fields for comma-separated values
    service_keys_raw: str = ""
    allowed_origins_raw: str = ""

    # Client version enforcement (optional)
    min_client_version: Optional[str] = None

    debug: bool = False
    log_level: str = "INFO"

    # Abuse limits
    limits_enabled: bool = True
    order_rate_limit: int = 10  # order placements per minute per principal
    daily_order_cap: int = 50
    auth_rate_limit: int = 20  # sign-in / sign-up attempts per minute

    # Pricing
    currency_symbol: str = "₹"
    free_delivery_threshold: float = 999
    delivery_fee: float = 99
    low_stock_threshold: int = 10

    # Data fetching
    orders_poll_interval: float = 5.0
    cache_stale_seconds: float = 30.0
    cache_max_entries: int = 256
    fetch_retries: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Sessions
    session_ttl_hours: int = 24 * 7
    bcrypt_rounds: int = 12

    # Object storage
    storage_dir: str = "./uploads"
    storage_bucket: str = "product-images"
    public_base_url: str = "http://localhost:8000"
    max_upload_bytes: int = 5_000_000

    # Durable cart storage (in-memory only when unset)
    cart_db_path: Optional[str] = None
    cart_ttl_hours: float = 24 * 30

    @computed_field
    @property
    def service_keys(self) -> List[str]:
        """Parse comma-separated service keys into list."""
        if not self.service_keys_raw:
            return []
        return [v.strip() for v in self.service_keys_raw.split(",") if v.strip()]

    @computed_field
    @property
    def allowed_origins(self) -> List[str]:
        """Parse comma-separated allowed origins into list."""
        if not self.allowed_origins_raw:
            return []
        return [v.strip() for v in self.allowed_origins_raw.split(",") if v.strip()]


# Database URL (read separately since it doesn't have the WESHOP_ prefix)
DATABASE_URL = os.environ.get("DATABASE_URL", "")

# Global settings instance
settings = Settings()
