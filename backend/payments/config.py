"""
Gateway configuration: merchant credential pair and environment.

Built once at startup and handed to the signer and verifier; nothing in the
payments package reads the environment on its own.
"""

import os
from typing import Literal

import structlog
from pydantic import BaseModel, ConfigDict

logger = structlog.get_logger().bind(component="gateway_config")

GatewayEnvironment = Literal["test", "production"]

# Public PayU sandbox pair, only valid against test.payu.in
SANDBOX_MERCHANT_KEY = "gtKFFx"
SANDBOX_SALT = "eCwWELxi"

GATEWAY_URLS: dict[str, str] = {
    "test": "https://test.payu.in/_payment",
    "production": "https://secure.payu.in/_payment",
}


class GatewayConfig(BaseModel):
    """Merchant credentials for the PayU hosted checkout"""

    model_config = ConfigDict(frozen=True)

    merchant_key: str
    salt: str
    environment: GatewayEnvironment = "test"

    @property
    def gateway_url(self) -> str:
        return GATEWAY_URLS[self.environment]

    @property
    def is_sandbox(self) -> bool:
        return self.environment == "test"

    @classmethod
    def sandbox(cls) -> "GatewayConfig":
        return cls(merchant_key=SANDBOX_MERCHANT_KEY, salt=SANDBOX_SALT, environment="test")

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """
        Read PAYU_MERCHANT_KEY (or PAYU_KEY), PAYU_SALT and PAYU_MODE.

        Without a full credential pair the sandbox pair is used and the mode is
        forced to ``test``; a production mode without credentials is refused.
        """
        key = os.getenv("PAYU_MERCHANT_KEY") or os.getenv("PAYU_KEY") or ""
        salt = os.getenv("PAYU_SALT", "")
        mode = os.getenv("PAYU_MODE", "test").lower()
        if mode not in GATEWAY_URLS:
            raise ValueError(f"PAYU_MODE must be 'test' or 'production', got {mode!r}")

        if not key or not salt:
            if mode == "production":
                raise ValueError("PAYU_MERCHANT_KEY and PAYU_SALT must be set in production mode")
            logger.warning("gateway_sandbox_credentials", reason="merchant credentials not configured")
            return cls.sandbox()

        return cls(merchant_key=key, salt=salt, environment=mode)
