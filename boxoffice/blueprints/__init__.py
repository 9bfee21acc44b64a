from .admin import admin_bp
from .auth import auth_bp
from .compliance import compliance_bp
from .marketing import marketing_bp
from .storefront import storefront_bp
from .support import support_bp
from .webhooks import webhooks_bp

ALL_BLUEPRINTS = (
    auth_bp,
    storefront_bp,
    webhooks_bp,
    admin_bp,
    marketing_bp,
    support_bp,
    compliance_bp,
)

__all__ = [
    "ALL_BLUEPRINTS",
    "admin_bp",
    "auth_bp",
    "compliance_bp",
    "marketing_bp",
    "storefront_bp",
    "support_bp",
    "webhooks_bp",
]
