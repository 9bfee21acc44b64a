"""WSGI middleware that maps tenant subdomains onto storefront routes."""
from __future__ import annotations

from boxoffice.observability.logging_config import TENANT_ENVIRON_KEY
from boxoffice.services.branding_service import subdomain_slug

PASSTHROUGH_PREFIXES = (
    "/api/",
    "/static/",
    "/webhooks/",
    "/p/",
    "/health",
    "/admin",
    "/auth/",
    "/marketing/",
    "/support/",
    "/compliance/",
)


class SubdomainRewriteMiddleware:
    """Serve ``<slug>.<root domain>/<path>`` from ``/p/<slug>/<path>``."""

    def __init__(self, wsgi_app, root_domain=None):
        self.wsgi_app = wsgi_app
        self.root_domain = root_domain

    def __call__(self, environ, start_response):
        host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")
        slug = subdomain_slug(host, self.root_domain)
        if slug:
            environ[TENANT_ENVIRON_KEY] = slug
            path = environ.get("PATH_INFO") or "/"
            if not (path == "/health" or path.startswith(PASSTHROUGH_PREFIXES)):
                environ["PATH_INFO"] = f"/p/{slug}" if path == "/" else f"/p/{slug}{path}"
        return self.wsgi_app(environ, start_response)
