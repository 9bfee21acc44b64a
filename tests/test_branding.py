from __future__ import annotations

import pytest

from boxoffice.middleware import TENANT_ENVIRON_KEY, SubdomainRewriteMiddleware
from boxoffice.services.branding_service import BrandingService, clear_theme_cache, subdomain_slug
from conftest import create_promoter


@pytest.mark.parametrize(
    "host, expected",
    [
        ("rockhouse.venueviz.com", "rockhouse"),
        ("RockHouse.VenueViz.com:443", "rockhouse"),
        ("venueviz.com", None),
        ("www.venueviz.com", None),
        ("admin.venueviz.com", None),
        ("api.venueviz.com", None),
        ("a.b.venueviz.com", None),
        ("preview-123.vercel.app", None),
        ("tickets.rockhouse.com", None),
        ("", None),
        (None, None),
    ],
)
def test_subdomain_slug(host, expected):
    assert subdomain_slug(host, "venueviz.com") == expected


def test_resolve_host_by_subdomain_and_custom_domain(db_session):
    promoter = create_promoter(db_session, slug="rockhouse", custom_domain="tickets.rockhouse.com")
    create_promoter(db_session, slug="closed", active=False)
    service = BrandingService(db_session)

    assert service.resolve_host("rockhouse.venueviz.com").promoterID == promoter.promoterID
    assert service.resolve_host("tickets.rockhouse.com").promoterID == promoter.promoterID
    assert service.resolve_host("www.tickets.rockhouse.com").promoterID == promoter.promoterID
    assert service.resolve_host("closed.venueviz.com") is None
    assert service.resolve_host("localhost:5000") is None
    assert service.resolve_host("venueviz.com") is None
    assert service.resolve_host("unknown.example.org") is None


def test_master_promoter_falls_back_to_slug(db_session):
    create_promoter(db_session, slug="master")
    service = BrandingService(db_session)
    assert service.get_master_promoter().slug == "master"

    flagged = create_promoter(db_session, slug="hq", is_master=True)
    assert service.get_master_promoter().promoterID == flagged.promoterID


def test_theme_resolution_order(db_session):
    master = create_promoter(db_session, slug="hq", is_master=True)
    tenant = create_promoter(db_session, slug="rockhouse")
    service = BrandingService(db_session)

    assert service.get_theme_for_promoter(tenant.promoterID) is None

    _ok, _message, master_fallback = service.create_theme(master.promoterID, {"name": "Platform", "isDefault": True})
    clear_theme_cache()
    assert service.get_theme_for_promoter(tenant.promoterID)["name"] == "Platform"

    _ok, _message, master_default = service.create_theme(master.promoterID, {"name": "Platform Dark"})
    service.assign_theme(master.promoterID, master_default.themeID, "default")
    clear_theme_cache()
    assert service.get_theme_for_promoter(tenant.promoterID)["name"] == "Platform Dark"

    _ok, _message, tenant_default = service.create_theme(tenant.promoterID, {"name": "House"})
    service.assign_theme(tenant.promoterID, tenant_default.themeID, "default")
    assert service.get_theme_for_promoter(tenant.promoterID)["name"] == "House"

    _ok, _message, custom = service.create_theme(tenant.promoterID, {"name": "Festival", "colors": {"primary": "#f00"}})
    service.assign_theme(tenant.promoterID, custom.themeID, "custom")
    resolved = service.get_theme_for_promoter(tenant.promoterID)
    assert resolved["name"] == "Festival"
    assert resolved["colors"] == {"primary": "#f00"}
    assert master_fallback.is_default


def test_theme_is_cached_until_cleared(db_session):
    tenant = create_promoter(db_session, slug="rockhouse")
    service = BrandingService(db_session)
    _ok, _message, theme = service.create_theme(tenant.promoterID, {"name": "First"})
    service.assign_theme(tenant.promoterID, theme.themeID)
    assert service.get_theme_for_promoter(tenant.promoterID)["name"] == "First"

    theme.name = "Renamed directly"
    db_session.commit()
    assert service.get_theme_for_promoter(tenant.promoterID)["name"] == "First"

    clear_theme_cache(tenant.promoterID)
    assert service.get_theme_for_promoter(tenant.promoterID)["name"] == "Renamed directly"


def test_theme_css_is_stripped_of_markup(db_session):
    service = BrandingService(db_session)
    ok, _message, theme = service.create_theme(None, {"name": "Safe", "customCss": "body{color:red}<script>alert(1)</script>"})
    assert ok
    assert "<script>" not in theme.custom_css
    assert theme.custom_css.startswith("body{color:red}")
    assert service.create_theme(None, {"name": " "})[1] == "Theme name is required"


def test_assign_theme_validation(db_session):
    tenant = create_promoter(db_session, slug="rockhouse")
    service = BrandingService(db_session)
    assert service.assign_theme(9999, None)[1] == "Promoter not found"
    assert service.assign_theme(tenant.promoterID, 9999)[1] == "Theme not found"


def test_delete_theme_unassigns_it(db_session):
    tenant = create_promoter(db_session, slug="rockhouse")
    service = BrandingService(db_session)
    _ok, _message, theme = service.create_theme(tenant.promoterID, {"name": "Gone"})
    service.assign_theme(tenant.promoterID, theme.themeID)

    assert service.delete_theme(theme.themeID)[0]
    db_session.refresh(tenant)
    assert tenant.custom_theme_id is None


class _RecordingApp:
    def __init__(self):
        self.environ = None

    def __call__(self, environ, start_response):
        self.environ = dict(environ)
        return [b"ok"]


@pytest.mark.parametrize(
    "host, path, expected_path",
    [
        ("rockhouse.venueviz.com", "/", "/p/rockhouse"),
        ("rockhouse.venueviz.com", "/events/4", "/p/rockhouse/events/4"),
        ("rockhouse.venueviz.com", "/api/checkout", "/api/checkout"),
        ("rockhouse.venueviz.com", "/webhooks/stripe", "/webhooks/stripe"),
        ("rockhouse.venueviz.com", "/admin/dashboard", "/admin/dashboard"),
        ("rockhouse.venueviz.com", "/health", "/health"),
        ("rockhouse.venueviz.com", "/p/rockhouse", "/p/rockhouse"),
        ("venueviz.com", "/events/4", "/events/4"),
    ],
)
def test_subdomain_rewrite_middleware(host, path, expected_path):
    inner = _RecordingApp()
    middleware = SubdomainRewriteMiddleware(inner, "venueviz.com")

    middleware({"HTTP_HOST": host, "PATH_INFO": path}, lambda *args: None)

    assert inner.environ["PATH_INFO"] == expected_path
    if host == "venueviz.com":
        assert TENANT_ENVIRON_KEY not in inner.environ
    else:
        assert inner.environ[TENANT_ENVIRON_KEY] == "rockhouse"
