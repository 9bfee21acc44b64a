"""White-label resolution: which tenant a host belongs to and how it looks."""
from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import bleach
from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.models import Promoter, Theme

logger = logging.getLogger(__name__)

_theme_cache: Dict[int, Tuple[float, Optional[Dict[str, Any]]]] = {}
_theme_cache_lock = Lock()


def _normalize_host(host: Optional[str]) -> str:
    host = (host or "").strip().lower()
    return host.split(":", 1)[0].rstrip(".")


def subdomain_slug(host: Optional[str], root_domain: Optional[str] = None) -> Optional[str]:
    """Tenant slug encoded in ``<slug>.<root domain>``, if any."""
    host = _normalize_host(host)
    root = (root_domain or Config.ROOT_DOMAIN).lower()
    if not host or host == root or host.endswith(".vercel.app"):
        return None
    suffix = f".{root}"
    if not host.endswith(suffix):
        return None
    label = host[: -len(suffix)]
    if not label or "." in label or label in Config.RESERVED_SUBDOMAINS:
        return None
    return label


def is_super_admin(user) -> bool:
    return bool(user is not None and user.is_super_admin)


def can_access_tenant(user, promoter_id: Optional[int]) -> bool:
    if user is None:
        return False
    if is_super_admin(user):
        return True
    return promoter_id is not None and user.promoterID == int(promoter_id)


def clear_theme_cache(promoter_id: Optional[int] = None) -> None:
    with _theme_cache_lock:
        if promoter_id is None:
            _theme_cache.clear()
        else:
            _theme_cache.pop(int(promoter_id), None)


class BrandingService:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logger

    def resolve_host(self, host: Optional[str]) -> Optional[Promoter]:
        slug = subdomain_slug(host)
        if slug:
            return (
                self.db.query(Promoter)
                .filter(Promoter.slug == slug)
                .filter(Promoter.active.is_(True))
                .first()
            )

        normalized = _normalize_host(host)
        root = Config.ROOT_DOMAIN
        if not normalized or normalized in {"localhost", "127.0.0.1"} or normalized.endswith(".vercel.app"):
            return None
        if normalized == root or normalized.endswith(f".{root}"):
            return None
        candidates = {normalized, normalized[4:] if normalized.startswith("www.") else f"www.{normalized}"}
        return (
            self.db.query(Promoter)
            .filter(Promoter.custom_domain.in_(candidates))
            .filter(Promoter.active.is_(True))
            .first()
        )

    def get_master_promoter(self) -> Optional[Promoter]:
        master = self.db.query(Promoter).filter(Promoter.is_master.is_(True)).first()
        if master is None:
            master = self.db.query(Promoter).filter(Promoter.slug == Config.MASTER_TENANT_SLUG).first()
        return master

    def _resolve_theme(self, promoter: Promoter) -> Optional[Theme]:
        for theme_id in (promoter.custom_theme_id, promoter.default_theme_id):
            if theme_id:
                theme = self.db.get(Theme, theme_id)
                if theme is not None:
                    return theme

        master = self.get_master_promoter()
        if master is None:
            return None
        if master.default_theme_id:
            theme = self.db.get(Theme, master.default_theme_id)
            if theme is not None:
                return theme
        return (
            self.db.query(Theme)
            .filter(Theme.promoterID == master.promoterID)
            .filter(Theme.is_default.is_(True))
            .first()
        )

    def get_theme_for_promoter(self, promoter_id: int) -> Optional[Dict[str, Any]]:
        """Resolved theme as a dict; cached per promoter for a short TTL."""
        now = time.monotonic()
        with _theme_cache_lock:
            cached = _theme_cache.get(int(promoter_id))
        if cached and cached[0] > now:
            return cached[1]

        promoter = self.db.get(Promoter, promoter_id)
        theme = self._resolve_theme(promoter) if promoter is not None else None
        resolved = theme.to_dict() if theme is not None else None
        with _theme_cache_lock:
            _theme_cache[int(promoter_id)] = (now + Config.THEME_CACHE_TTL_SECONDS, resolved)
        return resolved

    def list_themes(self, promoter_id: Optional[int] = None) -> List[Theme]:
        query = self.db.query(Theme)
        if promoter_id is not None:
            query = query.filter(Theme.promoterID == promoter_id)
        return query.order_by(Theme.name).all()

    def create_theme(self, promoter_id: Optional[int], data: Dict[str, Any]) -> Tuple[bool, str, Optional[Theme]]:
        name = (data.get("name") or "").strip()
        if not name:
            return False, "Theme name is required", None
        theme = Theme(
            promoterID=promoter_id,
            name=name,
            is_default=bool(data.get("isDefault", False)),
            colors=dict(data.get("colors") or {}),
            typography=dict(data.get("typography") or {}),
            layout=dict(data.get("layout") or {}),
            custom_css=bleach.clean(data.get("customCss") or "", tags=[], strip=True) or None,
        )
        self.db.add(theme)
        self.db.commit()
        clear_theme_cache()
        return True, "Theme created", theme

    def update_theme(self, theme_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Theme]]:
        theme = self.db.get(Theme, theme_id)
        if theme is None:
            return False, "Theme not found", None
        if data.get("name"):
            theme.name = data["name"].strip()
        for field, attr in (("colors", "colors"), ("typography", "typography"), ("layout", "layout")):
            if field in data:
                setattr(theme, attr, dict(data[field] or {}))
        if "isDefault" in data:
            theme.is_default = bool(data["isDefault"])
        if "customCss" in data:
            theme.custom_css = bleach.clean(data["customCss"] or "", tags=[], strip=True) or None
        self.db.commit()
        clear_theme_cache()
        return True, "Theme updated", theme

    def delete_theme(self, theme_id: int) -> Tuple[bool, str, None]:
        theme = self.db.get(Theme, theme_id)
        if theme is None:
            return False, "Theme not found", None
        for promoter in self.db.query(Promoter).all():
            if promoter.custom_theme_id == theme_id:
                promoter.custom_theme_id = None
            if promoter.default_theme_id == theme_id:
                promoter.default_theme_id = None
        self.db.delete(theme)
        self.db.commit()
        clear_theme_cache()
        return True, "Theme deleted", None

    def assign_theme(self, promoter_id: int, theme_id: Optional[int], kind: str = "custom") -> Tuple[bool, str, Optional[Promoter]]:
        promoter = self.db.get(Promoter, promoter_id)
        if promoter is None:
            return False, "Promoter not found", None
        if theme_id is not None and self.db.get(Theme, theme_id) is None:
            return False, "Theme not found", None
        if kind == "default":
            promoter.default_theme_id = theme_id
        else:
            promoter.custom_theme_id = theme_id
        self.db.commit()
        clear_theme_cache(promoter_id)
        return True, "Theme assigned", promoter
