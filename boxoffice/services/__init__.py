from .access import PromoterAccess
from .admin_service import AdminService
from .affiliate_service import AffiliateImportService
from .branding_service import BrandingService
from .campaign_service import CampaignService
from .checkout_service import CheckoutService
from .compliance_service import ComplianceService
from .dashboard_service import DashboardService
from .document_service import DocumentService
from .experiment_service import ExperimentService
from .helpdesk_service import HelpDeskService
from .legacy_import_service import LegacyImportService
from .mailer import Mailer
from .notification_service import NotificationService
from .order_service import OrderService
from .payment_service import PaymentService
from .promoter_service import PromoterService
from .promotion_service import PromotionService
from .refund_service import RefundService
from .segmentation_service import SegmentationService

__all__ = [
    "PromoterAccess",
    "AdminService",
    "AffiliateImportService",
    "BrandingService",
    "CampaignService",
    "CheckoutService",
    "ComplianceService",
    "DashboardService",
    "DocumentService",
    "ExperimentService",
    "HelpDeskService",
    "LegacyImportService",
    "Mailer",
    "NotificationService",
    "OrderService",
    "PaymentService",
    "PromoterService",
    "PromotionService",
    "RefundService",
    "SegmentationService",
]
