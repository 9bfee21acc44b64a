"""Privacy compliance: data subject requests, consent records and audit trail."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.database import utcnow
from boxoffice.models import (
    AuditLog,
    ConsentRecord,
    Customer,
    DataSubjectRequest,
    DSRStatus,
    DSRType,
    Order,
    VerificationStatus,
)
from boxoffice.observability import increment_counter
from boxoffice.services.notification_service import publish_dsr_created
from boxoffice.services.order_service import serialize_order

ANONYMIZED_NAME = "Deleted Customer"
VERIFICATION_METHODS = ("email", "id_document", "manual")
DO_NOT_SELL_CONSENT = "data_sale"


def anonymized_email(customer_id: Any) -> str:
    return f"deleted+{customer_id}@redacted.invalid"


class ComplianceService:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def _audit(self, action: str, entity_type: str, entity_id: Optional[int], data: Optional[Dict[str, Any]] = None,
               user_id: Optional[int] = None, ip_address: Optional[str] = None, old: Optional[Dict[str, Any]] = None) -> None:
        self.db.add(
            AuditLog(
                event_type="compliance",
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
                action=action,
                old_values=old,
                new_values=data,
                ip_address=ip_address,
                timestamp=utcnow(),
                success=True,
            )
        )

    def get_audit_trail(self, entity_type: Optional[str] = None, entity_id: Optional[int] = None) -> List[AuditLog]:
        query = self.db.query(AuditLog).filter(AuditLog.event_type == "compliance")
        if entity_type:
            query = query.filter(AuditLog.entity_type == entity_type)
        if entity_id is not None:
            query = query.filter(AuditLog.entity_id == entity_id)
        return query.order_by(AuditLog.timestamp, AuditLog.auditID).all()

    # ------------------------------------------------------------------
    # Data subject requests
    # ------------------------------------------------------------------

    def _find_customer(self, promoter_id: Optional[int], email: str) -> Optional[Customer]:
        query = self.db.query(Customer).filter(func.lower(Customer.email) == email.lower())
        if promoter_id is not None:
            query = query.filter(Customer.promoterID == promoter_id)
        return query.first()

    def create_dsr(self, promoter_id: Optional[int], data: Dict[str, Any], now: Optional[datetime] = None,
                   ip_address: Optional[str] = None) -> Tuple[bool, str, Optional[DataSubjectRequest]]:
        email = (data.get("email") or "").strip().lower()
        if not email or "@" not in email:
            return False, "A valid e-mail address is required", None
        try:
            request_type = DSRType(data.get("type"))
        except ValueError:
            return False, f"Unknown request type: {data.get('type')}", None

        now = now or utcnow()
        customer = self._find_customer(promoter_id, email)
        dsr = DataSubjectRequest(
            promoterID=promoter_id,
            customerID=customer.customerID if customer else None,
            request_type=request_type,
            status=DSRStatus.PENDING,
            verification_status=VerificationStatus.PENDING,
            requester_email=email,
            requester_name=data.get("name"),
            details=data.get("details"),
            deadline_at=now + timedelta(days=Config.DSR_DEADLINE_DAYS),
            created_at=now,
        )
        self.db.add(dsr)
        self.db.flush()
        self._audit("dsr_created", "data_subject_request", dsr.dsrID, {"type": request_type.value}, ip_address=ip_address)
        self.db.commit()
        increment_counter("dsr_requests_total", labels={"type": request_type.value})
        publish_dsr_created(self.db, dsr)
        self.logger.info("Data subject request %s created", dsr.dsrID, extra={"type": request_type.value})
        return True, "Request received", dsr

    def get_dsr(self, dsr_id: int, promoter_id: Optional[int] = None) -> Optional[DataSubjectRequest]:
        dsr = self.db.get(DataSubjectRequest, dsr_id)
        if dsr is None or (promoter_id is not None and dsr.promoterID != promoter_id):
            return None
        return dsr

    def list_dsrs(self, promoter_id: Optional[int], filters: Optional[Dict[str, Any]] = None) -> List[DataSubjectRequest]:
        filters = filters or {}
        query = self.db.query(DataSubjectRequest)
        if promoter_id is not None:
            query = query.filter(DataSubjectRequest.promoterID == promoter_id)
        if filters.get("status"):
            query = query.filter(DataSubjectRequest.status == DSRStatus(filters["status"]))
        if filters.get("type"):
            query = query.filter(DataSubjectRequest.request_type == DSRType(filters["type"]))
        if filters.get("email"):
            query = query.filter(DataSubjectRequest.requester_email == filters["email"].strip().lower())
        return query.order_by(DataSubjectRequest.created_at.desc()).all()

    def verify_dsr(self, dsr_id: int, method: str, verified: bool, user_id: Optional[int] = None) -> Tuple[bool, str, Optional[DataSubjectRequest]]:
        dsr = self.get_dsr(dsr_id)
        if dsr is None:
            return False, "Request not found", None
        if method not in VERIFICATION_METHODS:
            return False, f"Unknown verification method: {method}", None
        dsr.verification_status = VerificationStatus.VERIFIED if verified else VerificationStatus.FAILED
        dsr.verification_method = method
        self._audit("dsr_verified", "data_subject_request", dsr.dsrID, {"method": method, "verified": verified}, user_id)
        self.db.commit()
        return True, "Verification recorded", dsr

    def update_status(self, dsr_id: int, status: str, user_id: Optional[int] = None) -> Tuple[bool, str, Optional[DataSubjectRequest]]:
        dsr = self.get_dsr(dsr_id)
        if dsr is None:
            return False, "Request not found", None
        previous = DSRStatus(dsr.status)
        try:
            dsr.transition_to(DSRStatus(status))
        except ValueError as exc:
            return False, str(exc), dsr
        self._audit("dsr_status_changed", "data_subject_request", dsr.dsrID, {"status": dsr.status.value}, user_id,
                    old={"status": previous.value})
        self.db.commit()
        return True, "Status updated", dsr

    def reject(self, dsr_id: int, reason: str, user_id: Optional[int] = None) -> Tuple[bool, str, Optional[DataSubjectRequest]]:
        ok, message, dsr = self.update_status(dsr_id, DSRStatus.REJECTED.value, user_id)
        if ok:
            dsr.rejection_reason = reason
            self.db.commit()
        return ok, message, dsr

    def complete_dsr(self, dsr_id: int, response: Dict[str, Any], user_id: Optional[int] = None,
                     now: Optional[datetime] = None) -> Tuple[bool, str, Optional[DataSubjectRequest]]:
        dsr = self.get_dsr(dsr_id)
        if dsr is None:
            return False, "Request not found", None
        try:
            dsr.transition_to(DSRStatus.COMPLETED)
        except ValueError as exc:
            return False, str(exc), dsr
        now = now or utcnow()
        dsr.response = {**(response or {}), "respondedAt": now.isoformat()}
        dsr.completed_at = now
        self._audit("dsr_completed", "data_subject_request", dsr.dsrID, {"type": dsr.request_type.value}, user_id)
        self.db.commit()
        return True, "Request completed", dsr

    def get_overdue_dsrs(self, promoter_id: Optional[int] = None, now: Optional[datetime] = None) -> List[DataSubjectRequest]:
        now = now or utcnow()
        open_requests = self.list_dsrs(promoter_id)
        return [dsr for dsr in open_requests if dsr.is_overdue(now)]

    # ------------------------------------------------------------------
    # Request processing
    # ------------------------------------------------------------------

    def _orders_for(self, customer: Customer) -> List[Order]:
        return (
            self.db.query(Order)
            .filter((Order.customerID == customer.customerID) | (func.lower(Order.customer_email) == customer.email.lower()))
            .filter(Order.promoterID == customer.promoterID)
            .order_by(Order.created_at)
            .all()
        )

    def _consents_for(self, promoter_id: Optional[int], email: str) -> List[ConsentRecord]:
        query = self.db.query(ConsentRecord).filter(func.lower(ConsentRecord.email) == email.lower())
        if promoter_id is not None:
            query = query.filter(ConsentRecord.promoterID == promoter_id)
        return query.order_by(ConsentRecord.recorded_at).all()

    def process_erasure_request(self, dsr_id: int, customer_id: int, user_id: Optional[int] = None) -> Dict[str, List[str]]:
        """Delete the profile and consents; orders stay for accounting with PII removed."""
        deleted: List[str] = []
        retained: List[str] = []
        customer = self.db.get(Customer, customer_id)
        if customer is None:
            retained.append("customer_profile")
            return {"deleted": deleted, "retained": retained}

        orders = self._orders_for(customer)
        for order in orders:
            order.customer_name = ANONYMIZED_NAME
            order.customer_email = anonymized_email(customer_id)
            order.customer_phone = None
            order.customerID = None
        if orders:
            deleted.append("order_personal_data")
            retained.append("order_financial_records")

        consents = self._consents_for(customer.promoterID, customer.email)
        for consent in consents:
            self.db.delete(consent)
        if consents:
            deleted.append("consent_records")

        self.db.delete(customer)
        deleted.append("customer_profile")
        self._audit("erasure_processed", "customer", customer_id, {"dsrId": dsr_id, "deleted": deleted}, user_id)
        self.db.commit()
        self.logger.info("Erasure processed", extra={"dsr_id": dsr_id, "orders_anonymized": len(orders)})
        return {"deleted": deleted, "retained": retained}

    def process_access_request(self, customer_id: int) -> Dict[str, Any]:
        customer = self.db.get(Customer, customer_id)
        if customer is None:
            return {}
        return {
            "profile": customer.to_dict(),
            "orders": [serialize_order(order) for order in self._orders_for(customer)],
            "consents": [consent.to_dict() for consent in self._consents_for(customer.promoterID, customer.email)],
        }

    def export_portable_data(self, customer_id: int) -> Dict[str, str]:
        return {"format": "json", "data": json.dumps(self.process_access_request(customer_id), indent=2, default=str)}

    def process_dsr(self, dsr_id: int, user_id: Optional[int] = None,
                    promoter_id: Optional[int] = None) -> Tuple[bool, str, Optional[DataSubjectRequest]]:
        """Carry out a verified request and complete it with the outcome as the response."""
        dsr = self.get_dsr(dsr_id, promoter_id)
        if dsr is None:
            return False, "Request not found", None
        if VerificationStatus(dsr.verification_status) != VerificationStatus.VERIFIED:
            return False, "Requester identity has not been verified", dsr

        request_type = DSRType(dsr.request_type)
        if request_type in (DSRType.ERASURE, DSRType.ACCESS, DSRType.PORTABILITY) and dsr.customerID is None:
            response: Dict[str, Any] = {"note": "No customer data held for this e-mail"}
        elif request_type == DSRType.ERASURE:
            response = self.process_erasure_request(dsr.dsrID, dsr.customerID, user_id)
        elif request_type == DSRType.ACCESS:
            response = self.process_access_request(dsr.customerID)
        elif request_type == DSRType.PORTABILITY:
            response = self.export_portable_data(dsr.customerID)
        elif request_type in (DSRType.WITHDRAW_CONSENT, DSRType.DO_NOT_SELL):
            types = (
                [DO_NOT_SELL_CONSENT]
                if request_type == DSRType.DO_NOT_SELL
                else sorted({c.consent_type for c in self._consents_for(dsr.promoterID, dsr.requester_email)})
            )
            withdrawn = self.withdraw_consent(dsr.promoterID, dsr.requester_email, types)
            response = {"withdrawn": [record.consent_type for record in withdrawn]}
        else:
            return False, f"{request_type.value} requests are handled manually", dsr

        if DSRStatus(dsr.status) == DSRStatus.PENDING:
            dsr.transition_to(DSRStatus.IN_PROGRESS)
        return self.complete_dsr(dsr.dsrID, response, user_id)

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    def record_consent(self, promoter_id: Optional[int], email: str, consent_type: str, granted: bool = True,
                       source: str = "web", ip_address: Optional[str] = None) -> ConsentRecord:
        email = email.strip().lower()
        customer = self._find_customer(promoter_id, email)
        record = ConsentRecord(
            promoterID=promoter_id,
            customerID=customer.customerID if customer else None,
            email=email,
            consent_type=consent_type,
            granted=granted,
            source=source,
            ip_address=ip_address,
            recorded_at=utcnow(),
        )
        self.db.add(record)
        self.db.flush()
        self._audit("consent_recorded", "consent", record.consentID, {"type": consent_type, "granted": granted},
                    ip_address=ip_address)
        self.db.commit()
        return record

    def _latest_consent(self, promoter_id: Optional[int], email: str, consent_type: str) -> Optional[ConsentRecord]:
        records = [c for c in self._consents_for(promoter_id, email) if c.consent_type == consent_type]
        return records[-1] if records else None

    def has_consent(self, promoter_id: Optional[int], email: str, consent_type: str) -> bool:
        record = self._latest_consent(promoter_id, email, consent_type)
        return bool(record and record.granted and record.withdrawn_at is None)

    def withdraw_consent(self, promoter_id: Optional[int], email: str, consent_types: List[str],
                         ip_address: Optional[str] = None) -> List[ConsentRecord]:
        withdrawn = []
        now = utcnow()
        for consent_type in consent_types:
            record = self._latest_consent(promoter_id, email, consent_type)
            if record is None or not record.granted or record.withdrawn_at is not None:
                continue
            record.withdrawn_at = now
            self._audit("consent_withdrawn", "consent", record.consentID, {"type": consent_type}, ip_address=ip_address)
            withdrawn.append(record)
        self.db.commit()
        return withdrawn

    def list_consents(self, promoter_id: Optional[int], email: str) -> List[ConsentRecord]:
        return self._consents_for(promoter_id, email)
