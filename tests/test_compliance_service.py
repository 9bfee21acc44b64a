from __future__ import annotations

import json
from datetime import timedelta

import pytest

from boxoffice.database import utcnow
from boxoffice.models import ConsentRecord, Customer, DSRStatus, Order, VerificationStatus
from boxoffice.services.compliance_service import ANONYMIZED_NAME, ComplianceService, anonymized_email
from conftest import create_order


def _customer(db_session, promoter, email="buyer@example.com"):
    customer = Customer(promoterID=promoter.promoterID, email=email, first_name="Pat", last_name="Buyer", phone="555-0100")
    db_session.add(customer)
    db_session.commit()
    return customer


def _verified_dsr(service, promoter, request_type, email="buyer@example.com"):
    ok, message, dsr = service.create_dsr(promoter.promoterID, {"email": email, "type": request_type})
    assert ok, message
    service.verify_dsr(dsr.dsrID, "email", True)
    return dsr


def test_create_dsr_links_customer_and_sets_deadline(db_session, sample_promoter):
    customer = _customer(db_session, sample_promoter)
    service = ComplianceService(db_session)
    now = utcnow()

    ok, message, dsr = service.create_dsr(
        sample_promoter.promoterID,
        {"email": " Buyer@Example.com ", "type": "access", "name": "Pat"},
        now=now,
        ip_address="203.0.113.9",
    )

    assert ok and message == "Request received"
    assert dsr.customerID == customer.customerID
    assert dsr.status == DSRStatus.PENDING
    assert dsr.verification_status == VerificationStatus.PENDING
    assert dsr.requester_email == "buyer@example.com"
    assert dsr.deadline_at.replace(tzinfo=now.tzinfo) == now + timedelta(days=30)
    trail = service.get_audit_trail("data_subject_request", dsr.dsrID)
    assert [entry.action for entry in trail] == ["dsr_created"]
    assert trail[0].ip_address == "203.0.113.9"


@pytest.mark.parametrize(
    "data, message",
    [
        ({"email": "", "type": "access"}, "A valid e-mail address is required"),
        ({"email": "nobody", "type": "access"}, "A valid e-mail address is required"),
        ({"email": "a@b.com", "type": "forget_me"}, "Unknown request type: forget_me"),
    ],
)
def test_create_dsr_validation(db_session, sample_promoter, data, message):
    assert ComplianceService(db_session).create_dsr(sample_promoter.promoterID, data)[1] == message


def test_verification_and_status_flow(db_session, sample_promoter):
    service = ComplianceService(db_session)
    _ok, _message, dsr = service.create_dsr(sample_promoter.promoterID, {"email": "x@example.com", "type": "rectification"})

    assert service.verify_dsr(dsr.dsrID, "carrier_pigeon", True)[1] == "Unknown verification method: carrier_pigeon"
    ok, _message, dsr = service.verify_dsr(dsr.dsrID, "id_document", False)
    assert ok and dsr.verification_status == VerificationStatus.FAILED

    assert service.update_status(dsr.dsrID, "in_progress")[2].status == DSRStatus.IN_PROGRESS
    ok, _message, dsr = service.reject(dsr.dsrID, "Could not verify identity")
    assert ok
    assert dsr.status == DSRStatus.REJECTED
    assert dsr.rejection_reason == "Could not verify identity"

    ok, message, _dsr = service.update_status(dsr.dsrID, "in_progress")
    assert not ok
    assert "Invalid DSR status transition" in message
    assert service.update_status(9999, "completed")[1] == "Request not found"


def test_complete_dsr_stamps_response(db_session, sample_promoter):
    service = ComplianceService(db_session)
    _ok, _message, dsr = service.create_dsr(sample_promoter.promoterID, {"email": "x@example.com", "type": "objection"})
    now = utcnow()

    ok, _message, dsr = service.complete_dsr(dsr.dsrID, {"note": "Marketing stopped"}, now=now)

    assert ok
    assert dsr.status == DSRStatus.COMPLETED
    assert dsr.response == {"note": "Marketing stopped", "respondedAt": now.isoformat()}
    assert not service.complete_dsr(dsr.dsrID, {})[0]


def test_overdue_requests(db_session, sample_promoter):
    service = ComplianceService(db_session)
    long_ago = utcnow() - timedelta(days=45)
    service.create_dsr(sample_promoter.promoterID, {"email": "late@example.com", "type": "access"}, now=long_ago)
    service.create_dsr(sample_promoter.promoterID, {"email": "fresh@example.com", "type": "access"})
    _ok, _message, done = service.create_dsr(
        sample_promoter.promoterID, {"email": "done@example.com", "type": "access"}, now=long_ago
    )
    service.complete_dsr(done.dsrID, {})

    overdue = service.get_overdue_dsrs(sample_promoter.promoterID)

    assert [dsr.requester_email for dsr in overdue] == ["late@example.com"]


def test_erasure_anonymizes_orders_and_deletes_profile(db_session, sample_promoter, sample_event):
    customer = _customer(db_session, sample_promoter)
    order = create_order(db_session, sample_event, email="buyer@example.com")
    service = ComplianceService(db_session)
    service.record_consent(sample_promoter.promoterID, "buyer@example.com", "marketing")
    dsr = _verified_dsr(service, sample_promoter, "erasure")
    customer_id = customer.customerID

    ok, _message, dsr = service.process_dsr(dsr.dsrID)

    assert ok
    assert dsr.status == DSRStatus.COMPLETED
    assert dsr.response["deleted"] == ["order_personal_data", "consent_records", "customer_profile"]
    assert dsr.response["retained"] == ["order_financial_records"]
    assert db_session.get(Customer, customer_id) is None
    assert db_session.query(ConsentRecord).count() == 0
    order = db_session.get(Order, order.orderID)
    assert order.customer_name == ANONYMIZED_NAME
    assert order.customer_email == anonymized_email(customer_id)
    assert float(order.total) == 110.0
    assert "erasure_processed" in [entry.action for entry in service.get_audit_trail("customer", customer_id)]


def test_access_and_portability_exports(db_session, sample_promoter, sample_event):
    customer = _customer(db_session, sample_promoter)
    create_order(db_session, sample_event, email="buyer@example.com")
    service = ComplianceService(db_session)
    service.record_consent(sample_promoter.promoterID, "buyer@example.com", "marketing")

    access = service.process_access_request(customer.customerID)
    assert access["profile"]["email"] == "buyer@example.com"
    assert len(access["orders"]) == 1
    assert len(access["consents"]) == 1

    exported = service.export_portable_data(customer.customerID)
    assert exported["format"] == "json"
    assert json.loads(exported["data"])["profile"]["email"] == "buyer@example.com"

    dsr = _verified_dsr(service, sample_promoter, "portability")
    ok, _message, dsr = service.process_dsr(dsr.dsrID)
    assert ok
    assert dsr.response["format"] == "json"
    assert service.process_access_request(9999) == {}


def test_process_dsr_guards(db_session, sample_promoter):
    service = ComplianceService(db_session)
    _ok, _message, unverified = service.create_dsr(sample_promoter.promoterID, {"email": "x@example.com", "type": "access"})
    assert service.process_dsr(unverified.dsrID)[1] == "Requester identity has not been verified"
    assert service.process_dsr(unverified.dsrID, promoter_id=sample_promoter.promoterID + 1)[1] == "Request not found"

    manual = _verified_dsr(service, sample_promoter, "rectification", email="x@example.com")
    assert service.process_dsr(manual.dsrID)[1] == "rectification requests are handled manually"

    nobody = _verified_dsr(service, sample_promoter, "erasure", email="ghost@example.com")
    ok, _message, nobody = service.process_dsr(nobody.dsrID)
    assert ok
    assert nobody.response["note"] == "No customer data held for this e-mail"


def test_consent_lifecycle_and_do_not_sell(db_session, sample_promoter):
    service = ComplianceService(db_session)
    pid = sample_promoter.promoterID
    service.record_consent(pid, "Fan@Example.com", "marketing", ip_address="198.51.100.1")
    service.record_consent(pid, "fan@example.com", "data_sale")

    assert service.has_consent(pid, "fan@example.com", "marketing")
    assert not service.has_consent(pid, "fan@example.com", "sms")

    withdrawn = service.withdraw_consent(pid, "fan@example.com", ["marketing", "sms"])
    assert [record.consent_type for record in withdrawn] == ["marketing"]
    assert not service.has_consent(pid, "fan@example.com", "marketing")

    dsr = _verified_dsr(service, sample_promoter, "do_not_sell", email="fan@example.com")
    ok, _message, dsr = service.process_dsr(dsr.dsrID)
    assert ok
    assert dsr.response["withdrawn"] == ["data_sale"]
    assert not service.has_consent(pid, "fan@example.com", "data_sale")
    assert len(service.list_consents(pid, "fan@example.com")) == 2


def test_withdraw_consent_request_withdraws_everything(db_session, sample_promoter):
    service = ComplianceService(db_session)
    pid = sample_promoter.promoterID
    service.record_consent(pid, "fan@example.com", "marketing")
    service.record_consent(pid, "fan@example.com", "sms")

    dsr = _verified_dsr(service, sample_promoter, "withdraw_consent", email="fan@example.com")
    ok, _message, dsr = service.process_dsr(dsr.dsrID)

    assert ok
    assert sorted(dsr.response["withdrawn"]) == ["marketing", "sms"]
