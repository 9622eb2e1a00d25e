from decimal import Decimal

import pytest
from pydantic import ValidationError

from fieldops.schemas import (
    InterventionCreate,
    InterventionStatusUpdate,
    PaymentAuthorizeRequest,
    TechnicianCreate,
    DispatchResultRead,
)
from fieldops.services.dispatch import DispatchResult


def test_intervention_create_defaults():
    body = InterventionCreate(client_id="c1", category="plumbing")
    assert body.priority == "normal"
    assert body.auto_dispatch is True


def test_intervention_create_rejects_unknown_category():
    with pytest.raises(ValidationError):
        InterventionCreate(client_id="c1", category="gardening")


def test_status_update_only_forward_targets():
    assert InterventionStatusUpdate(technician_id="t", status="en_route").status == "en_route"
    with pytest.raises(ValidationError):
        InterventionStatusUpdate(technician_id="t", status="cancelled")


def test_payment_request_requires_positive_amount():
    req = PaymentAuthorizeRequest(intervention_id="i", amount="12.50", customer_email="a@b.co")
    assert req.amount == Decimal("12.50")
    with pytest.raises(ValidationError):
        PaymentAuthorizeRequest(intervention_id="i", amount=0, customer_email="a@b.co")


def test_technician_create():
    tech = TechnicianCreate(name="Jane", email="jane@example.com", skills=["locksmith"])
    assert tech.skills == ["locksmith"]
    assert tech.is_available is True


def test_dispatch_result_read_from_dataclass():
    result = DispatchResult("i1", "offered", technician_id="t1")
    read = DispatchResultRead.model_validate(result)
    assert read.outcome == "offered"
    assert read.technician_id == "t1"
    assert result.to_dict()["success"] is True
