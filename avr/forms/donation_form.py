"""
Donation initialize form.

Validates donor contact and billing address fields. The amount is parsed
separately (see avr.services.amounts) because it may arrive as a number, a
formatted string or only in the session; both error sets are merged into one
field-keyed ValidationError.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional as Opt

from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Email, Length, Optional

from avr.errors import ValidationError
from avr.models.donation import DonationType
from avr.services.amounts import first_present, parse_amount


def _strip(value):
    return value.strip() if isinstance(value, str) else value


class DonationForm(FlaskForm):
    class Meta:
        # JSON API; the blueprint is CSRF-exempt
        csrf = False

    first_name = StringField(
        "First name",
        validators=[DataRequired(message="First name is required"), Length(max=80)],
    )
    last_name = StringField(
        "Last name",
        validators=[DataRequired(message="Last name is required"), Length(max=80)],
    )
    donor_email = StringField(
        "Email",
        filters=[_strip],
        validators=[
            DataRequired(message="Email address is required"),
            Email(message="Please enter a valid email address"),
            Length(max=254),
        ],
    )
    donor_phone = StringField("Phone", validators=[Optional(), Length(max=40)])
    address_line1 = StringField(
        "Address",
        validators=[DataRequired(message="Street address is required"), Length(max=200)],
    )
    address_line2 = StringField("Address line 2", validators=[Optional(), Length(max=200)])
    city = StringField("City", validators=[DataRequired(message="City is required"), Length(max=100)])
    state = StringField("State", validators=[DataRequired(message="State is required"), Length(max=100)])
    zip_code = StringField(
        "ZIP code",
        validators=[DataRequired(message="ZIP code is required"), Length(max=20)],
    )
    donation_type = SelectField(
        "Donation type",
        choices=[(t.value, t.label) for t in DonationType],
        default=DonationType.ONE_TIME.value,
    )
    comments = TextAreaField("Comments", validators=[Optional(), Length(max=2000)])


@dataclass(frozen=True)
class InitializeRequest:
    first_name: str
    last_name: str
    donor_email: str
    address_line1: str
    city: str
    state: str
    zip_code: str
    amount: Decimal
    donation_type: DonationType = DonationType.ONE_TIME
    donor_phone: str = ""
    address_line2: str = ""
    comments: str = ""

    @property
    def donor_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def _formdata(payload: Mapping[str, Any]) -> MultiDict:
    pairs = []
    for key, value in payload.items():
        if value is None or isinstance(value, (dict, list)):
            continue
        pairs.append((key, str(value)))
    return MultiDict(pairs)


def validate_initialize(payload: Mapping[str, Any], *, session_amount: Any = None) -> InitializeRequest:
    """Validate a raw initialize payload or raise a field-keyed ValidationError."""
    form = DonationForm(formdata=_formdata(payload))
    errors: Dict[str, List[str]] = {}
    if not form.validate():
        errors.update({name: list(msgs) for name, msgs in form.errors.items()})

    amount: Opt[Decimal] = None
    try:
        amount = parse_amount(
            first_present(payload.get("custom_amount"), payload.get("amount"), session_amount)
        )
    except ValidationError as exc:
        errors.update(exc.errors)

    if errors:
        raise ValidationError(errors)

    def _s(field) -> str:
        return (field.data or "").strip()

    return InitializeRequest(
        first_name=_s(form.first_name),
        last_name=_s(form.last_name),
        donor_email=_s(form.donor_email).lower(),
        donor_phone=_s(form.donor_phone),
        address_line1=_s(form.address_line1),
        address_line2=_s(form.address_line2),
        city=_s(form.city),
        state=_s(form.state),
        zip_code=_s(form.zip_code),
        amount=amount,
        donation_type=DonationType(form.donation_type.data),
        comments=_s(form.comments),
    )
