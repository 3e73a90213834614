"""PII classification by field name and value format.

The classifier answers "is this field personal data?" and never returns or
logs the value it inspected.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

# Patterns run against the normalised field name: snake_case, lower-case,
# bounded by "_" so "tin" does not match "setting".
_NAME_RULES: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (category, re.compile(rf"(?:^|_)(?:{pattern})(?:e?s)?(?:$|_)"))
    for category, pattern in (
        ("email", r"e_?mail(?:_address)?"),
        ("phone", r"phone(?:_number)?|mobile|msisdn|telephone|tel"),
        ("ssn", r"ssn|social_security(?:_number)?|sin"),
        ("passport", r"passport(?:_number|_no)?"),
        ("tax_id", r"tax_?id|taxpayer_id|tin|vat_number"),
        ("national_id", r"national_id|nino|nid|id_number"),
        ("credit_card", r"credit_?card|card_number|cc_number|pan|cvv|cvc"),
        ("bank_account", r"iban|bank_account|account_number|routing_number|sort_code"),
        ("date_of_birth", r"dob|date_of_birth|birth_?date|birthday"),
        ("address", r"address|street|postcode|postal_code|zip_?code"),
        ("credential", r"password|passwd|secret|token|api_?key|private_key"),
        ("ip_address", r"ip|ip_address|ipv4|ipv6"),
        ("person_name", r"first_name|last_name|full_name|surname|given_name|maiden_name"),
    )
)

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
_SSN = re.compile(r"^\d{3}-\d{2}-\d{4}$")
_PHONE = re.compile(r"^(?:\+\d[\d\s().-]{6,}|\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4})$")
_IPV4 = re.compile(r"^(?:\d{1,3}\.){3}\d{1,3}$")
_CARD = re.compile(r"^(?:\d[ -]?){13,19}$")


def normalize_name(path: str) -> str:
    """Last path segment as snake_case: ``billing.homeAddress[]`` -> ``home_address``."""
    segment = path.rsplit(".", 1)[-1].replace("[]", "")
    return _CAMEL.sub("_", segment).replace("-", "_").lower()


def _luhn_valid(digits: str) -> bool:
    total = 0
    for i, ch in enumerate(reversed(digits)):
        n = int(ch)
        if i % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


class PiiClassifier:
    """Flags fields by name pattern or by the format of observed values."""

    def classify_name(self, path: str) -> str | None:
        name = normalize_name(path)
        for category, pattern in _NAME_RULES:
            if pattern.search(name):
                return category
        return None

    def classify_value(self, value: object) -> str | None:
        if not isinstance(value, str):
            return None
        text = value.strip()
        if _EMAIL.match(text):
            return "email"
        if _SSN.match(text):
            return "ssn"
        if _CARD.match(text):
            digits = re.sub(r"\D", "", text)
            if _luhn_valid(digits):
                return "credit_card"
        if _IPV4.match(text):
            return "ip_address"
        if _PHONE.match(text):
            return "phone"
        return None

    def classify(self, path: str, values: Iterable[object] = ()) -> str | None:
        """Category if the field is personal data, else None."""
        category = self.classify_name(path)
        if category is not None:
            return category
        for value in values:
            category = self.classify_value(value)
            if category is not None:
                return category
        return None
