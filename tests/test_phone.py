import pytest

from fundiconnect.common.phone import normalize_phone


@pytest.mark.parametrize(
    "raw",
    ["0712345678", "+254 712 345 678", "254712345678", "whatsapp:+254712345678", "712345678", "(0712) 345-678"],
)
def test_kenyan_formats_compare_equal(raw):
    assert normalize_phone(raw) == "254712345678"


@pytest.mark.parametrize("raw", [None, "", "whatsapp:", "+"])
def test_unusable_numbers_are_none(raw):
    assert normalize_phone(raw) is None


def test_other_country_code():
    assert normalize_phone("0803 123 4567", country_code="234") == "2348031234567"
