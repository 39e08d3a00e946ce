import pytest

from invoicejp import fields
from invoicejp.fields import Confidence, InvoiceFields


def _complete_fields(**overrides):
    values = dict(
        vendor="株式会社サンプル",
        vendor_registration_number="T1234567890123",
        invoice_number="INV-001",
        issue_date="2024-03-05",
        issue_time="09:30",
        due_date="2024-04-30",
        subtotal="1000",
        tax_amount="100",
        total="1100",
        total_amount_tax_inc="1100",
        tax10_target_amount="1000",
        tax10_amount="100",
        tax8_target_amount="0",
        tax8_amount="0",
        payment_method="card",
        document_type="invoice",
        notes="memo",
    )
    values.update(overrides)
    return InvoiceFields(**values)


def test_empty_fields_default_to_jpy():
    empty = fields.create_empty_invoice_fields()
    assert empty.currency == "JPY"
    assert all(value == "" for name, value in empty.to_dict().items() if name != "currency")


def test_canonical_field_names_round_trip():
    original = _complete_fields()
    assert fields.normalize_invoice_fields(original.to_dict()) == original


def test_camel_case_keys_resolve():
    payload = {"vendorRegistrationNumber": "T1234567890123", "totalAmountTaxInc": "2200", "tax8TargetAmount": 500}
    result = fields.normalize_invoice_fields(payload)
    assert result.vendor_registration_number == "T1234567890123"
    assert result.total_amount_tax_inc == "2200"
    assert result.tax8_target_amount == "500"


def test_alias_resolution_ignores_case_and_punctuation():
    payload = {
        "Vendor Name": "ローソン",
        "INVOICE-NO": "A-1",
        "Issue_Date": "2024/3/5",
        "Grand Total": "¥1,100",
    }
    result = fields.normalize_invoice_fields(payload)
    assert result.vendor == "ローソン"
    assert result.invoice_number == "A-1"
    assert result.issue_date == "2024-03-05"
    assert result.total == "1100"


def test_japanese_aliases():
    payload = {"店名": "セブンイレブン", "登録番号": "T9876543210987", "合計": "５４０円", "10%対象": "500"}
    result = fields.normalize_invoice_fields(payload)
    assert result.vendor == "セブンイレブン"
    assert result.vendor_registration_number == "T9876543210987"
    assert result.total == "540"
    assert result.tax10_target_amount == "500"


def test_unknown_keys_are_ignored():
    result = fields.normalize_invoice_fields({"vendor": "A", "favourite_colour": "blue"})
    assert result == InvoiceFields(vendor="A")


def test_first_non_null_alias_wins():
    result = fields.normalize_invoice_fields({"vendor": None, "supplier": "Supplier KK"})
    assert result.vendor == "Supplier KK"


def test_value_coercion():
    result = fields.normalize_invoice_fields({
        "total": 1100,
        "subtotal": 1000.0,
        "tax_amount": 100.5,
        "notes": True,
        "vendor": {"name": "nested"},
        "payment_method": ["cash"],
        "invoice_number": "  42  ",
    })
    assert result.total == "1100"
    assert result.subtotal == "1000"
    assert result.tax_amount == "100.5"
    assert result.notes == "true"
    assert result.vendor == ""
    assert result.payment_method == ""
    assert result.invoice_number == "42"


@pytest.mark.parametrize("raw, expected", [
    ("1,234.50円", "1234.5"),
    ("¥1,100", "1100"),
    ("－１，０００", "-1000"),
    ("JPY 500", "500"),
    ("abc", ""),
    ("1.2.3", ""),
    ("", ""),
])
def test_amount_normalization(raw, expected):
    assert fields.normalize_amount_value(raw) == expected


@pytest.mark.parametrize("raw, expected", [
    ("2024-03-05", "2024-03-05"),
    ("2024/3/5", "2024-03-05"),
    ("2024年3月5日", "2024-03-05"),
    ("2024.03.05", "2024-03-05"),
    ("3/5/2024", "2024-03-05"),
    ("令和6年3月5日", "2024-03-05"),
    ("R6.3.5", "2024-03-05"),
    ("平成31年4月30日", "2019-04-30"),
    ("令和元年5月1日", "2019-05-01"),
    ("March 5, 2024", "2024-03-05"),
    ("2024-03-05T10:30:00+09:00", "2024-03-05"),
    ("not a date", ""),
    ("", ""),
])
def test_date_normalization(raw, expected):
    assert fields.normalize_date_value(raw) == expected


@pytest.mark.parametrize("raw, expected", [
    ("9:05", "09:05"),
    ("09:05", "09:05"),
    ("９：０５", "09:05"),
    ("12時30分", "12:30"),
    ("23:59", "23:59"),
    ("24:00", ""),
    ("12:60", ""),
    ("noon", ""),
])
def test_time_normalization(raw, expected):
    assert fields.normalize_time_value(raw) == expected


def test_invalid_date_and_time_become_empty():
    result = fields.normalize_invoice_fields({"issue_date": "someday", "issue_time": "25:99", "vendor": "A"})
    assert result.issue_date == ""
    assert result.issue_time == ""


def test_document_type_normalization():
    assert fields.normalize_invoice_fields({"document_type": "Receipt"}).document_type == "receipt"
    assert fields.normalize_invoice_fields({"documentType": "請求書"}).document_type == "invoice"
    assert fields.normalize_invoice_fields({"document_type": "estimate"}).document_type == ""


def test_currency_is_always_jpy():
    assert fields.normalize_invoice_fields({"currency": "USD", "vendor": "A"}).currency == "JPY"
    assert fields.normalize_invoice_fields({"vendor": "A"}).currency == "JPY"


@pytest.mark.parametrize("payload", [None, 42, "not json", [1, 2], "{broken", {"text": "hello"}])
def test_malformed_payloads_never_raise(payload):
    assert fields.normalize_invoice_fields(payload) == InvoiceFields()


def test_nested_and_encoded_payloads():
    assert fields.normalize_invoice_fields({"outputs": {"vendor": "A"}}).vendor == "A"
    assert fields.normalize_invoice_fields({"text": '{"vendor": "B", "total": 500}'}).total == "500"
    fenced = {"text": '```json\n{"vendor": "C"}\n```'}
    assert fields.normalize_invoice_fields(fenced).vendor == "C"
    assert fields.normalize_invoice_fields('{"vendor": "D"}').vendor == "D"


def test_confidence_normalization():
    result = fields.normalize_invoice_confidence({
        "vendor": "HIGH",
        "total": "medium",
        "issueDate": " low ",
        "invoice_number": "Med",
        "notes": "unsure",
        "subtotal": 0.9,
    })
    assert result == {
        "vendor": Confidence.HIGH,
        "total": Confidence.MED,
        "issue_date": Confidence.LOW,
        "invoice_number": Confidence.MED,
    }


def test_confidence_accepts_json_string_and_ignores_garbage():
    assert fields.normalize_invoice_confidence('{"vendor": "high"}') == {"vendor": Confidence.HIGH}
    assert fields.normalize_invoice_confidence(None) == {}
    assert fields.normalize_invoice_confidence(["high"]) == {}


def test_heuristic_confidence():
    assert fields.heuristic_confidence("issue_date", "2024-03-05") == Confidence.HIGH
    assert fields.heuristic_confidence("issue_date", "") == Confidence.LOW
    assert fields.heuristic_confidence("issue_time", "9:05") == Confidence.LOW
    assert fields.heuristic_confidence("total", "1100") == Confidence.HIGH
    assert fields.heuristic_confidence("total", "abc") == Confidence.LOW
    assert fields.heuristic_confidence("vendor", "AB") == Confidence.MED
    assert fields.heuristic_confidence("vendor", "ABC") == Confidence.HIGH


def test_reported_confidence_wins_over_heuristic():
    invoice = _complete_fields()
    reported = {"vendor": Confidence.LOW}
    assert fields.resolve_field_confidence(invoice, reported, "vendor") == Confidence.LOW
    assert fields.resolve_field_confidence(invoice, reported, "total") == Confidence.HIGH


def test_needs_review():
    assert fields.needs_review(_complete_fields()) is False
    assert fields.needs_review(_complete_fields(total="")) is True
    assert fields.needs_review(_complete_fields(vendor="")) is True
    assert fields.needs_review(_complete_fields(total="abc")) is True


def test_update_field():
    invoice = _complete_fields()
    assert fields.update_field(invoice, "vendor", "New KK").vendor == "New KK"
    assert fields.update_field(invoice, "currency", "USD").currency == "JPY"
    with pytest.raises(KeyError):
        fields.update_field(invoice, "color", "red")


def test_to_nullable_number():
    assert fields.to_nullable_number("¥1,100") == 1100.0
    assert fields.to_nullable_number("") is None
    assert fields.to_nullable_number("n/a") is None


def test_invoice_fields_from_dict_keeps_reviewed_values():
    result = fields.invoice_fields_from_dict({"issue_date": "2024/3/5", "total": 1100, "currency": "EUR"})
    assert result.issue_date == "2024/3/5"
    assert result.total == "1100"
    assert result.currency == "JPY"


def test_tax_inclusive_total_is_scored_as_an_amount():
    assert fields.heuristic_confidence("total_amount_tax_inc", "1100") == Confidence.HIGH
    assert fields.heuristic_confidence("total_amount_tax_inc", "about 1100 yen") == Confidence.LOW
