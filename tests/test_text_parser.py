from datetime import date
from decimal import Decimal

from splitscan.services.text_parser import extract_merchant, parse_date, parse_receipt_text


def test_walmart_receipt():
    text = "WALMART\n...\nMilk 2%  3.99\nBread  2.49\nSubtotal 6.48\nTax 0.45\nTotal 6.93"

    r = parse_receipt_text(text)

    assert r.merchant_name == "WALMART"
    assert [(it.name, it.price) for it in r.items] == [("Milk 2%", Decimal("3.99")), ("Bread", Decimal("2.49"))]
    assert r.subtotal == Decimal("6.48")
    assert r.tax == Decimal("0.45")
    assert r.total == Decimal("6.93")


def test_empty_and_whitespace_input():
    for text in ("", "   \n\t\n  "):
        r = parse_receipt_text(text)
        assert r.items == []
        assert r.merchant_name is None
        assert r.transaction_date is None
        assert r.subtotal is None and r.tax is None and r.tip is None and r.total is None


def test_confidence_is_passed_through():
    assert parse_receipt_text("Cafe\nLatte 4.50", confidence=0.87).confidence == 0.87
    assert parse_receipt_text("", confidence=0.5).confidence == 0.5


def test_derived_totals_when_missing():
    r = parse_receipt_text("Corner Shop\nApple 1.20\nPear 0.80\nTax 0.20\nTip 1.00")

    assert r.subtotal == Decimal("2.00")
    assert r.total == Decimal("3.20")


def test_total_without_items_or_amounts_is_zero():
    r = parse_receipt_text("Just a header\nThank you")

    assert r.items == []
    assert r.subtotal is None
    assert r.total == Decimal("0")


def test_keyword_priority():
    text = "Diner\nService tax 1.50\nService charge 2.00\nTotal due 20.00"

    r = parse_receipt_text(text)

    # "Service tax" is tax (tax beats tip), "Service charge" is tip
    assert r.tax == Decimal("1.50")
    assert r.tip == Decimal("2.00")
    assert r.total == Decimal("20.00")
    assert r.items == []


def test_later_keyword_line_overwrites_earlier():
    r = parse_receipt_text("Shop\nTax 1.00\nTax 2.00")
    assert r.tax == Decimal("2.00")


def test_keyword_line_without_amount_clears_the_field():
    r = parse_receipt_text("Shop\nTax 1.00\nTax exempt")
    assert r.tax is None


def test_total_line_without_amount_falls_back_to_derived_total():
    r = parse_receipt_text("Shop\nApple 1.00\nTotal 5.00\nTotal items 1")
    assert r.total == Decimal("1.00")


def test_ambiguous_numeric_date_is_day_first():
    assert parse_receipt_text("Shop\n03/04/2024\nMilk 1.00").transaction_date == date(2024, 4, 3)
    assert parse_date("12-11-2023") == date(2023, 11, 12)


def test_zero_amount_is_kept():
    r = parse_receipt_text("Shop\nBagel 2.00\nTax 0.00")
    assert r.tax == Decimal("0.00")
    assert r.total == Decimal("2.00")


def test_line_items_keep_source_line_numbers():
    text = "Bakery\n\nCroissant 3.10\n\nMuffin $2.75\n"

    r = parse_receipt_text(text)

    assert [(it.name, it.line_number) for it in r.items] == [("Croissant", 3), ("Muffin", 5)]
    assert all(it.quantity == 1 and it.confidence == 0.8 for it in r.items)


def test_zero_price_lines_are_not_items():
    r = parse_receipt_text("Shop\nFree sample 0.00\nWater 1.00")
    assert [it.name for it in r.items] == ["Water"]


def test_price_must_end_the_line():
    r = parse_receipt_text("Shop\n2 @ 3.50 each\nSoda 1.25")
    assert [it.name for it in r.items] == ["Soda"]


def test_merchant_skips_dates_and_numbers():
    assert extract_merchant(["12/03/2024", "$45.10", "Joe's Pizza", "Slice 3.00"]) == "Joe's Pizza"
    assert extract_merchant(["AB", "Deli"]) == "Deli"


def test_merchant_falls_back_to_first_line():
    lines = ["12/03/2024", "42", "7", "01-02-2023", "99.99", "Real Name"]
    assert extract_merchant(lines) == "12/03/2024"


def test_date_formats():
    assert parse_date("03/15/2024") == date(2024, 3, 15)
    assert parse_date("25/12/2024") == date(2024, 12, 25)
    assert parse_date("2024-01-31") == date(2024, 1, 31)
    assert parse_date("1-2-24") == date(2024, 2, 1)
    assert parse_date("March 5, 2024") == date(2024, 3, 5)
    assert parse_date("Sep 30 2023") == date(2023, 9, 30)
    assert parse_date("13/13/2024") is None


def test_first_parseable_date_wins():
    r = parse_receipt_text("Store\n99/99/2024\nDate: Jan 7, 2025\n02/03/2025")
    assert r.transaction_date == date(2025, 1, 7)


def test_tax_lines_are_not_items():
    for line, amount in (("Tax: $3.25", "3.25"), ("GST 1.99", "1.99"), ("HST 4.75", "4.75")):
        r = parse_receipt_text(f"Shop\nSoap 2.00\n{line}")
        assert r.tax == Decimal(amount)
        assert [it.name for it in r.items] == ["Soap"]


def test_parsing_is_deterministic():
    text = "Deli\n01/02/2024\nSandwich 8.50\nChips 1.25\nTip 2.00\nTotal 11.75"
    assert parse_receipt_text(text, 0.9) == parse_receipt_text(text, 0.9)
