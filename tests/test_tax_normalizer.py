import pytest

from ap_bill_ocr.ocr_models import ExtractedBill
from ap_bill_ocr.tax_normalizer import (
    TaxMeta,
    adjust_price_for_tax,
    build_bill_lines,
    build_bill_vals,
    line_items_match_total,
    load_tax_meta,
    pick_tax_ids,
    to_tax_excluded,
    to_tax_included,
)

VAT_IDS = {"goods": 11, "services": 12, "generic": 13}


def bill_from(totals, lines=(), vat=None, hint=None, invoice=None):
    return ExtractedBill.from_dict({
        "vat": vat or {"classification": "vatable", "goods_or_services": "goods"},
        "totals": totals,
        "line_items": list(lines),
        "expense_account_hint": hint or {},
        "invoice": invoice or {},
    })


@pytest.mark.parametrize("price", [0.01, 99.99, 1000.0, 123456.78])
def test_tax_round_trip(price):
    assert abs(to_tax_excluded(to_tax_included(price, 12.0), 12.0) - price) < 1e-6


def test_adjust_only_when_conventions_disagree():
    assert adjust_price_for_tax(112.0, True, True, 12.0) == 112.0
    assert adjust_price_for_tax(100.0, False, False, 12.0) == 100.0
    assert abs(adjust_price_for_tax(112.0, True, False, 12.0) - 100.0) < 1e-9
    assert abs(adjust_price_for_tax(100.0, False, True, 12.0) - 112.0) < 1e-9


def test_pick_tax_ids():
    goods = bill_from({}, vat={"classification": "vatable", "goods_or_services": "goods"})
    services = bill_from({}, vat={"classification": "vatable", "goods_or_services": "services"})
    unknown_kind = bill_from({}, vat={"classification": "vatable", "goods_or_services": "unknown"})
    exempt = bill_from({}, vat={"classification": "exempt"})
    exempt_with_vatable_line = bill_from(
        {}, lines=[{"description": "x", "amount": 10, "vat_code": "vatable"}], vat={"classification": "exempt"}
    )

    assert pick_tax_ids(VAT_IDS, goods) == [11]
    assert pick_tax_ids(VAT_IDS, services) == [12]
    assert pick_tax_ids(VAT_IDS, unknown_kind) == [13]
    assert pick_tax_ids(VAT_IDS, exempt) == []
    assert pick_tax_ids(VAT_IDS, exempt_with_vatable_line) == [13]
    assert pick_tax_ids({"goods": 0, "services": 0, "generic": 0}, goods) == []


def test_line_items_match_total_checks_gross_and_net():
    bill = bill_from({}, lines=[{"amount": 500}, {"amount": 500}])
    assert line_items_match_total(bill.line_items, 1120.0, 1000.0)
    assert line_items_match_total(bill.line_items, 1030.0)
    assert not line_items_match_total(bill.line_items, 2000.0, 1800.0)
    assert not line_items_match_total([], 1000.0)


def test_synthetic_line_uses_net_total_for_exclusive_tax():
    bill = bill_from(
        {"grand_total": 1120, "net_total": 1000, "tax_total": 120},
        hint={"suggested_account_name": "Repairs and Maintenance"},
    )
    lines = build_bill_lines(bill, [11], TaxMeta(12.0, False), [401])

    assert len(lines) == 1
    vals = lines[0][2]
    assert vals["price_unit"] == 1000.0
    assert vals["name"] == "Repairs and Maintenance"
    assert vals["tax_ids"] == [(6, 0, [11])]
    assert vals["account_id"] == 401


def test_synthetic_line_strips_tax_when_net_missing():
    bill = bill_from({"grand_total": 1120})
    vals = build_bill_lines(bill, [11], TaxMeta(12.0, False))[0][2]
    assert vals["price_unit"] == 1000.0
    assert vals["name"] == "OCR Vendor Bill"


def test_synthetic_line_uses_gross_for_inclusive_tax_or_no_tax():
    bill = bill_from({"grand_total": 1120, "net_total": 1000})
    assert build_bill_lines(bill, [11], TaxMeta(12.0, True))[0][2]["price_unit"] == 1120.0
    no_tax = build_bill_lines(bill, [])[0][2]
    assert no_tax["price_unit"] == 1120.0
    assert no_tax["tax_ids"] == [(6, 0, [])]


def test_inclusive_line_prices_converted_for_exclusive_tax():
    bill = bill_from(
        {"grand_total": 2240, "net_total": 2000, "amounts_are_vat_inclusive": True},
        lines=[
            {"description": "Rice 25kg", "quantity": 1, "unit_price": 1120, "amount": 1120},
            {"description": "Cooking oil", "quantity": 2, "unit_price": 560, "amount": 1120},
        ],
    )
    lines = [vals for _, _, vals in build_bill_lines(bill, [11], TaxMeta(12.0, False), [401, 402])]

    assert [line["price_unit"] for line in lines] == [1000.0, 500.0]
    assert [line["account_id"] for line in lines] == [401, 402]
    assert sum(line["price_unit"] * line["quantity"] for line in lines) == 2000.0


def test_per_line_vat_codes():
    bill = bill_from(
        {"grand_total": 1220, "net_total": 1100},
        lines=[
            {"description": "Vatable goods", "amount": 1000, "vat_code": "vatable"},
            {"description": "Fresh vegetables", "amount": 100, "vat_code": "exempt"},
        ],
    )
    lines = [vals for _, _, vals in build_bill_lines(bill, [11], TaxMeta(12.0, False))]
    assert lines[0]["tax_ids"] == [(6, 0, [11])]
    assert lines[1]["tax_ids"] == [(6, 0, [])]


def test_residual_pushed_to_quantity_one_line():
    bill = bill_from(
        {"grand_total": 1120, "net_total": 1000, "amounts_are_vat_inclusive": True},
        lines=[
            {"description": "Bond paper", "quantity": 3, "unit_price": 124.44, "amount": 373.32},
            {"description": "Toner", "quantity": 1, "unit_price": 746.68, "amount": 746.68},
        ],
    )
    lines = [vals for _, _, vals in build_bill_lines(bill, [11], TaxMeta(12.0, False))]

    assert lines[0]["price_unit"] == 111.11
    computed = sum(round(line["price_unit"] * line["quantity"], 2) for line in lines)
    assert abs(computed - 1000.0) < 0.005


def test_falls_back_to_single_line_when_items_do_not_add_up():
    bill = bill_from(
        {"grand_total": 5000, "net_total": 0},
        lines=[{"description": "Partial", "amount": 1000}],
    )
    lines = build_bill_lines(bill, [])
    assert len(lines) == 1
    assert lines[0][2]["price_unit"] == 5000.0


def test_build_bill_vals():
    bill = bill_from(
        {"grand_total": 1120, "net_total": 1000},
        invoice={"number": "SI-00123", "date": "2025-03-14", "currency": "PHP"},
    )
    vals = build_bill_vals(bill, 301, 1, [11], purchase_journal_id=7, tax_meta=TaxMeta())

    assert vals["move_type"] == "in_invoice"
    assert vals["partner_id"] == 301
    assert vals["journal_id"] == 7
    assert vals["ref"] == "SI-00123"
    assert vals["invoice_date"] == "2025-03-14"
    assert "currency_id" not in vals


def test_load_tax_meta(odoo):
    odoo.add("account.tax", id=11, amount=12.0, price_include=True)
    meta = load_tax_meta(odoo, 1, [11])
    assert meta.amount == 12.0
    assert meta.price_include is True
    assert load_tax_meta(odoo, 1, []) is None
