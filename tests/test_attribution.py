from lab_reconciliation.attribution import positive_treatment_categories, resolve_attribution
from lab_reconciliation.merge import derive_row
from lab_reconciliation.models import TREATMENT_SCAN_ORDER, Category

from tests.helpers.stores import make_linked, make_row


def test_first_positive_treatment_wins_and_all_positives_are_available():
    row = make_row("r1", 4, amounts={"implant": 500, "perio": 200})
    selected, available = resolve_attribution(row)
    assert selected is Category.IMPLANT
    assert available == (Category.IMPLANT, Category.PERIO)


def test_scan_order_not_mapping_order_decides():
    # Mapping order is perio-first; canonical scan order puts prostho first.
    row = make_row("r1", 4, amounts={"perio": 10, "whitening": 5, "prostho": 1})
    selected, available = resolve_attribution(row)
    assert selected is Category.PROSTHO
    assert available == (Category.PROSTHO, Category.WHITENING, Category.PERIO)


def test_retail_sale_resolves_to_vault_even_with_treatments():
    row = make_row("r1", 4, amounts={"implant": 500}, retail=(100, 0))
    selected, available = resolve_attribution(row)
    assert selected is Category.VAULT
    assert available == (Category.IMPLANT,)

    derived = derive_row(row, None)
    assert derived.is_vault
    assert not derived.re_attributable
    assert derived.re_pickable_categories == ()


def test_diy_whitening_kit_also_counts_as_retail():
    row = make_row("r1", 4, retail=(0, "350"))
    assert resolve_attribution(row).selected is Category.VAULT


def test_saved_category_wins_over_vault_and_treatments():
    row = make_row("r1", 4, amounts={"implant": 500}, retail=(100, 0))
    selected, available = resolve_attribution(row, Category.OTHER_SELF_PAY)
    assert selected is Category.OTHER_SELF_PAY
    assert available == (Category.IMPLANT,)

    rec = make_linked("rec-1", "r1", 4, amount=0, category="other_self_pay")
    assert derive_row(row, rec).selected_category is Category.OTHER_SELF_PAY


def test_no_positive_amounts_falls_back_to_other_self_pay():
    row = make_row("r1", 4, amounts={"implant": 0, "perio": "-20"})
    selected, available = resolve_attribution(row)
    assert selected is Category.OTHER_SELF_PAY
    assert available == ()
    assert positive_treatment_categories(row) == ()

    # With nothing positive the operator may pick from every non-vault category.
    derived = derive_row(row, None)
    assert derived.re_pickable_categories == TREATMENT_SCAN_ORDER
    assert Category.VAULT not in derived.re_pickable_categories
