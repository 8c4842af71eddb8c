from decimal import Decimal

import pytest
from db.client import session_scope

from lab_reconciliation.errors import ValidationFailure
from lab_reconciliation.labs import (
    SqlLaboratoryDirectory,
    add_pricing_entry,
    create_laboratory,
    list_laboratories,
    normalize_name,
    remove_pricing_entry,
    rename_laboratory,
    soft_delete_laboratory,
    validate_name,
    validate_price,
)

from tests.helpers.db import sqlite_session_factory
from tests.helpers.stores import CLINIC


@pytest.fixture()
def factory(tmp_path):
    return sqlite_session_factory(tmp_path)


def test_name_normalization_and_validation():
    assert normalize_name("  Acme   Dental\tLab ") == "Acme Dental Lab"
    assert validate_name("Acme").ok
    assert validate_name("   ").reason == "Name cannot be empty"
    assert not validate_name("x" * 129).ok
    assert not validate_name(" ALL ").ok


def test_price_validation():
    assert validate_price(Decimal("0"), is_percentage=False).ok
    assert not validate_price(Decimal("-1"), is_percentage=False).ok
    assert validate_price(Decimal("100"), is_percentage=True).ok
    assert not validate_price(Decimal("100.01"), is_percentage=True).ok
    assert validate_price(Decimal("250"), is_percentage=False).ok


def test_create_laboratory_rejects_duplicates_case_insensitively(factory):
    with session_scope(factory) as s:
        lab = create_laboratory(s, clinic_id=CLINIC, name=" Acme  Dental Lab ")
    assert lab.name == "Acme Dental Lab"

    with session_scope(factory) as s, pytest.raises(ValidationFailure) as ei:
        create_laboratory(s, clinic_id=CLINIC, name="acme dental lab")
    assert ei.value.field == "name"

    # Same name in another clinic is fine.
    with session_scope(factory) as s:
        create_laboratory(s, clinic_id="clinic-2", name="Acme Dental Lab")


def test_pricing_entries_keep_insertion_order(factory):
    with session_scope(factory) as s:
        lab = create_laboratory(s, clinic_id=CLINIC, name="Acme Dental Lab")
        add_pricing_entry(s, laboratory_id=lab.id, name="Crown", price="500")
        share = add_pricing_entry(
            s, laboratory_id=lab.id, name="Lab share", price=30, is_percentage=True
        )
        add_pricing_entry(s, laboratory_id=lab.id, name="Bridge", price="1000")

    directory = SqlLaboratoryDirectory(factory)
    entries = directory.pricing_list("  acme dental lab", CLINIC)
    assert [e.name for e in entries] == ["Crown", "Lab share", "Bridge"]
    assert entries[1] == share
    assert entries[1].is_percentage

    with session_scope(factory) as s:
        remove_pricing_entry(s, entry_id=share.id)
    assert [e.name for e in directory.pricing_list("Acme Dental Lab", CLINIC)] == [
        "Crown",
        "Bridge",
    ]


@pytest.mark.parametrize(
    ("price", "is_percentage"),
    [("-5", False), ("101", True), ("abc", False)],
)
def test_invalid_prices_are_rejected(factory, price, is_percentage):
    with session_scope(factory) as s:
        lab = create_laboratory(s, clinic_id=CLINIC, name="Acme Dental Lab")
    with session_scope(factory) as s, pytest.raises(ValidationFailure) as ei:
        add_pricing_entry(
            s, laboratory_id=lab.id, name="Crown", price=price, is_percentage=is_percentage
        )
    assert ei.value.field == "price"


def test_unknown_laboratory_has_empty_price_list(factory):
    assert SqlLaboratoryDirectory(factory).pricing_list("Nobody", CLINIC) == []
    with session_scope(factory) as s, pytest.raises(ValidationFailure) as ei:
        add_pricing_entry(s, laboratory_id="missing", name="Crown", price=1)
    assert ei.value.field == "laboratory_id"


def test_soft_deleted_laboratory_is_hidden_and_name_reusable(factory):
    with session_scope(factory) as s:
        lab = create_laboratory(s, clinic_id=CLINIC, name="Acme Dental Lab")
        add_pricing_entry(s, laboratory_id=lab.id, name="Crown", price=500)
        create_laboratory(s, clinic_id=CLINIC, name="Bright Smiles")

    with session_scope(factory) as s:
        soft_delete_laboratory(s, laboratory_id=lab.id)

    directory = SqlLaboratoryDirectory(factory)
    assert directory.pricing_list("Acme Dental Lab", CLINIC) == []
    assert [lab.name for lab in directory.laboratories(CLINIC)] == ["Bright Smiles"]
    with session_scope(factory) as s:
        everything = list_laboratories(s, clinic_id=CLINIC, include_deleted=True)
        assert {lab.name: lab.is_deleted for lab in everything} == {
            "Acme Dental Lab": True,
            "Bright Smiles": False,
        }
        create_laboratory(s, clinic_id=CLINIC, name="Acme Dental Lab")


def test_rename_laboratory_checks_uniqueness(factory):
    with session_scope(factory) as s:
        acme = create_laboratory(s, clinic_id=CLINIC, name="Acme Dental Lab")
        create_laboratory(s, clinic_id=CLINIC, name="Bright Smiles")

    with session_scope(factory) as s, pytest.raises(ValidationFailure) as ei:
        rename_laboratory(s, laboratory_id=acme.id, name="bright smiles")
    assert ei.value.field == "name"

    with session_scope(factory) as s:
        # Changing only the case of its own name is allowed.
        assert rename_laboratory(s, laboratory_id=acme.id, name="ACME dental lab").name == (
            "ACME dental lab"
        )
        renamed = rename_laboratory(s, laboratory_id=acme.id, name=" Acme  Labs ")
    assert renamed.name == "Acme Labs"
    assert [lab.name for lab in SqlLaboratoryDirectory(factory).laboratories(CLINIC)] == [
        "Acme Labs",
        "Bright Smiles",
    ]
