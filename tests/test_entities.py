import sqlite3

import pytest

from vacancyfeed.core.db import InsertError, VacancyRow
from vacancyfeed.core.dedup import Deduplicator, content_hash
from vacancyfeed.core.entities import EntityResolver, company_observation, merge_first


@pytest.fixture
def resolver(db):
    return EntityResolver(db, source="Test Banen", run_id="run-1")


def test_name_variants_resolve_to_one_company(db, resolver):
    first = resolver.resolve_company("Acme Logistics B.V.", {"city": "Utrecht"})
    second = resolver.resolve_company("  ACME   logistics BV ", {})

    assert first.created is True
    assert second.created is False
    assert second.id == first.id
    assert db.count_companies() == 1
    company = db.find_company("acme logistics bv")
    assert company["name"] == "Acme Logistics B.V."
    assert company["status"] == "Prospect"
    assert company["qualification_status"] == "pending"
    assert company["source"] == "Test Banen"


def test_non_ascii_names_keep_their_own_key(db, resolver):
    esperanto = resolver.resolve_company("Ŝ ĈĜ", {})
    again = resolver.resolve_company("ŝ ĉĝ", {})
    cafe = resolver.resolve_company("Café Nöll", {})
    caf = resolver.resolve_company("Caf Nll", {})

    assert esperanto.created is True
    assert again.id == esperanto.id
    assert cafe.id != caf.id
    assert db.count_companies() == 3
    assert db.find_company("ŝ ĉĝ")["name"] == "Ŝ ĈĜ"


def test_existing_values_are_never_overwritten(db, resolver):
    resolver.resolve_company("Acme", {"website": "https://acme.nl"})

    result = resolver.resolve_company(
        "acme", {"website": "https://other.nl", "phone": "030-1234567", "city": ""}
    )

    assert result.updated is True
    assert result.patched_fields == ("phone",)
    company = db.find_company("acme")
    assert company["website"] == "https://acme.nl"
    assert company["phone"] == "030-1234567"
    assert company["city"] is None
    assert company["updated_at"] is not None


def test_nothing_new_means_no_update(resolver):
    resolver.resolve_company("Acme", {"website": "https://acme.nl"})
    result = resolver.resolve_company("Acme", {"website": "https://acme.nl"})
    assert result.updated is False
    assert result.patched_fields == ()


def test_empty_name_is_rejected(resolver):
    with pytest.raises(ValueError):
        resolver.resolve_company("  ...  ", {})


def test_insert_race_refetches_existing_company(db, resolver, monkeypatch):
    winner = resolver.resolve_company("Acme", {})
    real_find = db.find_company
    lookups = []

    def stale_find(key):
        lookups.append(key)
        # the first lookup misses, as if another writer had not committed yet
        return None if len(lookups) == 1 else real_find(key)

    monkeypatch.setattr(db, "find_company", stale_find)

    result = resolver.resolve_company("ACME", {"email": "Info@Acme.nl"})

    assert result.id == winner.id
    assert result.created is False
    assert result.updated is True
    assert lookups == ["acme", "acme"]
    assert real_find("acme")["email"] == "info@acme.nl"
    assert db.count_companies() == 1


def test_insert_company_raises_integrity_error_on_duplicate_key(db):
    db.insert_company("Acme", "acme", {})
    with pytest.raises(sqlite3.IntegrityError):
        db.insert_company("ACME", "acme", {})


def test_contact_needs_name_or_email(resolver):
    company = resolver.resolve_company("Acme", {})
    assert resolver.resolve_contact(company.id, {"phone": "06-12345678"}) is None
    assert resolver.resolve_contact(company.id, {"name": " ", "email": None}) is None


def test_contact_with_only_email(db, resolver):
    company = resolver.resolve_company("Acme", {})
    result = resolver.resolve_contact(company.id, {"email": "HR@Acme.nl"})

    assert result.created is True
    contact = db.fetch_contacts(company.id)[0]
    assert contact["email"] == "hr@acme.nl"
    assert contact["first_name"] is None
    assert contact["last_name"] is None
    assert contact["qualification_status"] == "pending"


def test_contact_email_match_is_found_without_update(db, resolver):
    company = resolver.resolve_company("Acme", {})
    first = resolver.resolve_contact(company.id, {"name": "Jan de Vries", "email": "jan@acme.nl"})
    again = resolver.resolve_contact(
        company.id, {"name": "J. de Vries", "email": "JAN@acme.nl", "phone": "06-1"}
    )

    assert again.created is False
    assert again.id == first.id
    contacts = db.fetch_contacts()
    assert len(contacts) == 1
    assert contacts[0]["name"] == "Jan de Vries"
    assert contacts[0]["phone"] is None


def test_contact_name_split(db, resolver):
    company = resolver.resolve_company("Acme", {})
    resolver.resolve_contact(company.id, {"name": "Petra"})
    resolver.resolve_contact(company.id, {"name": "Jan van der Berg", "title": "Recruiter"})

    first, second = db.fetch_contacts(company.id)
    assert (first["first_name"], first["last_name"]) == ("Petra", None)
    assert (second["first_name"], second["last_name"]) == ("Jan", "van der Berg")
    assert second["title"] == "Recruiter"


def test_observation_helpers():
    assert company_observation(website="", city="Utrecht", unknown="x", phone=None) == {
        "city": "Utrecht"
    }
    assert merge_first(
        {"website": "https://detail.nl", "city": None},
        {"city": "Utrecht"},
        {"website": "https://ai.nl", "phone": "030"},
    ) == {"website": "https://detail.nl", "city": "Utrecht", "phone": "030"}


# ---------------------------------------------------------------------------
# Deduplication and persistence
# ---------------------------------------------------------------------------
def test_content_hash_is_normalized():
    a = content_hash("Warehouse  Associate", "Acme", "Utrecht", "https://x.nl/1")
    b = content_hash("warehouse associate", " ACME", "utrecht ", "https://X.nl/1")
    assert a == b
    assert len(a) == 40
    assert a != content_hash("Warehouse Associate", "Acme", "Utrecht", "https://x.nl/2")


def test_deduplicator_uses_external_id_and_source(db):
    source_a = db.get_or_create_source("A", "https://a.nl")
    source_b = db.get_or_create_source("B", "https://b.nl")
    fingerprint = content_hash("Planner", "Acme", "Utrecht", "https://a.nl/1")
    db.insert_vacancy(
        VacancyRow(external_id="1", source_id=source_a, title="Planner", content_hash=fingerprint)
    )

    dedup = Deduplicator(db, source_a)
    assert dedup.exists("1") is True
    assert dedup.exists("2") is False
    assert dedup.exists("1", source_b) is False
    assert dedup.exists("") is False
    assert dedup.seen_hash(fingerprint) is True
    assert dedup.seen_hash("0" * 40) is False


def test_duplicate_vacancy_insert_raises(db):
    source_id = db.get_or_create_source("A", "https://a.nl")
    row = VacancyRow(external_id="1", source_id=source_id, title="Planner")
    db.insert_vacancy(row)

    with pytest.raises(InsertError):
        db.insert_vacancy(row)
    assert db.count_vacancies(source_id) == 1
