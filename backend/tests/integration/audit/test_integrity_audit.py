"""Integration tests for the integrity auditor.

The auditor only reads. Each test builds a known set of inconsistencies and
checks the counts and samples that come back.
"""

import database
from ingest.integrity import audit_integrity, card_extraction_report, parse_status


def build_mixed_account(account_id, make_rule, make_email, make_purchase):
    """10 healthy emails, 3 orphans, 1 duplicate and 1 parse error."""
    rule = make_rule()
    for _ in range(10):
        email_id = make_email(account_id, parse_state="parsed_ok", rule_id=rule["id"])
        make_purchase(account_id, raw_email_id=email_id)
    orphans = [
        make_email(account_id, parse_state="parsed_ok", rule_id=rule["id"]) for _ in range(3)
    ]
    duplicated = make_email(account_id, parse_state="parsed_ok", rule_id=rule["id"])
    make_purchase(account_id, raw_email_id=duplicated)
    make_purchase(account_id, raw_email_id=duplicated)
    failed = make_email(account_id, sender="news@shop.com", parse_state="parsed_error")
    return {"rule": rule, "orphans": orphans, "duplicated": duplicated, "failed": failed}


def test_audit_reports_each_inconsistency(account_id, make_rule, make_email, make_purchase):
    built = build_mixed_account(account_id, make_rule, make_email, make_purchase)

    report = audit_integrity(account_id)

    assert report["counts"] == {
        "orphaned": 3,
        "duplicated": 1,
        "parse_errors": 1,
        "purchases_without_email": 0,
        "inactive_rules_referenced": 0,
    }
    assert not report["healthy"]
    assert [e["id"] for e in report["orphaned_emails"]] == built["orphans"]
    assert report["duplicated_emails"] == [
        {
            "id": built["duplicated"],
            "subject": "Your $42.50 transaction with Blue Bottle",
            "purchase_count": 2,
        }
    ]
    [error] = report["emails_with_parse_errors"]
    assert error["id"] == built["failed"]
    assert error["parse_error"] == "No matching parsing rule found"


def test_sample_limit_bounds_samples_not_counts(
    account_id, make_rule, make_email, make_purchase
):
    build_mixed_account(account_id, make_rule, make_email, make_purchase)

    report = audit_integrity(account_id, sample_limit=2)

    assert report["counts"]["orphaned"] == 3
    assert len(report["orphaned_emails"]) == 2


def test_clean_account_is_healthy(account_id, make_rule, make_email, make_purchase):
    rule = make_rule()
    email_id = make_email(account_id, parse_state="parsed_ok", rule_id=rule["id"])
    make_purchase(account_id, raw_email_id=email_id)
    make_email(account_id)

    report = audit_integrity(account_id)

    assert report["healthy"]
    assert set(report["counts"].values()) == {0}


def test_parse_errors_alone_do_not_make_account_unhealthy(account_id, make_email):
    make_email(account_id, parse_state="parsed_error")

    report = audit_integrity(account_id)

    assert report["counts"]["parse_errors"] == 1
    assert report["healthy"]


def test_email_sourced_purchase_without_email_is_flagged(account_id, make_purchase):
    broken = make_purchase(account_id, amount="7.25")
    make_purchase(account_id, source="manual")

    report = audit_integrity(account_id)

    assert report["counts"]["purchases_without_email"] == 1
    assert report["purchases_without_email"][0]["id"] == broken
    assert report["purchases_without_email"][0]["amount"] == "7.25"
    assert not report["healthy"]


def test_inactive_rule_still_referenced(account_id, make_rule, make_email, make_purchase):
    retired = make_rule(name="Old Chase format", is_active=False)
    for _ in range(2):
        email_id = make_email(account_id, parse_state="parsed_ok", rule_id=retired["id"])
        make_purchase(account_id, raw_email_id=email_id)

    report = audit_integrity(account_id)

    assert report["inactive_rules_referenced"] == [
        {"rule_id": retired["id"], "rule_name": "Old Chase format", "email_count": 2}
    ]
    assert report["healthy"]


def test_audit_is_scoped_to_account(make_account, make_rule, make_email):
    rule = make_rule()
    other = make_account()
    make_email(other, parse_state="parsed_ok", rule_id=rule["id"])
    mine = make_account()

    assert audit_integrity(mine)["counts"]["orphaned"] == 0
    assert audit_integrity(other)["counts"]["orphaned"] == 1


def test_audit_writes_nothing(account_id, make_rule, make_email, make_purchase):
    build_mixed_account(account_id, make_rule, make_email, make_purchase)
    before = (
        database.count_emails_by_state(account_id),
        database.count_purchases(account_id),
        database.get_orphaned_email_ids(account_id),
    )

    audit_integrity(account_id)
    audit_integrity(account_id)

    after = (
        database.count_emails_by_state(account_id),
        database.count_purchases(account_id),
        database.get_orphaned_email_ids(account_id),
    )
    assert after == before


# ============================================================================
# PARSE STATUS / CARD EXTRACTION
# ============================================================================


def test_parse_status_counts(account_id, make_rule, make_email, make_purchase):
    build_mixed_account(account_id, make_rule, make_email, make_purchase)
    make_email(account_id)
    database.create_card("1234", account_id=account_id)

    status = parse_status(account_id)

    assert status["emails"] == {
        "unparsed": 1,
        "parsed_ok": 14,
        "parsed_error": 1,
        "total": 16,
    }
    assert status["orphaned"] == 3
    assert status["rules"] == {"total": 1, "active": 1, "inactive": 0}
    assert status["purchases"] == 12
    assert status["cards"] == {"total": 1, "active": 1}


def test_card_extraction_report(account_id, make_rule, make_email):
    make_rule()
    employee_id = database.create_employee("Dana", account_id=account_id)
    card_id = database.create_card("1234", account_id=account_id, employee_id=employee_id)
    make_email(account_id)
    make_email(account_id, body="A charge of $3.00 at Kiosk. Card ending in 9999.")
    make_email(account_id, sender="news@shop.com")

    report = card_extraction_report(account_id, limit=5)

    assert report["checked"] == 3
    assert report["with_card_suffix"] == 2
    assert report["matched_cards"] == 1
    matched = [r for r in report["results"] if r["card_found"]]
    assert matched[0]["card_id"] == card_id
    assert matched[0]["employee_id"] == employee_id
    unmatched_rule = [r for r in report["results"] if not r["parsed"]]
    assert unmatched_rule[0]["card_last_four"] is None
    # Parsing for the report stores nothing
    assert database.count_purchases(account_id) == 0
    assert database.count_emails_by_state(account_id)["unparsed"] == 3
