from datetime import date

import pytest

from apps.audit.models import AuditLog
from apps.dialog import collection, consent
from apps.patients.models import ConsentStatus

pytestmark = pytest.mark.django_db


@pytest.mark.parametrize(
    "reply,expected",
    [
        ("yes", consent.CONSENT_GRANTED),
        ("ok go ahead", consent.CONSENT_GRANTED),
        ("I consent", consent.CONSENT_GRANTED),
        ("no thanks", consent.CONSENT_DENIED),
        ("no, I don't agree", consent.CONSENT_DENIED),
        ("I'm not sure", consent.CONSENT_DENIED),
        ("not okay", consent.CONSENT_DENIED),
        ("I don’t consent", consent.CONSENT_DENIED),
        ("Yes, I agree", consent.CONSENT_GRANTED),
        ("I know you need it", consent.CONSENT_UNCLEAR),
        ("please delete it", consent.CONSENT_DENIED),
        ("what do you mean?", consent.CONSENT_UNCLEAR),
        ("", consent.CONSENT_UNCLEAR),
    ],
)
def test_parse_consent_reply(reply, expected):
    assert consent.parse_consent_reply(reply) == expected


def test_name_prefix_is_stripped_and_kept_out_of_audit():
    outcome = collection.collect_field(10, "name", "My name is Priya Shah", correlation_id="c1")

    assert outcome.ok is True
    assert collection.get_collected(10) == {"name": "Priya Shah"}
    audit = AuditLog.objects.get(action="patient_data_collected")
    assert audit.meta == {"field": "name"}


def test_invalid_phone_reasks():
    outcome = collection.collect_field(11, "phone", "my phone is 12", correlation_id="c2")

    assert outcome.ok is False
    assert outcome.reply == "Please provide a valid phone number."
    assert collection.get_collected(11) == {}
    assert AuditLog.objects.filter(action="patient_data_validation_failed").count() == 1


def test_empty_value_asks_again():
    outcome = collection.collect_field(12, "name", "   ", correlation_id="c3")

    assert outcome.reply == "Please provide your full name."


def test_phone_is_normalised():
    collection.collect_field(13, "phone", "0091 98765-43210", correlation_id="c4")

    assert collection.get_collected(13)["phone"] == "+919876543210"


def test_patient_untouched_until_consent(patient):
    collection.collect_field(20, "name", "Priya Shah", correlation_id="c5")
    collection.collect_field(20, "phone", "+919876543210", correlation_id="c5")

    patient.refresh_from_db()
    assert patient.name == ""
    assert patient.phone == ""

    outcome = consent.grant_consent(patient, 20, correlation_id="c5")

    patient.refresh_from_db()
    assert outcome.granted is True
    assert patient.name == "Priya Shah"
    assert patient.phone == "+919876543210"
    assert patient.consent_status == ConsentStatus.GRANTED
    assert patient.consent_granted_at is not None
    assert collection.get_collected(20) == {}


def test_denied_consent_discards_values(patient):
    collection.collect_field(21, "name", "Priya Shah", correlation_id="c6")

    outcome = consent.deny_consent(patient, 21, correlation_id="c6")

    patient.refresh_from_db()
    assert outcome.reply == consent.DENIED_MESSAGE
    assert patient.consent_status == ConsentStatus.PENDING
    assert patient.name == ""
    assert collection.get_collected(21) == {}


def test_grant_without_collected_values_does_not_persist(patient):
    outcome = consent.grant_consent(patient, 22, correlation_id="c7")

    patient.refresh_from_db()
    assert outcome.granted is False
    assert patient.consent_status == ConsentStatus.PENDING


def test_revocation_anonymises(consented_patient):
    reply = consent.revoke_consent(consented_patient, 23, correlation_id="c8")

    consented_patient.refresh_from_db()
    assert reply == consent.REVOKED_MESSAGE
    assert consented_patient.name == "[Anonymized]"
    assert consented_patient.phone == f"revoked-{consented_patient.id}"
    assert consented_patient.consent_status == ConsentStatus.REVOKED
    assert AuditLog.objects.filter(action="consent_revoked").count() == 1
    assert consent.revoke_consent(consented_patient, 23, correlation_id="c8") == consent.ALREADY_REVOKED_MESSAGE


def test_optional_fields_follow_required_ones():
    assert collection.next_field({}) == "name"
    assert collection.next_field({"name": True, "phone": True}) == "date_of_birth"
    assert collection.next_field({"name": True, "phone": True, "date_of_birth": True}) == "gender"
    assert collection.next_field({field: True for field in collection.COLLECTION_ORDER}) is None


@pytest.mark.parametrize(
    "value,expected",
    [
        ("1990-05-14", "1990-05-14"),
        ("5/14/1990", "1990-05-14"),
        ("1990-02-30", None),
        ("14.05.1990", None),
        ("1850-01-01", None),
        ("2999-01-01", None),
    ],
)
def test_birth_date_validation(value, expected):
    assert collection.validate_field("date_of_birth", value) == expected


def test_optional_field_can_be_skipped():
    outcome = collection.collect_field(30, "gender", "Skip", correlation_id="c9")

    assert outcome.ok is True
    assert collection.get_collected(30) == {}
    assert AuditLog.objects.get(action="patient_data_skipped").meta == {"field": "gender"}


def test_required_field_cannot_be_skipped():
    outcome = collection.collect_field(31, "phone", "skip", correlation_id="c10")

    assert outcome.ok is False
    assert outcome.reply == "Please provide a valid phone number."


def test_consent_persists_optional_fields(patient):
    collection.set_collected(
        32,
        name="Priya Shah",
        phone="+919876543210",
        date_of_birth="1990-05-14",
        gender="Female",
        reason_for_visit="Follow-up",
    )

    consent.grant_consent(patient, 32, correlation_id="c11")

    patient.refresh_from_db()
    assert patient.date_of_birth == date(1990, 5, 14)
    assert patient.gender == "Female"
    assert patient.reason_for_visit == "Follow-up"


def test_revocation_clears_optional_fields(consented_patient):
    consented_patient.date_of_birth = date(1990, 5, 14)
    consented_patient.reason_for_visit = "Follow-up"
    consented_patient.save()

    consent.revoke_consent(consented_patient, 33, correlation_id="c12")

    consented_patient.refresh_from_db()
    assert consented_patient.date_of_birth is None
    assert consented_patient.reason_for_visit == ""
