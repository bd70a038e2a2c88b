import pytest
from helpers import make_csr, make_csr_with_undecodable_subject

from certsign.services.subject import InvalidCSR, extract_subject


def test_extracts_lower_cased_attribute_names():
    subject = extract_subject(make_csr("alice@durfee.io"))
    assert subject["emailaddress"] == "alice@durfee.io"
    assert subject["commonname"] == "alice@durfee.io"
    assert subject["organizationname"] == "Durfee Ltd"
    assert subject["countryname"] == "US"


def test_values_are_trimmed():
    subject = extract_subject(make_csr(" bob@durfee.io ", organization="  Durfee Ltd "))
    assert subject["emailaddress"] == "bob@durfee.io"
    assert subject["organizationname"] == "Durfee Ltd"


def test_missing_attributes_are_absent():
    subject = extract_subject(make_csr(None))
    assert "emailaddress" not in subject
    assert "localityname" not in subject


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "   ",
        None,
        "not a csr",
        "-----BEGIN CERTIFICATE REQUEST-----\nAAAA\n-----END CERTIFICATE REQUEST-----\n",
    ],
)
def test_malformed_input_raises(raw):
    with pytest.raises(InvalidCSR):
        extract_subject(raw)


def test_undecodable_subject_value_raises():
    with pytest.raises(InvalidCSR) as excinfo:
        extract_subject(make_csr_with_undecodable_subject())
    assert "subject" in str(excinfo.value)
