"""Tests for the v1 webhook signature scheme."""

import hashlib
import hmac
import json

import pytest

from membership_engine.billing.signature import (
    compute_signature,
    construct_event,
    parse_event,
    sign_header,
    verify_signature,
)
from membership_engine.common.exceptions import (
    MalformedEventError,
    SignatureVerificationError,
)

SECRET = "whsec_unit_secret"
NOW = 1_760_000_000
BODY = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}).encode()


class TestComputeSignature:
    def test_matches_manual_hmac(self):
        expected = hmac.new(
            SECRET.encode(), f"{NOW}.".encode() + BODY, hashlib.sha256,
        ).hexdigest()
        assert compute_signature(BODY, str(NOW), SECRET) == expected

    def test_timestamp_is_part_of_signed_payload(self):
        assert compute_signature(BODY, str(NOW), SECRET) != compute_signature(
            BODY, str(NOW + 1), SECRET
        )


class TestVerifySignature:
    def test_valid_signature(self):
        header = sign_header(BODY, SECRET, timestamp=NOW)
        assert verify_signature(BODY, header, SECRET, now=NOW) is True

    def test_wrong_secret(self):
        header = sign_header(BODY, "whsec_other", timestamp=NOW)
        assert verify_signature(BODY, header, SECRET, now=NOW) is False

    def test_tampered_body(self):
        header = sign_header(BODY, SECRET, timestamp=NOW)
        assert verify_signature(BODY + b" ", header, SECRET, now=NOW) is False

    def test_outside_tolerance(self):
        header = sign_header(BODY, SECRET, timestamp=NOW - 301)
        assert verify_signature(BODY, header, SECRET, tolerance=300, now=NOW) is False

    def test_inside_tolerance(self):
        header = sign_header(BODY, SECRET, timestamp=NOW - 299)
        assert verify_signature(BODY, header, SECRET, tolerance=300, now=NOW) is True

    def test_zero_tolerance_skips_age_check(self):
        header = sign_header(BODY, SECRET, timestamp=NOW - 86400)
        assert verify_signature(BODY, header, SECRET, tolerance=0, now=NOW) is True

    def test_any_of_several_v1_entries(self):
        good = compute_signature(BODY, str(NOW), SECRET)
        header = f"t={NOW},v1={'0' * 64},v1={good}"
        assert verify_signature(BODY, header, SECRET, now=NOW) is True

    @pytest.mark.parametrize("header", [
        "",
        "garbage",
        f"t={NOW}",
        "v1=abc",
        "t=notanumber,v1=abc",
    ])
    def test_malformed_headers(self, header):
        assert verify_signature(BODY, header, SECRET, now=NOW) is False

    def test_empty_secret_never_verifies(self):
        header = sign_header(BODY, "", timestamp=NOW)
        assert verify_signature(BODY, header, "", now=NOW) is False


class TestParseEvent:
    def test_parses_envelope(self):
        event = parse_event(BODY)
        assert event.id == "evt_1"
        assert event.type == "invoice.paid"
        assert event.object == {}

    def test_accepts_dict(self):
        event = parse_event({"id": "evt_2", "type": "x.y", "data": {"object": {"id": "o"}}})
        assert event.object == {"id": "o"}

    def test_invalid_json(self):
        with pytest.raises(MalformedEventError):
            parse_event(b"{not json")

    def test_non_object(self):
        with pytest.raises(MalformedEventError):
            parse_event(b"[1, 2]")

    def test_missing_type(self):
        with pytest.raises(MalformedEventError):
            parse_event({"id": "evt_3"})


class TestConstructEvent:
    def test_returns_typed_event(self):
        header = sign_header(BODY, SECRET, timestamp=NOW)
        event = construct_event(BODY, header, SECRET, now=NOW)
        assert event.id == "evt_1"

    def test_bad_signature_raises(self):
        with pytest.raises(SignatureVerificationError) as exc:
            construct_event(BODY, f"t={NOW},v1=deadbeef", SECRET, now=NOW)
        assert exc.value.code == "INVALID_SIGNATURE"

    def test_verified_but_malformed(self):
        body = b'{"hello": "world"}'
        header = sign_header(body, SECRET, timestamp=NOW)
        with pytest.raises(MalformedEventError):
            construct_event(body, header, SECRET, now=NOW)
