from __future__ import annotations

import base64
import hashlib
import hmac
import string

import pytest

from broker_adapters.contract import DedupIndex, WebhookIngestor, WebhookStatus, WebhookVerifier, default_config

SECRET = "It's a Secret to Everybody"
BODY = b"Hello, World!"
# Signature published for the payload/secret pair above by a well-known webhook provider.
KNOWN_SIGNATURE = "sha256=757107ea0eb2509fc211221cce984b8a37570b6d7586c22c46f4379c8b043e17"


def test_sign_matches_known_vector():
    assert WebhookVerifier().sign(BODY, SECRET) == KNOWN_SIGNATURE


def test_verify_accepts_valid_signature():
    assert WebhookVerifier().verify(KNOWN_SIGNATURE, BODY, SECRET)


def test_verify_accepts_bare_hex_and_base64():
    digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest()
    verifier = WebhookVerifier()

    assert verifier.verify(digest.hex(), BODY, SECRET)
    assert verifier.verify(base64.b64encode(digest).decode(), BODY, SECRET)


def test_single_byte_mutation_fails():
    verifier = WebhookVerifier()

    assert not verifier.verify(KNOWN_SIGNATURE, b"Hello, World?", SECRET)
    assert not verifier.verify(KNOWN_SIGNATURE[:-1] + "f", BODY, SECRET)
    assert not verifier.verify(KNOWN_SIGNATURE, BODY, SECRET + "x")


def test_case_flip_and_non_canonical_encodings_fail():
    verifier = WebhookVerifier()
    index = KNOWN_SIGNATURE.index("e", len("sha256="))
    case_flipped = KNOWN_SIGNATURE[:index] + "E" + KNOWN_SIGNATURE[index + 1 :]

    digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest()
    canonical = base64.b64encode(digest).decode()
    alphabet = string.ascii_uppercase + string.ascii_lowercase + string.digits + "+/"
    padding_bits_set = canonical[:-2] + alphabet[alphabet.index(canonical[-2]) ^ 1] + canonical[-1]
    assert base64.b64decode(padding_bits_set) == digest

    assert not verifier.verify(case_flipped, BODY, SECRET)
    assert not verifier.verify(padding_bits_set, BODY, SECRET)
    assert not verifier.verify("SHA256=" + KNOWN_SIGNATURE[len("sha256=") :], BODY, SECRET)
    assert verifier.verify(canonical, BODY, SECRET)


def test_algorithm_prefix_must_match():
    sha1 = WebhookVerifier("sha1").sign(BODY, SECRET)

    assert WebhookVerifier("sha1").verify(sha1, BODY, SECRET)
    assert not WebhookVerifier().verify(sha1, BODY, SECRET)


@pytest.mark.parametrize(
    ("header", "body", "secret"),
    [
        (None, BODY, SECRET),
        ("", BODY, SECRET),
        (KNOWN_SIGNATURE, None, SECRET),
        (KNOWN_SIGNATURE, BODY, ""),
        (KNOWN_SIGNATURE, BODY, None),
        ("sha256=not-hex-at-all", BODY, SECRET),
        ("sha256=abcd", BODY, SECRET),
        (12345, BODY, SECRET),
    ],
)
def test_malformed_input_is_rejected_without_raising(header, body, secret):
    assert WebhookVerifier().verify(header, body, secret) is False


def test_unknown_algorithm_never_verifies():
    assert WebhookVerifier("not-a-digest").verify(KNOWN_SIGNATURE, BODY, SECRET) is False


def test_timestamped_signature_within_tolerance():
    verifier = WebhookVerifier()
    signature = verifier.sign(b"1700000000." + BODY, SECRET)

    assert verifier.verify_timestamped(signature, "1700000000", BODY, SECRET, tolerance_seconds=300, now=1_700_000_100)
    assert not verifier.verify_timestamped(signature, "1700000000", BODY, SECRET, tolerance_seconds=60, now=1_700_000_100)
    assert not verifier.verify_timestamped(signature, "yesterday", BODY, SECRET, now=1_700_000_100)


@pytest.fixture()
def ingestor(make_sink, store, clock):
    def _build(sink=None, **overrides):
        return WebhookIngestor(
            "hooks",
            SECRET,
            sink if sink is not None else make_sink(),
            config=default_config(**overrides),
            dedup=DedupIndex(store, "hooks"),
            max_body_bytes=64,
            clock=clock,
        )

    return _build


def test_ingest_accepts_and_hands_off(ingestor, make_sink):
    sink = make_sink()
    result = ingestor(sink)({"x-hub-signature-256": KNOWN_SIGNATURE}, BODY, delivery_id="d-1")

    assert result.status == WebhookStatus.ACCEPTED
    assert result.http_status == 200
    assert sink.ids == ["d-1"]
    assert sink.records[0].payload == BODY


def test_ingest_suppresses_replays(ingestor, make_sink):
    sink = make_sink()
    target = ingestor(sink)
    headers = {"X-Hub-Signature-256": KNOWN_SIGNATURE}

    target.ingest(headers, BODY)
    replay = target.ingest(headers, BODY)

    assert replay.status == WebhookStatus.DUPLICATE
    assert replay.http_status == 200
    assert len(sink.records) == 1


def test_ingest_rejects_oversized_body(ingestor):
    result = ingestor().ingest({"X-Hub-Signature-256": KNOWN_SIGNATURE}, b"x" * 65)

    assert result.status == WebhookStatus.REJECTED
    assert result.http_status == 413


@pytest.mark.parametrize(
    ("headers", "reason"),
    [({}, "missing signature"), ({"X-Hub-Signature-256": "sha256=" + "0" * 64}, "invalid signature")],
)
def test_ingest_rejects_unsigned_requests(ingestor, headers, reason):
    result = ingestor().ingest(headers, BODY)

    assert result.reason == reason
    assert result.http_status == 401


def test_ingest_with_timestamp_header(ingestor, clock):
    signature = WebhookVerifier().sign(f"{int(clock())}.".encode() + BODY, SECRET)
    target = ingestor(webhookTimestampHeader="X-Timestamp")

    fresh = target.ingest({"X-Hub-Signature-256": signature, "X-Timestamp": str(int(clock()))}, BODY)
    clock.advance(600)
    stale = target.ingest({"X-Hub-Signature-256": signature, "X-Timestamp": str(int(clock() - 600))}, BODY, delivery_id="other")

    assert fresh.status == WebhookStatus.ACCEPTED
    assert stale.status == WebhookStatus.REJECTED


def test_rejected_hand_off_is_not_remembered(ingestor, make_sink):
    sink = make_sink(reject=("d-1",))
    target = ingestor(sink)
    headers = {"X-Hub-Signature-256": KNOWN_SIGNATURE}

    first = target.ingest(headers, BODY, delivery_id="d-1")
    sink.reject_ids.clear()
    second = target.ingest(headers, BODY, delivery_id="d-1")

    assert first.http_status == 503
    assert second.status == WebhookStatus.ACCEPTED
