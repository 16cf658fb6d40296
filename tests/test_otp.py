import pytest

from salon_tokens.errors import ValidationError, VerificationRequired
from salon_tokens.otp import OpenGate, OtpIssuer


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _issuer(clock=None):
    sent = {}
    issuer = OtpIssuer(ttl_seconds=300, sender=lambda m, c: sent.__setitem__(m, c), clock=clock or FakeClock())
    return issuer, sent


def test_code_round_trip():
    issuer, sent = _issuer()
    challenge = issuer.send_code("9876543210")
    assert challenge.code == sent["9876543210"]
    assert len(challenge.code) == 6 and challenge.code.isdigit()

    verification = issuer.verify("9876543210", challenge.code)
    issuer.claim("9876543210", verification.handle)
    issuer.consume(verification.handle)
    with pytest.raises(VerificationRequired):
        issuer.claim("9876543210", verification.handle)


def test_wrong_code_and_reuse_are_rejected():
    issuer, sent = _issuer()
    issuer.send_code("9876543210")
    with pytest.raises(VerificationRequired):
        issuer.verify("9876543210", "000000" if sent["9876543210"] != "000000" else "111111")

    issuer.verify("9876543210", sent["9876543210"])
    with pytest.raises(VerificationRequired):
        issuer.verify("9876543210", sent["9876543210"])


def test_codes_and_handles_expire():
    clock = FakeClock()
    issuer, sent = _issuer(clock)
    issuer.send_code("9876543210")
    clock.now += 301
    with pytest.raises(VerificationRequired):
        issuer.verify("9876543210", sent["9876543210"])

    issuer.send_code("9876543210")
    handle = issuer.verify("9876543210", sent["9876543210"]).handle
    clock.now += 301
    with pytest.raises(VerificationRequired):
        issuer.claim("9876543210", handle)


def test_send_code_validates_mobile():
    issuer, _ = _issuer()
    with pytest.raises(ValidationError):
        issuer.send_code("12345")


def test_missing_handle_is_required():
    issuer, _ = _issuer()
    with pytest.raises(VerificationRequired):
        issuer.claim("9876543210", None)


def test_open_gate_lets_everyone_through():
    gate = OpenGate()
    assert not gate.enabled
    gate.claim("9876543210", None)
    gate.release(None)
    gate.consume(None)


def test_claim_reserves_the_handle_until_released():
    issuer, sent = _issuer()
    issuer.send_code("9876543210")
    handle = issuer.verify("9876543210", sent["9876543210"]).handle

    with pytest.raises(VerificationRequired):
        issuer.claim("9876543211", handle)

    issuer.claim("9876543210", handle)
    with pytest.raises(VerificationRequired):
        issuer.claim("9876543210", handle)

    issuer.release(handle)
    issuer.claim("9876543210", handle)


def test_expired_claim_is_not_handed_back():
    clock = FakeClock()
    issuer, sent = _issuer(clock)
    issuer.send_code("9876543210")
    handle = issuer.verify("9876543210", sent["9876543210"]).handle

    issuer.claim("9876543210", handle)
    clock.now += 301
    issuer.release(handle)
    with pytest.raises(VerificationRequired):
        issuer.claim("9876543210", handle)
