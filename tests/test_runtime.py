from salon_tokens.config import Settings
from salon_tokens.otp import OpenGate, OtpIssuer
from salon_tokens.runtime import open_runtime


def test_embedding_code_subscribes_through_events():
    with open_runtime(Settings(database_url="memory")) as runtime:
        assert isinstance(runtime.otp, OpenGate)
        seen = []
        runtime.events.subscribe(lambda e: seen.append(e.token.label), queue="female")

        runtime.engine.submit_token("female", "Facial", "Asha", "9876543210")
        runtime.engine.submit_token("male", "Haircut", "Ravi", "9876543211")
        runtime.engine.serve_next("female")

        assert seen == ["F1", "F1"]


def test_otp_required_installs_an_issuer():
    with open_runtime(Settings(database_url="memory", otp_required=True)) as runtime:
        assert isinstance(runtime.otp, OtpIssuer)
        assert runtime.engine.otp is runtime.otp
