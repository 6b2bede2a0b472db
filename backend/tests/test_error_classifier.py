"""
Error classifier: exception type, provider code, HTTP status and message keywords
map to transient / rate_limit / validation / permanent.
"""
import asyncio
import pytest


class _HTTPishError(Exception):
    def __init__(self, message, status=None, code=None):
        super().__init__(message)
        self.status = status
        self.code = code


class _ResponseError(Exception):
    def __init__(self, status_code):
        super().__init__("request failed")
        self.response = type("Response", (), {"status_code": status_code})()


@pytest.fixture
def classifier():
    from services.error_classifier import ErrorClassifier

    return ErrorClassifier()


class TestStatusCodes:
    @pytest.mark.parametrize("status, kind, retryable", [
        (500, "transient", True),
        (502, "transient", True),
        (503, "transient", True),
        (429, "rate_limit", True),
        (400, "validation", False),
        (404, "validation", False),
        (422, "validation", False),
        (401, "permanent", False),
        (403, "permanent", False),
    ])
    def test_status_mapping(self, classifier, status, kind, retryable):
        from services.providers import ProviderError

        result = classifier.classify(ProviderError("upstream said no", status_code=status))

        assert result.kind.value == kind
        assert result.retryable is retryable
        assert result.status_code == status

    def test_status_wins_over_message_keywords(self, classifier):
        from services.providers import ProviderError

        forbidden = classifier.classify(ProviderError("Invalid sender signature", status_code=403))
        unavailable = classifier.classify(ProviderError("invalid upstream reply", status_code=503))

        assert forbidden.kind.value == "permanent"
        assert unavailable.kind.value == "transient"
        assert unavailable.retryable is True

    def test_status_read_from_response(self, classifier):
        result = classifier.classify(_ResponseError(503))

        assert result.kind.value == "transient"
        assert result.status_code == 503


class TestProviderCodes:
    def test_twilio_invalid_number_is_validation(self, classifier):
        result = classifier.classify(_HTTPishError("The 'To' number is not valid", status=400, code=21211))

        assert result.kind.value == "validation"
        assert result.provider_code == 21211

    def test_code_wins_over_status(self, classifier):
        # Unreachable handset comes back as 400 but is worth retrying
        result = classifier.classify(_HTTPishError("Unreachable destination handset", status=400, code=30003))

        assert result.kind.value == "transient"
        assert result.retryable is True

    def test_unsubscribed_recipient_is_permanent(self, classifier):
        result = classifier.classify(_HTTPishError("Attempt to send to unsubscribed recipient", status=400, code=21610))

        assert result.kind.value == "permanent"


class TestExceptionTypes:
    @pytest.mark.parametrize("exc", [
        asyncio.TimeoutError(),
        TimeoutError("read timed out"),
        ConnectionResetError("reset by peer"),
        ConnectionRefusedError(),
    ])
    def test_network_exceptions_are_transient(self, classifier, exc):
        result = classifier.classify(exc)

        assert result.kind.value == "transient"
        assert result.retryable is True
        assert result.message

    def test_registered_exception_type(self, classifier):
        from models import ErrorType

        class QuotaError(Exception):
            pass

        classifier.register_exception(QuotaError, ErrorType.RATE_LIMIT)

        assert classifier.classify(QuotaError("daily quota")).kind == ErrorType.RATE_LIMIT


class TestMessages:
    @pytest.mark.parametrize("message, kind", [
        ("ECONNRESET", "transient"),
        ("socket hang up", "transient"),
        ("Network is unreachable", "transient"),
        ("Rate limit exceeded", "rate_limit"),
        ("Too Many Requests", "rate_limit"),
        ("Invalid email address", "validation"),
        ("Field 'To' is required", "validation"),
        ("Account suspended", "permanent"),
    ])
    def test_keyword_fallback(self, classifier, message, kind):
        assert classifier.classify(Exception(message)).kind.value == kind

    def test_empty_message_uses_exception_name(self, classifier):
        class Weird(Exception):
            pass

        result = classifier.classify(Weird())

        assert result.kind.value == "permanent"
        assert result.message == "Weird"


class TestRegistration:
    def test_register_status_overrides_default(self, classifier):
        from models import ErrorType
        from services.providers import ProviderError

        classifier.register_status(409, ErrorType.TRANSIENT)

        assert classifier.classify(ProviderError("conflict", status_code=409)).retryable is True

    def test_register_provider_code(self, classifier):
        from models import ErrorType
        from services.providers import ProviderError

        classifier.register_provider_code("InactiveRecipientsError", ErrorType.PERMANENT)
        result = classifier.classify(ProviderError("x", status_code=500, provider_code="InactiveRecipientsError"))

        assert result.kind == ErrorType.PERMANENT

    def test_registration_is_per_instance(self, classifier):
        from models import ErrorType
        from services.error_classifier import ErrorClassifier
        from services.providers import ProviderError

        classifier.register_status(409, ErrorType.TRANSIENT)

        assert ErrorClassifier().classify(ProviderError("conflict", status_code=409)).retryable is False
