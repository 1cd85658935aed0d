import json
import threading
import time

import httpx
import pytest

from conftest import FakeSource, jwt
from crp.credentials import (
    MetadataServerSource,
    TokenManager,
    UserCredentialSource,
    truncate_token,
    validate_token,
)
from crp.errors import CredentialFetchError, InvalidCredentialFormatError, MetadataServerUnavailable

AUD = "https://orders-svc.a.run.app"


def test_cached_token_served_until_expiry(clock):
    source = FakeSource()
    tm = TokenManager(metadata=source, clock=clock)

    first = tm.get_token(AUD)
    assert tm._cache[AUD].expires_at == clock.now + 55 * 60

    clock.advance(54 * 60 + 59)
    assert tm.get_token(AUD) == first
    assert source.calls == [AUD]

    clock.advance(1)
    second = tm.get_token(AUD)
    assert second != first
    assert source.calls == [AUD, AUD]


def test_audiences_are_cached_independently(clock):
    source = FakeSource()
    tm = TokenManager(metadata=source, clock=clock)
    a = tm.get_token("https://a.run.app")
    b = tm.get_token("https://b.run.app")
    assert a != b
    assert tm.cache_stats() == (2, 0)


def test_invalid_token_is_rejected_and_not_cached(clock):
    source = FakeSource(results={AUD: "ya29.not-a-jwt"})
    tm = TokenManager(metadata=source, clock=clock)

    with pytest.raises(InvalidCredentialFormatError):
        tm.get_token(AUD)
    assert tm.cache_stats() == (0, 0)

    source.results[AUD] = jwt("ok")
    assert tm.get_token(AUD) == jwt("ok")
    assert len(source.calls) == 2


def test_fetch_failure_is_not_cached(clock):
    source = FakeSource(results={AUD: CredentialFetchError("metadata server returned 500: boom")})
    tm = TokenManager(metadata=source, clock=clock)
    for _ in range(2):
        with pytest.raises(CredentialFetchError):
            tm.get_token(AUD)
    assert source.calls == [AUD, AUD]


def test_dev_mode_falls_back_when_metadata_unavailable(clock):
    metadata = FakeSource(unavailable=True)
    fallback = FakeSource(results={AUD: jwt("user")})
    tm = TokenManager(metadata=metadata, fallback=fallback, dev_mode=True, clock=clock)

    assert tm.get_token(AUD) == jwt("user")
    assert tm.has_metadata_server() is False

    # Absence is remembered: the next audience goes straight to the fallback.
    tm.get_token("https://other.run.app")
    assert metadata.calls == [AUD]
    assert fallback.calls == [AUD, "https://other.run.app"]


def test_metadata_unavailable_without_dev_mode_raises(clock):
    tm = TokenManager(metadata=FakeSource(unavailable=True), clock=clock)
    with pytest.raises(MetadataServerUnavailable) as exc:
        tm.get_token(AUD)
    assert "CRP_DEV_MODE" in str(exc.value)

    with pytest.raises(CredentialFetchError):
        tm.get_token(AUD)


def test_metadata_error_does_not_fall_back(clock):
    metadata = FakeSource(results={AUD: CredentialFetchError("metadata server returned 403: denied")})
    fallback = FakeSource()
    tm = TokenManager(metadata=metadata, fallback=fallback, dev_mode=True, clock=clock)
    with pytest.raises(CredentialFetchError):
        tm.get_token(AUD)
    assert fallback.calls == []


def test_dev_mode_without_fallback_source(clock):
    tm = TokenManager(metadata=FakeSource(unavailable=True), dev_mode=True, clock=clock)
    with pytest.raises(CredentialFetchError):
        tm.get_token(AUD)


def test_clear_cache_and_stats(clock):
    tm = TokenManager(metadata=FakeSource(), clock=clock)
    tm.get_token("https://a.run.app")
    clock.advance(30 * 60)
    tm.get_token("https://b.run.app")
    clock.advance(30 * 60)
    assert tm.cache_stats() == (2, 1)

    tm.clear_cache()
    assert tm.cache_stats() == (0, 0)


def test_concurrent_callers_share_one_fetch(clock):
    class SlowSource(FakeSource):
        def identity_token(self, audience):
            time.sleep(0.05)
            return super().identity_token(audience)

    source = SlowSource()
    tm = TokenManager(metadata=source, clock=clock)
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(tm.get_token(AUD))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert source.calls == [AUD]
    assert len(set(results)) == 1


def test_access_token_cached_with_margin(clock):
    source = FakeSource()
    tm = TokenManager(metadata=source, clock=clock)
    assert tm.access_token() == "ya29.access"
    clock.advance(3599 - 300 - 1)
    assert tm.access_token() == "ya29.access"
    assert source.calls == ["access"]
    clock.advance(1)
    tm.access_token()
    assert source.calls == ["access", "access"]


def test_validate_and_truncate():
    assert validate_token("  " + jwt("a") + "\n") == jwt("a")
    with pytest.raises(InvalidCredentialFormatError):
        validate_token("")
    assert truncate_token("short") == "short"
    long = "eyJ" + "a" * 60 + "Z"
    assert truncate_token(long) == long[:20] + "..." + long[-20:]


def test_metadata_source_identity_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["flavor"] = request.headers.get("Metadata-Flavor")
        seen["path"] = request.url.path
        seen["audience"] = request.url.params.get("audience")
        return httpx.Response(200, text=jwt("md") + "\n")

    source = MetadataServerSource(transport=httpx.MockTransport(handler))
    assert source.identity_token(AUD) == jwt("md")
    assert seen["flavor"] == "Google"
    assert seen["path"].endswith("/service-accounts/default/identity")
    assert seen["audience"] == AUD


def test_metadata_source_connect_error_means_unavailable():
    def handler(request):
        raise httpx.ConnectError("Name or service not known", request=request)

    source = MetadataServerSource(transport=httpx.MockTransport(handler))
    with pytest.raises(MetadataServerUnavailable):
        source.identity_token(AUD)


def test_metadata_source_http_error_status():
    source = MetadataServerSource(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
    with pytest.raises(CredentialFetchError) as exc:
        source.identity_token(AUD)
    assert not isinstance(exc.value, MetadataServerUnavailable)
    assert "500" in str(exc.value)


def test_metadata_source_access_token():
    source = MetadataServerSource(
        transport=httpx.MockTransport(
            lambda r: httpx.Response(200, json={"access_token": "ya29.md", "expires_in": 3599, "token_type": "Bearer"})
        )
    )
    assert source.access_token() == ("ya29.md", 3599)


def _adc_file(tmp_path, **overrides):
    creds = {
        "type": "authorized_user",
        "client_id": "cid.apps.googleusercontent.com",
        "client_secret": "secret",
        "refresh_token": "1//refresh",
    }
    creds.update(overrides)
    path = tmp_path / "adc.json"
    path.write_text(json.dumps(creds), encoding="utf-8")
    return str(path)


def test_user_credentials_exchange_refresh_token(tmp_path):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={"id_token": jwt("adc"), "access_token": "ya29.adc", "expires_in": 3599})

    source = UserCredentialSource(_adc_file(tmp_path), transport=httpx.MockTransport(handler))
    assert source.identity_token(AUD) == jwt("adc")
    assert seen["url"] == "https://oauth2.googleapis.com/token"
    assert "grant_type=refresh_token" in seen["body"]
    assert "refresh_token=1%2F%2Frefresh" in seen["body"]

    assert source.access_token() == ("ya29.adc", 3599)


def test_user_credentials_empty_id_token(tmp_path):
    source = UserCredentialSource(
        _adc_file(tmp_path),
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"access_token": "ya29"})),
    )
    with pytest.raises(CredentialFetchError, match="ADC returned empty token"):
        source.identity_token(AUD)


def test_user_credentials_wrong_type(tmp_path):
    source = UserCredentialSource(_adc_file(tmp_path, type="service_account"))
    with pytest.raises(CredentialFetchError, match="authorized_user"):
        source.identity_token(AUD)


def test_user_credentials_missing_file(tmp_path):
    source = UserCredentialSource(str(tmp_path / "missing.json"))
    with pytest.raises(CredentialFetchError, match="gcloud auth application-default login"):
        source.identity_token(AUD)


def test_refused_connection_is_not_latched(clock):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.params.get("audience"))
        if len(attempts) == 1:
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)
        return httpx.Response(200, text=jwt("recovered"))

    tm = TokenManager(metadata=MetadataServerSource(transport=httpx.MockTransport(handler)), clock=clock)

    with pytest.raises(CredentialFetchError) as exc:
        tm.get_token("https://a.run.app")
    assert not isinstance(exc.value, MetadataServerUnavailable)

    assert tm.get_token("https://b.run.app") == jwt("recovered")
    assert tm.has_metadata_server() is True


def test_unavailable_after_success_is_not_latched(clock):
    source = FakeSource()
    tm = TokenManager(metadata=source, clock=clock)
    tm.get_token("https://a.run.app")

    source.unavailable = True
    with pytest.raises(CredentialFetchError) as exc:
        tm.get_token("https://b.run.app")
    assert not isinstance(exc.value, MetadataServerUnavailable)

    source.unavailable = False
    assert tm.get_token("https://b.run.app").startswith("eyJ")
    assert tm.has_metadata_server() is True


@pytest.mark.parametrize(
    "message",
    [
        "[Errno -2] Name or service not known",
        "[Errno -3] Temporary failure in name resolution",
        "dial tcp: lookup metadata.google.internal: no such host",
    ],
)
def test_name_resolution_failure_means_unavailable(message):
    def handler(request):
        raise httpx.ConnectError(message, request=request)

    with pytest.raises(MetadataServerUnavailable):
        MetadataServerSource(transport=httpx.MockTransport(handler)).identity_token(AUD)


def test_metadata_access_token_bad_json():
    source = MetadataServerSource(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")))
    with pytest.raises(CredentialFetchError, match="invalid JSON"):
        source.access_token()

    source = MetadataServerSource(
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"access_token": "ya29", "expires_in": "soon"}))
    )
    with pytest.raises(CredentialFetchError, match="expires_in"):
        source.access_token()


def test_concurrent_access_token_callers_share_one_fetch(clock):
    class SlowSource(FakeSource):
        def access_token(self):
            time.sleep(0.05)
            return super().access_token()

    source = SlowSource()
    tm = TokenManager(metadata=source, clock=clock)
    barrier = threading.Barrier(6)
    results = []

    def worker():
        barrier.wait()
        results.append(tm.access_token())

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert source.calls == ["access"]
    assert results == ["ya29.access"] * 6
