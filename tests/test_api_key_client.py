import base64
import json

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from autoprov.src.apple.api_key_client import BASE_URL, ENTERPRISE_BASE_URL, APIKeyProvisioningClient
from autoprov.src.apple.client import app_id_name, create_retrying_session, profile_name
from autoprov.src.apple.credentials import APIKeyCredential
from autoprov.src.core.errors import RemoteAPIError
from autoprov.src.core.models import CertificateClass, Device, DistributionType, Platform
from conftest import SERIAL, make_profile, make_profile_content, make_x509, profile_plist


class StubResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.content = b"" if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode()

    def json(self):
        return json.loads(self.content)


class StubSession:
    """Replays queued responses per (method, path)"""

    def __init__(self, routes):
        self.routes = {key: list(responses) for key, responses in routes.items()}
        self.requests = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        path = url.replace(BASE_URL, "").replace(ENTERPRISE_BASE_URL, "")
        self.requests.append(
            {"method": method, "path": path, "params": params, "json": json, "headers": headers}
        )
        return self.routes[(method, path)].pop(0)


@pytest.fixture
def signing_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def credential(signing_key):
    pem = signing_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return APIKeyCredential(key_id="KEY123", issuer_id="issuer-uuid", private_key=pem)


def client_for(credential, routes):
    session = StubSession(routes)
    return APIKeyProvisioningClient(credential, session=session), session


def test_bearer_token_is_es256_signed(credential, signing_key):
    client, session = client_for(credential, {("GET", "v1/devices"): [StubResponse(payload={"data": []})]})
    client.list_devices(Platform.IOS)

    token = session.requests[0]["headers"]["Authorization"].split(" ", 1)[1]
    assert jwt.get_unverified_header(token)["kid"] == "KEY123"
    claims = jwt.decode(
        token, signing_key.public_key(), algorithms=["ES256"], audience="appstoreconnect-v1"
    )
    assert claims["iss"] == "issuer-uuid"
    assert claims["exp"] - claims["iat"] == 18 * 60


def test_token_is_reused_until_close_to_expiry(credential):
    client, _ = client_for(credential, {})
    assert client._bearer_token() == client._bearer_token()


def test_enterprise_key_uses_enterprise_host(credential):
    credential.enterprise = True
    client, _ = client_for(credential, {})
    assert client.base_url == ENTERPRISE_BASE_URL
    assert client.audience == "apple-developer-enterprise-v1"


def device_resource(i):
    return {"id": f"D{i}", "attributes": {"udid": f"udid-{i}", "name": f"Phone {i}"}}


def test_pagination_follows_next_links(credential):
    client, session = client_for(
        credential,
        {
            ("GET", "v1/devices"): [
                StubResponse(
                    payload={"data": [device_resource(1)], "links": {"next": BASE_URL + "v1/devices?cursor=2"}}
                )
            ],
            ("GET", "v1/devices?cursor=2"): [StubResponse(payload={"data": [device_resource(2)], "links": {}})],
        },
    )
    devices = client.list_devices(Platform.IOS)

    assert [d.udid for d in devices] == ["udid-1", "udid-2"]
    assert session.requests[0]["params"]["filter[platform]"] == "IOS"
    assert session.requests[0]["params"]["limit"] == 200


def test_unexpected_status_raises_with_body(credential):
    client, _ = client_for(
        credential,
        {("GET", "v1/devices"): [StubResponse(403, {"errors": [{"code": "FORBIDDEN"}]})]},
    )
    with pytest.raises(RemoteAPIError) as exc_info:
        client.list_devices(Platform.IOS)
    assert exc_info.value.status_code == 403
    assert "FORBIDDEN" in str(exc_info.value)


def test_list_certificates_parses_content(credential):
    _, x509_certificate = make_x509()
    der = x509_certificate.public_bytes(serialization.Encoding.DER)
    client, session = client_for(
        credential,
        {
            ("GET", "v1/certificates"): [
                StubResponse(
                    payload={
                        "data": [
                            {"id": "C1", "attributes": {"certificateContent": base64.b64encode(der).decode()}},
                            {"id": "C2", "attributes": {}},
                        ]
                    }
                )
            ]
        },
    )
    [certificate] = client.list_certificates(CertificateClass.DISTRIBUTION)

    assert certificate.serial == SERIAL
    assert certificate.id == "C1"
    assert certificate.certificate_class == CertificateClass.DISTRIBUTION
    assert not certificate.has_private_key
    assert session.requests[0]["params"]["filter[certificateType]"] == "DISTRIBUTION,IOS_DISTRIBUTION"


def test_create_profile_registers_app_id_and_capabilities(credential):
    _, x509_certificate = make_x509()
    content = make_profile_content(profile_plist(x509_certificate))
    profile_resource = {
        "id": "PR1",
        "type": "profiles",
        "attributes": {"profileContent": base64.b64encode(content).decode()},
    }
    client, session = client_for(
        credential,
        {
            ("GET", "v1/bundleIds"): [StubResponse(payload={"data": []})],
            ("POST", "v1/bundleIds"): [
                StubResponse(201, {"data": {"id": "B1", "attributes": {"identifier": "com.acme.app"}}})
            ],
            ("GET", "v1/bundleIds/B1/bundleIdCapabilities"): [StubResponse(payload={"data": []})],
            ("POST", "v1/bundleIdCapabilities"): [StubResponse(201, {"data": {"id": "CAP1"}})],
            ("POST", "v1/profiles"): [StubResponse(201, {"data": profile_resource})],
        },
    )
    name = profile_name(Platform.IOS, DistributionType.DEVELOPMENT, "com.acme.app")
    profile = client.create_profile(
        name,
        "com.acme.app",
        {"aps-environment": "development"},
        Platform.IOS,
        DistributionType.DEVELOPMENT,
        ["C1"],
        [Device(udid="udid-1", id="D1"), Device(udid="udid-2")],
    )

    assert profile.id == "PR1"
    assert profile.certificate_ids == ["C1"]
    requests = {(r["method"], r["path"]): r for r in session.requests}
    app_id = requests[("POST", "v1/bundleIds")]["json"]["data"]["attributes"]
    assert app_id == {"identifier": "com.acme.app", "name": "autoprov com acme app", "platform": "IOS"}
    capability = requests[("POST", "v1/bundleIdCapabilities")]["json"]["data"]
    assert capability["attributes"]["capabilityType"] == "PUSH_NOTIFICATIONS"
    payload = requests[("POST", "v1/profiles")]["json"]["data"]
    assert payload["attributes"] == {"name": name, "profileType": "IOS_APP_DEVELOPMENT"}
    assert payload["relationships"]["devices"]["data"] == [{"type": "devices", "id": "D1"}]
    assert payload["relationships"]["certificates"]["data"] == [{"type": "certificates", "id": "C1"}]


def test_delete_profile_requires_remote_id(credential):
    client, session = client_for(credential, {("DELETE", "v1/profiles/PR1"): [StubResponse(204)]})
    with pytest.raises(RemoteAPIError):
        client.delete_profile(make_profile("P1", "com.acme.app"))

    client.delete_profile(make_profile("P1", "com.acme.app", remote_id="PR1"))
    assert session.requests[-1]["method"] == "DELETE"


def test_unsupported_profile_type(credential):
    client, _ = client_for(credential, {})
    with pytest.raises(RemoteAPIError):
        client.list_profiles(Platform.MACOS, DistributionType.AD_HOC)


def test_names():
    assert (
        profile_name(Platform.IOS, DistributionType.AD_HOC, "com.acme.app.*")
        == "Wildcard autoprov iOS ad-hoc - (com.acme.app)"
    )
    assert app_id_name("com.acme.app-beta_2.*") == "Wildcard autoprov com acme app beta 2"


def test_retrying_session_only_retries_gets():
    retry = create_retrying_session().get_adapter(BASE_URL).max_retries

    assert retry.total == 2
    assert set(retry.allowed_methods) == {"GET"}
    assert set(retry.status_forcelist) == {429, 500, 502, 503, 504}
    assert not retry.raise_on_status
