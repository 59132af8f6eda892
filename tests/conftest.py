import pytest

from builders import cert_pem, make_certificate, make_rsa_key, pkcs8_pem


@pytest.fixture(scope="session")
def rsa_key():
    return make_rsa_key()


@pytest.fixture(scope="session")
def other_rsa_key():
    return make_rsa_key()


@pytest.fixture(scope="session")
def signing_cert(rsa_key):
    return make_certificate(rsa_key)


@pytest.fixture
def identity_pem(tmp_path, rsa_key, signing_cert):
    """A single PEM file holding both the certificate and its PKCS#8 key"""
    path = tmp_path / "identity.pem"
    path.write_bytes(cert_pem(signing_cert) + pkcs8_pem(rsa_key))
    return path
