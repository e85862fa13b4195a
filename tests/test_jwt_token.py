import jwt
import pytest

from dbstarter.local.jwt_token import JWTCreationError, create_jwt_authorization_header


def test_empty_secret_needs_no_header():
    assert create_jwt_authorization_header("") == ""


def test_header_carries_signed_token():
    header = create_jwt_authorization_header("s3cret")
    assert header.startswith("bearer ")
    claims = jwt.decode(header[len("bearer "):], "s3cret", algorithms=["HS256"])
    assert claims == {"iss": "arangodb", "server_id": "foo"}


def test_signing_errors_are_wrapped(monkeypatch):
    def broken_encode(*args, **kwargs):
        raise jwt.PyJWTError("no key")

    monkeypatch.setattr(jwt, "encode", broken_encode)
    with pytest.raises(JWTCreationError) as excinfo:
        create_jwt_authorization_header("s3cret")
    assert isinstance(excinfo.value.__cause__, jwt.PyJWTError)
