from datetime import timedelta

from jose import jwt

from examengine.auth.jwt_handler import create_access_token, verify_token
from examengine.settings import settings


def test_token_round_trip():
    token = create_access_token("u1", email="u1@example.com")

    payload = verify_token(token)

    assert payload.user_id == "u1"
    assert payload.email == "u1@example.com"
    assert payload.role == "STUDENT"


def test_expired_token_is_rejected():
    token = create_access_token("u1", expires_delta=timedelta(minutes=-1))

    assert verify_token(token) is None


def test_token_signed_with_other_key_is_rejected():
    token = jwt.encode({"sub": "u1"}, "some-other-key", algorithm=settings.jwt_algorithm)

    assert verify_token(token) is None


def test_sub_claim_is_accepted_as_identity():
    token = jwt.encode({"sub": "u9"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    assert verify_token(token).user_id == "u9"


def test_token_without_identity_is_rejected():
    token = jwt.encode({"role": "STUDENT"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    assert verify_token(token) is None
