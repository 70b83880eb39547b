"""Unit tests for auth.py"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
import auth
from auth import AuthError


USER = {"id": 12, "email": "sam@example.com", "name": "Sam", "role": "student",
        "teacher_id": 3, "teacher_code": None, "teacher_name": "Ms. T"}


class FakeRequest:
    def __init__(self, headers):
        self.headers = headers


def test_token_round_trip():
    claims = auth.decode_token(auth.create_token(USER))
    assert claims["id"] == 12
    assert claims["role"] == "student"
    assert claims["teacherId"] == 3

def test_tampered_token_rejected():
    token = auth.create_token(USER)
    with pytest.raises(AuthError):
        auth.decode_token(token[:-2] + ("A" if token[-2] != "A" else "B") + token[-1])

def test_token_signed_with_other_secret_rejected():
    token = jwt.encode({"sub": "12"}, "not-the-secret", algorithm="HS256")
    with pytest.raises(AuthError):
        auth.decode_token(token)

def test_expired_token_rejected():
    token = jwt.encode(
        {"sub": "12", "exp": datetime.now(timezone.utc) - timedelta(seconds=5)},
        auth.JWT_SECRET, algorithm="HS256",
    )
    with pytest.raises(AuthError, match="expired"):
        auth.decode_token(token)

def test_token_without_subject_rejected():
    token = jwt.encode({"role": "teacher"}, auth.JWT_SECRET, algorithm="HS256")
    with pytest.raises(AuthError):
        auth.decode_token(token)

def test_bearer_header_required():
    with pytest.raises(AuthError):
        auth.current_user(FakeRequest({}))
    with pytest.raises(AuthError):
        auth.current_user(FakeRequest({"authorization": "Basic abc"}))

def test_current_user_from_header():
    request = FakeRequest({"authorization": "Bearer " + auth.create_token(USER)})
    assert auth.current_user(request)["email"] == "sam@example.com"

def test_public_user_shape():
    assert auth.public_user(USER) == {
        "id": 12, "email": "sam@example.com", "name": "Sam", "role": "student",
        "teacherCode": None, "teacherId": 3, "teacherName": "Ms. T",
    }
