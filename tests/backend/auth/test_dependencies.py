import os

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.auth.dependencies import get_current_user, require_admin, require_manager  # noqa: E402
from backend.auth.jwt_handler import create_access_token, decode_access_token  # noqa: E402


def bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme='Bearer', credentials=token)


def test_create_access_token_round_trips_subject_and_role() -> None:
    payload = decode_access_token(create_access_token('member@makerspace.test', role='member'))

    assert payload['sub'] == 'member@makerspace.test'
    assert payload['role'] == 'member'
    assert payload['exp'] > payload['iat']


def test_get_current_user_resolves_token_subject(db_session, member) -> None:
    token = create_access_token(f'  {member.email.upper()} ')

    assert get_current_user(credentials=bearer(token), db=db_session).id == member.id


def test_get_current_user_rejects_bad_tokens(db_session) -> None:
    with pytest.raises(HTTPException) as garbage:
        get_current_user(credentials=bearer('not-a-token'), db=db_session)
    assert garbage.value.status_code == 401

    forged = jwt.encode({'sub': 'member1@makerspace.test'}, 'some-other-secret', algorithm='HS256')
    with pytest.raises(HTTPException) as wrong_key:
        get_current_user(credentials=bearer(forged), db=db_session)
    assert wrong_key.value.status_code == 401

    with pytest.raises(HTTPException) as unknown:
        get_current_user(credentials=bearer(create_access_token('ghost@makerspace.test')), db=db_session)
    assert unknown.value.status_code == 401


def test_get_current_user_rejects_suspended_account(db_session, make_user) -> None:
    suspended = make_user('member', status='suspended')

    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=bearer(create_access_token(suspended.email)), db=db_session)

    assert exception_info.value.status_code == 403


def test_role_dependencies(member, manager, admin) -> None:
    assert require_admin(current_user=admin) is admin
    assert require_manager(current_user=manager) is manager
    assert require_manager(current_user=admin) is admin

    with pytest.raises(HTTPException) as not_admin:
        require_admin(current_user=manager)
    assert not_admin.value.status_code == 403

    with pytest.raises(HTTPException) as not_manager:
        require_manager(current_user=member)
    assert not_manager.value.status_code == 403
