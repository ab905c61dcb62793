import uuid
from datetime import datetime, UTC
from typing import Annotated

import jwt
from fastapi import Query, HTTPException, status

from readalong.config import TOKEN_SECRET_KEY, TOKEN_ALGORITHM


def verify_token(token: str) -> bool:
    try:
        decoded_data = jwt.decode(token, TOKEN_SECRET_KEY, algorithms=[TOKEN_ALGORITHM])
    except jwt.InvalidTokenError:
        return False

    exp = decoded_data.get('exp')
    if exp is not None and datetime.fromtimestamp(exp, tz=UTC) <= datetime.now(tz=UTC):
        return False

    return True


def decode_token(token: str) -> dict:
    return jwt.decode(token, TOKEN_SECRET_KEY, algorithms=[TOKEN_ALGORITHM])

def get_token_user_id(token: str | None) -> uuid.UUID | None:
    if token is None or not verify_token(token):
        return None

    token_data = decode_token(token)
    try:
        return uuid.UUID(token_data['sub'])
    except (KeyError, TypeError, ValueError):
        return None

def get_token_user_id_http(token: Annotated[str | None, Query()] = None) -> uuid.UUID:
    res = get_token_user_id(token)
    if res is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Invalid token',
            headers={'WWW-Authenticate': 'Bearer'},
        )
    return res
