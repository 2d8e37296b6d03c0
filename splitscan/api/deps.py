from typing import Generator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from splitscan.core.db import SessionLocal
from splitscan.core.security import InvalidTokenError, decode_access_token
from splitscan.models.user import User
from splitscan.services.file_storage import FileStorage
from splitscan.services.notifier import StatusNotifier

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def user_from_token(token: str, db: Session) -> User | None:
    try:
        username = decode_access_token(token)
    except InvalidTokenError:
        return None
    return db.query(User).filter(User.username == username).first()


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    user = user_from_token(token, db)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


# shared services live on app.state, created in the lifespan

def get_storage(request: Request) -> FileStorage:
    return request.app.state.storage


def get_notifier(request: Request) -> StatusNotifier:
    return request.app.state.notifier

