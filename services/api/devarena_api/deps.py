from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from devarena_api.core.security import decode_token
from devarena_api.db import SessionLocal
from devarena_api.executor import BattleExecutor


@dataclass(frozen=True)
class Caller:
    user_id: str
    name: str | None = None


def get_db() -> Session:
    with SessionLocal() as session:
        yield session


def get_caller(authorization: str | None = Header(default=None)) -> Caller:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = decode_token(token)
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=401, detail="Invalid token") from e
    sub = str(payload.get("sub") or "").strip()
    if not sub:
        raise HTTPException(status_code=401, detail="Invalid token")
    name = str(payload.get("name") or "").strip() or None
    return Caller(user_id=sub, name=name)


def get_executor(request: Request) -> BattleExecutor:
    return request.app.state.executor


CurrentCaller = Depends(get_caller)
DBSession = Depends(get_db)
Executor = Depends(get_executor)
