from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, constr
from typing import Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from examprep.core.auth import create_token
from examprep.core.config import settings
from examprep.core.database import get_db
from examprep.models.orm import User

router = APIRouter()


class MockLogin(BaseModel):
    uid: constr(min_length=1)
    email: Optional[str] = None


@router.post("/mock-login")
def mock_login(payload: MockLogin, db: Session = Depends(get_db)):
    if not settings.MOCK_LOGIN_ENABLED:
        raise HTTPException(404, "Not Found")
    user = db.scalar(select(User).where(User.uid == payload.uid))
    if user is None:
        user = User(uid=payload.uid, email=payload.email)
        db.add(user); db.commit()
    return {"access_token": create_token(payload.uid), "token_type": "bearer", "user_id": user.id}
