import logging
from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database import get_db
from ..models import WaitlistEntry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/waitlist", tags=["waitlist"])


class WaitlistRequest(BaseModel):
    email: EmailStr


@router.post("")
async def join_waitlist(payload: Any = Body(None), db: Session = Depends(get_db)):
    """
    Add an email address to the waitlist.

    Returns:
        201 on signup, 400 for an invalid address, 409 if already listed
    """
    # Bad input answers 400 {message} instead of FastAPI's 422
    try:
        request = WaitlistRequest.model_validate(payload)
    except ValidationError:
        return JSONResponse(status_code=400, content={"message": "Invalid email address provided."})

    email = request.email
    duplicate = {"message": "This email is already on the waitlist."}

    if db.query(WaitlistEntry).filter(WaitlistEntry.email == email).first():
        return JSONResponse(status_code=409, content=duplicate)

    db.add(WaitlistEntry(email=email))
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent signup for the same address
        db.rollback()
        return JSONResponse(status_code=409, content=duplicate)

    logger.info(f"Waitlist signup successful: {email}")
    return JSONResponse(status_code=201, content={"message": "Successfully joined the waitlist!"})
