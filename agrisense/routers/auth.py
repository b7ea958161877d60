from datetime import timedelta
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlmodel import Session, select

from agrisense import models, schemas, security
from agrisense.database import get_db
from agrisense.sms import local_mobile_number

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Auth"])


@router.post("/register", response_model=schemas.UserRead, status_code=status.HTTP_201_CREATED)
def register_user(user_create: schemas.UserCreate, db: Session = Depends(get_db)):
    mobile_number = local_mobile_number(user_create.mobile_number)
    if mobile_number is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Mobile number must be a valid Bangladeshi number (01XXXXXXXXX)."
        )

    existing_user = db.exec(select(models.User).where(
        models.User.mobile_number == mobile_number)).first()
    if existing_user:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this mobile number already exists."
        )

    hashed_password = security.get_password_hash(user_create.password)
    db_user = models.User.model_validate(
        user_create, update={"hashed_password": hashed_password, "mobile_number": mobile_number})

    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    logger.info("Registered farmer %s", db_user.id)

    return db_user


@router.post("/login", response_model=schemas.Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    mobile_number = local_mobile_number(form_data.username)
    user = db.exec(select(models.User).where(
        models.User.mobile_number == mobile_number)).first() if mobile_number else None

    if not user or not security.verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect mobile number or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token_expires = timedelta(
        minutes=security.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = security.create_access_token(
        data={"sub": user.mobile_number}, expires_delta=access_token_expires
    )

    return {"access_token": access_token, "token_type": "bearer"}
