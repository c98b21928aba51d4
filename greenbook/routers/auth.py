from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from greenbook.database import get_db
from greenbook.schemas import TokenResponse, UserLogin, UserRegister, WeChatLoginRequest
from greenbook.security import create_access_token
from greenbook.services import user_service
from greenbook.wechat import WeChatClient, WeChatError, get_wechat_client

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _token_response(user) -> dict:
    return {
        "token": create_access_token(user.id),
        "token_type": "bearer",
        "user": user_service.user_to_dict(user),
    }


@router.post("/register", status_code=201, response_model=TokenResponse)
async def register(data: UserRegister, db: AsyncSession = Depends(get_db)):
    try:
        user = await user_service.register_user(db, data)
    except (user_service.UsernameTaken, IntegrityError):
        raise HTTPException(status_code=409, detail="Username already exists")
    return _token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(data: UserLogin, db: AsyncSession = Depends(get_db)):
    user = await user_service.authenticate_user(db, data)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return _token_response(user)


@router.post("/wechat-login", response_model=TokenResponse)
async def wechat_login(
    data: WeChatLoginRequest,
    db: AsyncSession = Depends(get_db),
    client: WeChatClient = Depends(get_wechat_client),
):
    try:
        user = await user_service.wechat_login(db, client, data)
    except WeChatError as exc:
        raise HTTPException(status_code=401, detail=f"WeChat login failed: {exc}")
    except user_service.PhoneRequired:
        raise HTTPException(status_code=400, detail="A phone number is required on first login")
    return _token_response(user)
