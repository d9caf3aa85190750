import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..deps import Principal, get_db, get_settings, require_admin
from ..errors import Conflict, InvalidArgument, NotFound, Unauthorized
from ..models import User
from ..schemas import LoginRequest, LoginResponse, RegisterIn, UserOut, UserUpdate
from ..security import create_access_token, hash_password, verify_password

router = APIRouter(prefix="/api", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/login", response_model=LoginResponse)
async def login(
    payload: LoginRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    email = payload.email.strip()
    if not email or not payload.password:
        raise InvalidArgument("Email and password are required.")

    res = await db.execute(select(User).where(User.email == email))
    user = res.scalar_one_or_none()
    if not user or not user.is_active:
        raise Unauthorized("Invalid credentials or user is inactive.")
    if not verify_password(payload.password, user.password_hash):
        raise Unauthorized("Invalid credentials.")

    expiry = settings.remember_me_expiry if payload.remember_me else settings.token_expiry
    token = create_access_token(
        {"user_id": user.user_id, "role": user.user_role, "username": user.username},
        settings.jwt_secret,
        expires_delta=expiry,
        algorithm=settings.jwt_algorithm,
    )
    logger.info("User %s logged in (remember_me=%s)", user.user_id, payload.remember_me)
    return {
        "message": "Login successful.",
        "token": token,
        "username": user.username,
        "userRole": user.user_role,
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    data: RegisterIn,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    username = data.name.strip()
    if not username:
        raise InvalidArgument("All fields (Name, Email, Password, Role) are required.")

    user = User(
        username=username,
        email=str(data.email),
        password_hash=hash_password(data.password),
        user_role=data.role,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("Email or username already in use. Registration failed.") from exc

    logger.info("New user registered by admin %s: id %s, email %s", admin.user_id, user.user_id, user.email)
    return {"message": "User registered successfully.", "userId": user.user_id}


@router.get("/users", response_model=list[UserOut])
async def list_users(db: AsyncSession = Depends(get_db), _: Principal = Depends(require_admin)):
    res = await db.execute(select(User).order_by(User.user_id.asc()))
    return res.scalars().all()


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


@router.put("/users/{user_id}", response_model=UserOut)
async def update_user(
    user_id: int,
    data: UserUpdate,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    user = await _get_user(db, user_id)
    fields = data.model_dump(exclude_unset=True)

    new_name = fields.get("name")
    new_email = fields.get("email")
    checks = []
    if new_name is not None:
        checks.append(User.username == new_name.strip())
    if new_email is not None:
        checks.append(User.email == str(new_email))
    if checks:
        clash = await db.execute(select(User.user_id).where(User.user_id != user_id, or_(*checks)))
        if clash.first() is not None:
            raise Conflict("Email or username already in use.")

    if new_name is not None:
        user.username = new_name.strip()
    if new_email is not None:
        user.email = str(new_email)
    if fields.get("role") is not None:
        user.user_role = fields["role"]
    if fields.get("is_active") is not None:
        user.is_active = fields["is_active"]
    if fields.get("password"):
        user.password_hash = hash_password(fields["password"])

    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("Email or username already in use.") from exc

    logger.info("User %s updated by admin %s: %s", user_id, admin.user_id, sorted(fields))
    return user


@router.delete("/users/{user_id}")
async def deactivate_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    if admin.user_id == user_id:
        raise InvalidArgument("You cannot deactivate your own account.")
    user = await _get_user(db, user_id)
    user.is_active = False
    await db.commit()
    logger.info("User %s deactivated by admin %s", user_id, admin.user_id)
    return {"message": "User deactivated successfully.", "userId": user_id}
