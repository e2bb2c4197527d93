from fastapi import APIRouter, Depends, Response, status

from pairchat.config import get_settings
from pairchat.database.connection import mongo_db_dependency
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.schemas.user import ProfileUpdate, UserCreate, UserLogin, UserPublic
from pairchat.services.image_store import ImageStore, get_image_store
from pairchat.services.user_service import UserService
from pairchat.utils.dependencies import get_current_user
from pairchat.utils.security import SESSION_COOKIE, create_access_token


router = APIRouter(prefix="/auth", tags=["auth"])


def get_user_service(db=Depends(mongo_db_dependency), image_store: ImageStore = Depends(get_image_store)) -> UserService:
    return UserService(UserRepository(db), ConversationRepository(db), image_store)


def _set_session_cookie(response: Response, user_id: str) -> None:
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        create_access_token(user_id),
        max_age=settings.JWT_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        samesite="none" if settings.is_production else "strict",
        secure=settings.is_production,
    )


@router.post("/signup", status_code=status.HTTP_201_CREATED)
async def signup(payload: UserCreate, response: Response, service: UserService = Depends(get_user_service)):
    user = await service.register_user(payload.email, payload.password, payload.full_name)
    _set_session_cookie(response, user.id)
    return user.dump()


@router.post("/login")
async def login(payload: UserLogin, response: Response, service: UserService = Depends(get_user_service)):
    user = await service.authenticate_user(payload.email, payload.password)
    _set_session_cookie(response, user.id)
    return user.dump()


@router.post("/logout")
async def logout(response: Response, current_user: dict = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    await service.logout(current_user["_id"])
    settings = get_settings()
    response.delete_cookie(
        SESSION_COOKIE,
        httponly=True,
        samesite="none" if settings.is_production else "strict",
        secure=settings.is_production,
    )
    return {"message": "Logged out successfully"}


@router.put("/update-profile")
async def update_profile(payload: ProfileUpdate, current_user: dict = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    user = await service.update_profile_pic(current_user["_id"], payload.profile_pic)
    return user.dump()


@router.get("/check")
async def check_auth(current_user: dict = Depends(get_current_user)):
    return UserPublic.from_document(current_user).dump()
