from fastapi import APIRouter, Depends

from pairchat.database.connection import mongo_db_dependency
from pairchat.exceptions import NotFound
from pairchat.realtime.hub import RealtimeHub
from pairchat.repositories.user_repository import UserRepository
from pairchat.routers.auth import get_user_service
from pairchat.schemas.user import StatusUpdate
from pairchat.services.presence_service import PresenceService
from pairchat.services.user_service import UserService
from pairchat.utils.dependencies import get_current_user, get_hub


router = APIRouter(prefix="/users", tags=["users"])


def get_presence_service(db=Depends(mongo_db_dependency), hub: RealtimeHub = Depends(get_hub)) -> PresenceService:
    return PresenceService(UserRepository(db), hub)


@router.get("/sidebar")
async def sidebar(current_user: dict = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    return [entry.dump() for entry in await service.get_sidebar(current_user["_id"])]


@router.patch("/status")
async def update_status(payload: StatusUpdate, current_user: dict = Depends(get_current_user), presence: PresenceService = Depends(get_presence_service)):
    user = await presence.set_status(current_user["_id"], payload.is_online)
    if user is None:
        raise NotFound("User not found")
    return user.dump()


@router.get("/{user_id}")
async def profile(user_id: str, current_user: dict = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    return (await service.get_profile(user_id)).dump()
