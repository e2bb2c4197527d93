from fastapi import APIRouter, Depends, Query, status

from pairchat.database.connection import mongo_db_dependency
from pairchat.realtime.hub import RealtimeHub
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.schemas.message import MessageSend
from pairchat.services.chat_service import ChatService
from pairchat.services.image_store import ImageStore, get_image_store
from pairchat.utils.dependencies import get_current_user, get_hub


router = APIRouter(prefix="/messages", tags=["chat"])


def get_chat_service(
    db=Depends(mongo_db_dependency),
    hub: RealtimeHub = Depends(get_hub),
    image_store: ImageStore = Depends(get_image_store),
) -> ChatService:
    return ChatService(ConversationRepository(db), UserRepository(db), hub, image_store)


# must be registered before "/{peer_id}"
@router.get("/search")
async def search_messages(query: str = "", current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.search_messages(current_user["_id"], query)


@router.get("/{peer_id}")
async def get_messages(
    peer_id: str,
    page: int = Query(1),
    limit: int = Query(50),
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.get_messages(current_user["_id"], peer_id, page=page, limit=limit)


@router.post("/send/{peer_id}", status_code=status.HTTP_201_CREATED)
async def send_message(peer_id: str, body: MessageSend, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.send_message(
        current_user["_id"],
        peer_id,
        text=body.text,
        image=body.image,
        client_message_id=body.client_message_id,
    )


@router.patch("/{message_id}/read")
async def mark_as_read(message_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.mark_as_read(current_user["_id"], message_id)
    return {"message": "Message marked as read", "messageId": message_id}


@router.patch("/{peer_id}/read-all")
async def mark_all_as_read(peer_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    count = await service.mark_all_read(current_user["_id"], peer_id)
    return {"message": "All messages marked as read", "count": count}
