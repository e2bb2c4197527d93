from typing import List

from pairchat.exceptions import AuthenticationError, InvalidArgument, NotFound
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.schemas.message import MessageOut
from pairchat.schemas.user import SidebarUser, UserPublic
from pairchat.services.image_store import PROFILE_FOLDER, ImageStore
from pairchat.utils.ids import parse_object_id
from pairchat.utils.security import hash_password, verify_password


class UserService:
    """Account, profile and contact-list operations."""

    def __init__(self, user_repository: UserRepository, conversation_repository: ConversationRepository, image_store: ImageStore):
        self.user_repository = user_repository
        self.conversation_repository = conversation_repository
        self.image_store = image_store

    async def register_user(self, email: str, password: str, full_name: str) -> UserPublic:
        """
        Register a new account
        - reject an email that is already taken
        - hash the password
        - create the user document
        """
        existing = await self.user_repository.get_user_by_email(email)
        if existing:
            raise InvalidArgument("Email already exists", fields=["email"])

        hashed_password = hash_password(password)

        new_id = await self.user_repository.create_user(
            email=email,
            hashed_password=hashed_password,
            full_name=full_name,
        )
        return UserPublic(id=new_id, email=email, full_name=full_name)

    async def authenticate_user(self, email: str, password: str) -> UserPublic:
        """
        Log a user in
        - look the user up by email
        - verify the password
        - flag the user online
        """
        user = await self.user_repository.get_user_by_email(email)
        if not user or not verify_password(password, user.get("hashed_password", "")):
            raise AuthenticationError("Invalid credentials")

        updated = await self.user_repository.set_online(user["_id"], True)
        return UserPublic.from_document(updated or user)

    async def logout(self, user_id: str) -> None:
        await self.user_repository.set_online(user_id, False)

    async def update_profile_pic(self, user_id: str, image: str) -> UserPublic:
        if not image.startswith("data:image/"):
            raise InvalidArgument("Invalid image format")
        url = await self.image_store.upload(image, PROFILE_FOLDER)
        user = await self.user_repository.update_profile_pic(user_id, url)
        if not user:
            raise NotFound("User not found")
        return UserPublic.from_document(user)

    async def get_profile(self, user_id: str) -> UserPublic:
        parse_object_id(user_id, "user ID")
        user = await self.user_repository.get_user_by_id(user_id)
        if not user:
            raise NotFound("User not found")
        return UserPublic.from_document(user)

    async def get_sidebar(self, user_id: str) -> List[SidebarUser]:
        """
        Every other user, online first, with this user's unread count and the
        last message of the shared conversation (if any).
        """
        users = await self.user_repository.list_others(user_id)
        by_peer = {}
        for conversation in await self.conversation_repository.list_for_user(user_id):
            peer = next((p for p in conversation["participants"] if p != user_id), None)
            if peer:
                by_peer[peer] = conversation

        sidebar = []
        for user in users:
            conversation = by_peer.get(user["_id"])
            entry = SidebarUser(**UserPublic.from_document(user).model_dump())
            if conversation:
                entry.unread_count = int(conversation.get("unread_count", {}).get(user_id, 0))
                last = conversation.get("last_message")
                if last:
                    entry.last_message = MessageOut.from_document(last, conversation["_id"])
            sidebar.append(entry)
        return sidebar
