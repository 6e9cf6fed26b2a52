import asyncio
import logging
from typing import Any, Dict, List, NamedTuple

from servicehub.errors import ConflictError, NotFoundError, ReadError, ValidationError
from servicehub.gateway.base import FieldFilter
from servicehub.models import ChatState, Conversation, Message, Settlement
from servicehub.store.base import Container, replace_by_id

logger = logging.getLogger(__name__)

CONVERSATIONS = "conversations"
MESSAGES = "messages"


def pair_key(user_id: str, other_user_id: str) -> str:
    return "__".join(sorted((user_id, other_user_id)))


class MessageSent(NamedTuple):
    message: Message
    conversation: Conversation


class ChatContainer(Container[ChatState]):
    name = "chat"
    operations = frozenset(
        {
            "list_conversations",
            "get_or_create_conversation",
            "list_messages",
            "send_message",
            "mark_read",
            "set_current_conversation",
            "add_message",
            "clear_current_conversation",
            "clear_error",
        }
    )

    def __init__(self, gateway, settings, clock=None) -> None:
        super().__init__(gateway, settings, ChatState(), clock)

    async def _load_conversation(self, conversation_id: str) -> Conversation:
        document = await self.gateway.get_document(CONVERSATIONS, conversation_id)
        if document is None:
            raise NotFoundError("Conversation not found")
        return Conversation.model_validate(document)

    async def list_conversations(self, user_id: str) -> Settlement:
        async def call() -> List[Conversation]:
            documents = await self.gateway.query(
                CONVERSATIONS,
                [FieldFilter("participants", "array-contains", user_id)],
                order_by="lastMessageTimestamp",
                descending=True,
            )
            return [Conversation.model_validate(document) for document in documents]

        return await self._run(
            "list_conversations", call, lambda state, conversations: {"conversations": conversations}
        )

    async def get_or_create_conversation(self, user_id: str, other_user_id: str) -> Settlement:
        async def call() -> Conversation:
            if user_id == other_user_id:
                raise ValidationError("Cannot start a conversation with yourself")
            documents = await self.gateway.query(
                CONVERSATIONS, [FieldFilter("participants", "array-contains", user_id)]
            )
            for document in documents:
                if other_user_id in document.get("participants", []):
                    return Conversation.model_validate(document)

            key = pair_key(user_id, other_user_id)
            document = {
                "participants": [user_id, other_user_id],
                "pairKey": key,
                "lastMessage": "",
                "lastMessageTimestamp": self.clock(),
                "unreadCount": 0,
            }
            try:
                await self.gateway.create_document(CONVERSATIONS, key, document)
            except ConflictError:
                existing = await self.gateway.get_document(CONVERSATIONS, key)
                if existing is None:
                    raise ReadError("Conversation disappeared after a concurrent create")
                logger.info("Conversation %s was created concurrently; reusing it", key)
                return Conversation.model_validate(existing)
            return Conversation.model_validate({**document, "id": key})

        def reduce(state: ChatState, conversation: Conversation) -> Dict[str, Any]:
            conversations = state.conversations
            if not any(existing.id == conversation.id for existing in conversations):
                conversations = [*conversations, conversation]
            return {"current_conversation": conversation, "conversations": conversations}

        return await self._run("get_or_create_conversation", call, reduce)

    async def list_messages(self, conversation_id: str) -> Settlement:
        async def call() -> List[Message]:
            documents = await self.gateway.query(
                MESSAGES,
                [FieldFilter("conversationId", "==", conversation_id)],
                order_by="timestamp",
            )
            return [Message.model_validate(document) for document in documents]

        return await self._run("list_messages", call, lambda state, messages: {"messages": messages})

    async def send_message(self, conversation_id: str, sender_id: str, receiver_id: str, content: str) -> Settlement:
        async def call() -> MessageSent:
            if not content.strip():
                raise ValidationError("Message content is required")
            sent_at = self.clock()
            document = {
                "conversationId": conversation_id,
                "senderId": sender_id,
                "receiverId": receiver_id,
                "content": content,
                "timestamp": sent_at,
                "isRead": False,
            }
            message_id = await self.gateway.add_document(MESSAGES, document)

            changes: Dict[str, Any] = {"lastMessage": content, "lastMessageTimestamp": sent_at}
            if self.settings.unread_counter_mode == "literal":
                changes["unreadCount"] = 1
            else:
                current = await self._load_conversation(conversation_id)
                changes["unreadCount"] = current.unread_count + 1
            await self.gateway.update_document(CONVERSATIONS, conversation_id, changes)

            return MessageSent(
                message=Message.model_validate({**document, "id": message_id}),
                conversation=await self._load_conversation(conversation_id),
            )

        def reduce(state: ChatState, sent: MessageSent) -> Dict[str, Any]:
            current = state.current_conversation
            return {
                "messages": [*state.messages, sent.message],
                "conversations": replace_by_id(state.conversations, sent.conversation),
                "current_conversation": sent.conversation if current and current.id == sent.conversation.id else current,
            }

        return await self._run("send_message", call, reduce)

    async def mark_read(self, conversation_id: str, user_id: str) -> Settlement:
        async def call() -> List[Message]:
            documents = await self.gateway.query(
                MESSAGES,
                [
                    FieldFilter("conversationId", "==", conversation_id),
                    FieldFilter("receiverId", "==", user_id),
                    FieldFilter("isRead", "==", False),
                ],
            )
            await asyncio.gather(
                *(self.gateway.update_document(MESSAGES, document["id"], {"isRead": True}) for document in documents)
            )
            await self.gateway.update_document(CONVERSATIONS, conversation_id, {"unreadCount": 0})
            return [Message.model_validate({**document, "isRead": True}) for document in documents]

        def reduce(state: ChatState, updated: List[Message]) -> Dict[str, Any]:
            read_ids = {message.id for message in updated}
            messages = [
                message.model_copy(update={"is_read": True}) if message.id in read_ids else message
                for message in state.messages
            ]
            conversations = [
                item.model_copy(update={"unread_count": 0}) if item.id == conversation_id else item
                for item in state.conversations
            ]
            current = state.current_conversation
            if current and current.id == conversation_id:
                current = current.model_copy(update={"unread_count": 0})
            return {"messages": messages, "conversations": conversations, "current_conversation": current}

        return await self._run("mark_read", call, reduce)

    def set_current_conversation(self, conversation: Conversation) -> None:
        self._replace(current_conversation=conversation)

    def add_message(self, message: Message) -> None:
        self._replace(messages=[*self.state.messages, message])

    def clear_current_conversation(self) -> None:
        self._replace(current_conversation=None, messages=[])
