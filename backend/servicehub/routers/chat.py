from fastapi import APIRouter, Depends, HTTPException

from servicehub.models import ConversationOpenRequest, Conversation, MessageSendRequest
from servicehub.sessions import ClientSession, raise_for_settlement, require_account, snapshot

router = APIRouter(prefix="/api/chat", tags=["chat"])


async def _open_participating(session: ClientSession, conversation_id: str) -> Conversation:
    chat = session.store.chat
    raise_for_settlement(await chat.list_conversations(session.user.id))
    for conversation in chat.state.conversations:
        if conversation.id == conversation_id:
            chat.set_current_conversation(conversation)
            return conversation
    raise HTTPException(status_code=403, detail="Not a participant in this conversation")


@router.get("/conversations")
async def list_conversations(session: ClientSession = Depends(require_account)):
    raise_for_settlement(await session.store.chat.list_conversations(session.user.id))
    return snapshot(session.store.chat.state)


@router.post("/conversations")
async def open_conversation(request: ConversationOpenRequest, session: ClientSession = Depends(require_account)):
    settlement = await session.store.chat.get_or_create_conversation(session.user.id, request.other_user_id)
    raise_for_settlement(settlement)
    return snapshot(session.store.chat.state)


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: str, session: ClientSession = Depends(require_account)):
    await _open_participating(session, conversation_id)
    raise_for_settlement(await session.store.chat.list_messages(conversation_id))
    return snapshot(session.store.chat.state)


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    request: MessageSendRequest,
    session: ClientSession = Depends(require_account),
):
    conversation = await _open_participating(session, conversation_id)
    sender_id = session.user.id
    receiver_id = next((uid for uid in conversation.participants if uid != sender_id), sender_id)
    settlement = await session.store.chat.send_message(conversation_id, sender_id, receiver_id, request.content)
    raise_for_settlement(settlement)
    return snapshot(session.store.chat.state)


@router.post("/conversations/{conversation_id}/read")
async def mark_read(conversation_id: str, session: ClientSession = Depends(require_account)):
    await _open_participating(session, conversation_id)
    raise_for_settlement(await session.store.chat.mark_read(conversation_id, session.user.id))
    return snapshot(session.store.chat.state)
