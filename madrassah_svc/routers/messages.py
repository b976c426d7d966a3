from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_ctx, get_db, get_current_user, same_madrassah
from ..models import Message, User
from ..schemas import MessageCreate, MessageRead
from ..services.bridge import ChangeType
from ..services.context import MESSAGES_TABLE, AppContext, inbox_key, sent_key

router = APIRouter(prefix="/messages", tags=["messages"])
logger = logging.getLogger(__name__)


def message_read(m: Message) -> MessageRead:
    return MessageRead(
        id=m.id, sender_id=m.sender_id, recipient_id=m.recipient_id, parent_message_id=m.parent_message_id,
        subject=m.subject, body=m.body, read=m.read, created_at=m.created_at,
    )


def _change_record(m: Message) -> dict:
    return {
        "id": m.id, "madrassah_id": m.madrassah_id, "sender_id": m.sender_id,
        "recipient_id": m.recipient_id, "read": m.read,
    }


@router.post("", response_model=MessageRead, status_code=201)
async def send_message(
    body: MessageCreate,
    user: User = Depends(get_current_user),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    recipient = await db.get(User, body.recipient_id)
    if recipient is None or not recipient.is_active or not same_madrassah(user, recipient.madrassah_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipient not found")
    if body.parent_message_id is not None:
        parent = await db.get(Message, body.parent_message_id)
        if parent is None or parent.madrassah_id != user.madrassah_id or user.id not in (parent.sender_id, parent.recipient_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parent message not found")

    msg = Message(
        madrassah_id=user.madrassah_id,
        sender_id=user.id,
        recipient_id=recipient.id,
        parent_message_id=body.parent_message_id,
        subject=body.subject,
        body=body.body,
        read=False,
    )
    db.add(msg)
    await db.commit()
    await ctx.publish_change(MESSAGES_TABLE, ChangeType.INSERT, _change_record(msg))
    return message_read(msg)


@router.get("/inbox", response_model=list[MessageRead])
async def inbox(
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    async def load() -> list[MessageRead]:
        rows = (await db.execute(
            select(Message).where(Message.recipient_id == user.id, Message.madrassah_id == user.madrassah_id)
            .order_by(Message.created_at.desc()).limit(limit)
        )).scalars().all()
        return [message_read(m) for m in rows]

    return await ctx.cache.fetch(inbox_key(user.id) + (limit,), load)


@router.get("/sent", response_model=list[MessageRead])
async def sent(
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    async def load() -> list[MessageRead]:
        rows = (await db.execute(
            select(Message).where(Message.sender_id == user.id, Message.madrassah_id == user.madrassah_id)
            .order_by(Message.created_at.desc()).limit(limit)
        )).scalars().all()
        return [message_read(m) for m in rows]

    return await ctx.cache.fetch(sent_key(user.id) + (limit,), load)


@router.post("/{message_id}/read", response_model=MessageRead)
async def mark_read(
    message_id: UUID,
    user: User = Depends(get_current_user),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    msg = await db.get(Message, message_id)
    if msg is None or msg.madrassah_id != user.madrassah_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    if msg.recipient_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the recipient can mark a message read")
    if not msg.read:
        msg.read = True
        await db.commit()
        await ctx.publish_change(MESSAGES_TABLE, ChangeType.UPDATE, _change_record(msg))
    return message_read(msg)
