"""
Email sync endpoints.

POST /email-sync - sync all companies (background)
POST /email-sync/{company_id} - sync one company now
GET  /email-sync/{company_id} - sync cursor status
PUT  /email-sync/{company_id}/enable - turn sync on
PUT  /email-sync/{company_id}/disable - turn sync off
PUT  /email-sync/{company_id}/config - enabled flag + frequency
GET  /email-sync/{company_id}/conversations - messages grouped by thread
GET  /email-sync/{company_id}/conversations/{thread_id} - one thread, oldest first
POST /email-sync/{company_id}/messages/{message_id}/read - set local read flag
DELETE /email-sync/{company_id}/messages/{message_id} - remove one stored message
DELETE /email-sync/{company_id}/conversations/{thread_id} - remove a whole thread
GET  /email-sync/{company_id}/quotes/{quote_id}/emails - stored messages of one quote
GET  /email-sync/{company_id}/quotes/{quote_id}/conversation - thread id for a quote
GET  /email-sync/{company_id}/emails - live listing of the mailbox
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from mail_sync.core.database import Database
from mail_sync.core.errors import AuthExpiredError, NotFoundError, RemoteAPIError
from mail_sync.core.logging import get_logger
from mail_sync.core.store import ConversationStore, QuoteLookup
from mail_sync.processors.sync import SyncProcessor
from mail_sync.services.conversations import group_into_conversations

log = get_logger(__name__)
router = APIRouter(prefix="/email-sync", tags=["email-sync"])


def get_store() -> Database:
    return Database()


def get_processor(store: Database = Depends(get_store)) -> SyncProcessor:
    return SyncProcessor(store=store, quotes=store)


class OwnerRequest(BaseModel):
    user_id: str


class SyncConfigRequest(BaseModel):
    user_id: str
    enabled: bool = True
    frequency_minutes: int = Field(default=15, ge=1, le=1440)


@router.post("")
def sync_all_companies(
    background_tasks: BackgroundTasks,
    processor: SyncProcessor = Depends(get_processor),
):
    """Start a sync pass over every enabled company. Runs in background to avoid timeout."""
    background_tasks.add_task(processor.process)
    return {"status": "sync_started"}


@router.post("/{company_id}")
def sync_company(
    company_id: str,
    request: OwnerRequest,
    processor: SyncProcessor = Depends(get_processor),
):
    """Sync one company and report which threads changed."""
    try:
        result = processor.sync_company(company_id, request.user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, **result.to_dict()}


@router.get("/{company_id}")
def get_sync_status(company_id: str, store: ConversationStore = Depends(get_store)):
    """Sync cursor of a company."""
    cursor = store.get_cursor(company_id)
    if cursor is None:
        raise HTTPException(status_code=404, detail=f"No sync status for company {company_id}")
    return {"success": True, "status": cursor.to_dict()}


@router.put("/{company_id}/enable")
def enable_sync(
    company_id: str,
    request: OwnerRequest,
    store: ConversationStore = Depends(get_store),
):
    cursor = store.set_sync_enabled(company_id, request.user_id, True)
    log.info("email_sync_enabled", company_id=company_id)
    return {"success": True, "status": cursor.to_dict()}


@router.put("/{company_id}/disable")
def disable_sync(
    company_id: str,
    request: OwnerRequest,
    store: ConversationStore = Depends(get_store),
):
    cursor = store.set_sync_enabled(company_id, request.user_id, False)
    log.info("email_sync_disabled", company_id=company_id)
    return {"success": True, "status": cursor.to_dict()}


@router.put("/{company_id}/config")
def update_sync_config(
    company_id: str,
    request: SyncConfigRequest,
    store: ConversationStore = Depends(get_store),
):
    cursor = store.update_sync_config(
        company_id,
        request.user_id,
        enabled=request.enabled,
        frequency_minutes=request.frequency_minutes,
    )
    return {"success": True, "status": cursor.to_dict()}


@router.get("/{company_id}/conversations")
def list_conversations(company_id: str, store: ConversationStore = Depends(get_store)):
    """Stored messages grouped into conversations, most recent first."""
    messages = store.list_company_messages(company_id)
    quotes: dict = {}
    if isinstance(store, QuoteLookup):
        quotes = store.get_quotes(sorted({m.quote_id for m in messages}))

    conversations = group_into_conversations(messages, quotes)
    return {
        "success": True,
        "conversations": [conversation.to_dict() for conversation in conversations],
    }


@router.get("/{company_id}/conversations/{thread_id}")
def get_conversation(
    company_id: str,
    thread_id: str,
    store: ConversationStore = Depends(get_store),
):
    """All stored messages of one Gmail thread, oldest first."""
    messages = store.list_thread_messages(company_id, thread_id)
    if not messages:
        raise HTTPException(status_code=404, detail=f"Conversation {thread_id} not found")
    return {"success": True, "emails": [message.to_dict() for message in messages]}


@router.post("/{company_id}/messages/{message_id}/read")
def mark_message_read(
    company_id: str,
    message_id: str,
    store: ConversationStore = Depends(get_store),
):
    """Record that someone opened the message in the app. Gmail is not touched."""
    if not store.mark_message_read(company_id, message_id):
        raise HTTPException(status_code=404, detail=f"Message {message_id} not found")
    return {"success": True}


@router.delete("/{company_id}/messages/{message_id}")
def delete_message(
    company_id: str,
    message_id: str,
    store: ConversationStore = Depends(get_store),
):
    """Remove one stored message. Gmail is not touched."""
    if not store.delete_message(company_id, message_id):
        raise HTTPException(status_code=404, detail=f"Message {message_id} not found")
    return {"success": True}


@router.delete("/{company_id}/conversations/{thread_id}")
def delete_conversation(
    company_id: str,
    thread_id: str,
    store: ConversationStore = Depends(get_store),
):
    deleted = store.delete_conversation(company_id, thread_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Conversation {thread_id} not found")
    return {"success": True, "deleted": deleted}


def _require_quote(store: ConversationStore, company_id: str, quote_id: str) -> None:
    if isinstance(store, QuoteLookup) and store.get_quote(company_id, quote_id) is None:
        raise HTTPException(status_code=404, detail=f"Quote {quote_id} not found")


@router.get("/{company_id}/quotes/{quote_id}/emails")
def list_quote_emails(
    company_id: str,
    quote_id: str,
    store: ConversationStore = Depends(get_store),
):
    """Stored messages linked to one quote, newest first."""
    _require_quote(store, company_id, quote_id)
    messages = store.list_quote_messages(company_id, quote_id)
    return {"success": True, "emails": [message.to_dict() for message in messages]}


@router.get("/{company_id}/quotes/{quote_id}/conversation")
def get_quote_conversation(
    company_id: str,
    quote_id: str,
    store: ConversationStore = Depends(get_store),
):
    """Thread id of the quote's most recent message, for opening the conversation."""
    _require_quote(store, company_id, quote_id)
    conversation_id = store.conversation_id_for_quote(company_id, quote_id)
    if conversation_id is None:
        raise HTTPException(status_code=404, detail=f"No conversation for quote {quote_id}")
    return {"success": True, "conversation_id": conversation_id}


@router.get("/{company_id}/emails")
def list_mailbox_emails(
    company_id: str,
    user_id: str | None = None,
    max_results: int = Query(default=50, ge=1, le=500),
    query: str | None = None,
    processor: SyncProcessor = Depends(get_processor),
):
    """Recent messages read live from the company's Gmail mailbox."""
    try:
        emails = processor.list_mailbox(company_id, user_id, max_results=max_results, query=query)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AuthExpiredError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except RemoteAPIError as e:
        log.error("mailbox_listing_failed", company_id=company_id, status=e.status)
        raise HTTPException(status_code=502, detail="Failed to fetch company emails")

    return {
        "success": True,
        "emails": [email.to_dict() for email in emails],
        "count": len(emails),
    }
