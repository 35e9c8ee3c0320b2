"""
Extension points the host calls when mail preferences may have changed.

Every accepted call answers 202: whatever the dispatcher decides, the host's
own request must not fail because of us.
"""

import hashlib
import hmac

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.subject_domain import ChangeNotification
from app.services.unsub_dispatcher import UnsubUpdateDispatcher, get_dispatcher

logger = get_logger(__name__)

router = APIRouter(prefix="/hooks", tags=["hooks"])
SIGNATURE_HEADER = "x-unsub-signature"


class UnsubscribeHook(BaseModel):
    key: str
    method: str = "POST"


class PreferencesSavedHook(BaseModel):
    user_id: int
    method: str = "POST"


async def verify_hook_signature(request: Request) -> None:
    secret = settings.UNSUB_UPDATE_HOOK_SECRET
    if not secret:
        return

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")

    raw = await request.body()
    mac = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(mac, signature):
        logger.warning("Rejected hook call with bad signature", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid signature")


def _accepted(queued: list) -> dict:
    return {"ok": True, "queued": [str(event) for event in queued]}


@router.post("/user-options", status_code=202, dependencies=[Depends(verify_hook_signature)])
async def user_options_changed(
    notification: ChangeNotification,
    dispatcher: UnsubUpdateDispatcher = Depends(get_dispatcher),
):
    """Post-commit notification for a user_options row."""
    return _accepted(await dispatcher.react(notification))


@router.post("/unsubscribe", status_code=202, dependencies=[Depends(verify_hook_signature)])
async def unsubscribe_submitted(
    body: UnsubscribeHook,
    dispatcher: UnsubUpdateDispatcher = Depends(get_dispatcher),
):
    return _accepted(await dispatcher.on_unsubscribe_submitted(body.key, body.method))


@router.post("/preferences", status_code=202, dependencies=[Depends(verify_hook_signature)])
async def preferences_saved(
    body: PreferencesSavedHook,
    dispatcher: UnsubUpdateDispatcher = Depends(get_dispatcher),
):
    return _accepted(await dispatcher.on_preferences_saved(body.user_id, body.method))
