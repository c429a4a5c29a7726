import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from cyberdefense.core.auth import extract_token_from_header, verify_token

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    """
    Per-user notification channel. Authenticate with ?token=<access token>,
    or with an Authorization: Bearer header for clients that can set one.
    """
    state = websocket.app.state
    token = token or extract_token_from_header(websocket.headers.get("authorization"))
    payload = verify_token(token, state.settings) if token else None
    if payload is None or payload.type != "access":
        logger.warning("WebSocket rejected: invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if await run_in_threadpool(state.storage.get_user, payload.user_id) is None:
        logger.warning(f"WebSocket rejected: unknown user {payload.user_id}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    notifier = state.notifier
    conn = await notifier.connect(payload.user_id, websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await notifier.handle_message(conn, raw)
    except WebSocketDisconnect as e:
        logger.debug(f"WebSocket closed by client (code {e.code})")
    finally:
        notifier.disconnect(conn)
