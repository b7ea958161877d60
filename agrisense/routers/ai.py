import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Header, HTTPException, status

from agrisense import config
from agrisense.errors import InputValidationError, UpstreamError
from agrisense.analysis import normalize_provider_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["AI"])

# Last callback payloads, kept in memory for debugging the provider integration
last_callbacks: Dict[str, Optional[Dict[str, Any]]] = {"analysis": None, "chatbot": None}


def _remember(kind: str, payload: Dict[str, Any]):
    last_callbacks[kind] = {
        "receivedAt": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }


@router.get("/provider")
def get_provider():
    return {
        "provider": config.AI_PROVIDER,
        "smythos": {
            "outboundAnalysisConfigured": bool(config.SMYTHOS_OUTBOUND_ANALYSIS_URL),
            "analysisCallbackUrl": config.SMYTHOS_ANALYSIS_CALLBACK_URL or None,
            "chatbotCallbackUrl": config.SMYTHOS_CHATBOT_CALLBACK_URL or None,
        },
    }


@router.post("/callback/analysis")
def analysis_callback(payload: Dict[str, Any] = Body(...)):
    """
    Asynchronous analysis result pushed back by the external provider.
    Accepts the flat and the ``result.Output`` wrapped shapes.
    """
    try:
        output = normalize_provider_response(payload)
    except UpstreamError as e:
        raise InputValidationError(f"Invalid analysis callback payload: {e.message}")

    _remember("analysis", payload)
    logger.info("Analysis callback received: userId=%s actionRequired=%s", output.user_id, output.action_required)
    return {"success": True, "data": output.model_dump(by_alias=True)}


@router.post("/callback/chatbot")
def chatbot_callback(payload: Dict[str, Any] = Body(...)):
    response = payload.get("response")
    if not isinstance(response, str) or not response.strip():
        raise InputValidationError("Invalid chatbot callback payload: 'response' must be a non-empty string")

    _remember("chatbot", payload)
    logger.info("Chatbot callback received: userId=%s", payload.get("userId"))
    return {"success": True}


@router.get("/callbacks/last")
def get_last_callbacks(x_internal_token: Optional[str] = Header(default=None)):
    if config.INTERNAL_API_TOKEN and x_internal_token != config.INTERNAL_API_TOKEN:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")
    return {"success": True, "data": last_callbacks}
