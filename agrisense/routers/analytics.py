import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlmodel import Session

from agrisense.aggregator import build_farm_context, load_market_prices
from agrisense.alerts import dispatch_alert
from agrisense.analysis import analyze_data, chat_response
from agrisense.database import get_db
from agrisense.errors import AgriSenseError, InputValidationError
from agrisense.models import User
from agrisense.scheduler import AnalyticsScheduler
from agrisense.schemas import ChatRequest
from agrisense.security import get_current_user, require_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["Analytics"])


def get_scheduler(request: Request) -> AnalyticsScheduler:
    return request.app.state.scheduler


@router.get("/analyze")
async def get_farm_analysis(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Runs the full pipeline for the current farmer: farm context, AI analysis and,
    when action is required, alert storage with SMS and voice delivery.
    """
    try:
        context = await build_farm_context(db, current_user.id)
        logger.info(
            "Analytics request: user=%s (%s) device=%s",
            context.farmer.name, current_user.id, context.device_id,
        )
        analysis = await analyze_data(context, current_user.id)
    except AgriSenseError:
        raise
    except Exception as e:
        logger.exception("Farm analysis error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to analyze farm data", "message": str(e)},
        )

    alert = await dispatch_alert(db, context, analysis, current_user.mobile_number)

    return {
        "success": True,
        "data": {
            "analysis": analysis.model_dump(by_alias=True, mode="json"),
            "alert": alert.model_dump(mode="json") if alert else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.post("/chat")
async def get_chatbot_response(
    chat: ChatRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Answers a farmer's question with their farm context and local market prices.
    """
    message = (chat.message or "").strip()
    if not message:
        raise InputValidationError("Message is required")

    try:
        context = await build_farm_context(db, current_user.id, require_sensors=False)
        market_prices = load_market_prices(db, current_user.district_id)
        logger.info("Chatbot request: user=%s (%s) message=%r", context.farmer.name, current_user.id, message)
        response = await chat_response(context, message, market_prices)
    except AgriSenseError:
        raise
    except Exception as e:
        logger.exception("Chatbot farm data error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to process chatbot request", "message": str(e)},
        )

    return {
        "success": True,
        "data": {
            "response": response,
            "farmContext": context.to_payload(),
            "marketPrices": market_prices,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.get("/scheduler/status")
def get_scheduler_status(
    scheduler: AnalyticsScheduler = Depends(get_scheduler),
    admin: User = Depends(require_role(["admin"]))
):
    return {"success": True, "data": scheduler.status()}


@router.post("/scheduler/trigger", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sweep(
    kind: str = "daily",
    scheduler: AnalyticsScheduler = Depends(get_scheduler),
    admin: User = Depends(require_role(["admin"]))
):
    """
    Starts a sweep (``daily`` or ``moisture``) in the background.
    Responds 409 while the same sweep is still running.
    """
    scheduler.start_sweep(kind)
    logger.info("Manually triggered %s sweep (admin %s)", kind, admin.id)
    return {"success": True, "message": f"{kind} sweep started"}
